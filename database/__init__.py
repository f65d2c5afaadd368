"""Database module for the off-chain carbon credit record store.

This module handles:
- Connection pool initialization against PostgreSQL or CockroachDB
- Versioned schema creation and migration
- Pool lifecycle
"""

import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_db_url: Optional[str] = None

# sslmode values that need an SSL context on the asyncpg side
_SSL_MODES = {'require', 'verify-ca', 'verify-full'}


def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Translate URL query parameters into asyncpg pool kwargs.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    kwargs: Dict[str, Any] = {
        'server_settings': {
            'application_name': 'carbon-exchange',
            'statement_timeout': '60000',  # 1 minute
        }
    }

    sslmode = params.get('sslmode', [''])[0]
    if sslmode in _SSL_MODES:
        context = ssl.create_default_context()
        if sslmode == 'require':
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        kwargs['ssl'] = context

    return kwargs


@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def _create_pool(db_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        db_url,
        min_size=1,
        max_size=10,
        max_inactive_connection_lifetime=300.0,  # 5 minutes
        command_timeout=60.0,
        **_get_connection_kwargs(db_url)
    )


async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> asyncpg.Pool:
    """Initialize the connection pool and bring the schema up to date.

    Args:
        db_url: Database URL. Required on the first call.
        force_recreate: Drop every table and create the latest schema

    Returns:
        The connection pool

    Raises:
        DatabaseError: If no URL is available or the connection fails
        DatabaseSchemaError: If migrations fail
    """
    global _pool, _db_url

    url = db_url or _db_url
    if not url:
        raise DatabaseError("Database URL not provided")

    if _pool is None:
        try:
            _pool = await _create_pool(url)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseError(f"Failed to connect to database: {e}") from e
        _db_url = url

    await SchemaManager(_pool).initialize(force_recreate=force_recreate)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Raises:
        DatabaseError: If the pool was never initialized
    """
    if _pool is None:
        if _db_url is None:
            raise DatabaseError("Database not initialized, call init_db() first")
        await init_db()
    return _pool


async def close() -> None:
    """Close the database connection pool."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


__all__ = ['init_db', 'get_pool', 'close', 'DatabaseError', 'DatabaseSchemaError', 'SchemaManager']
