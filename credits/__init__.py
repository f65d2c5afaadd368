"""Off-chain carbon credit records.

This module provides:
- The ``OffChainRecord`` model holding a token's descriptive metadata
- ``CarbonCreditStore``, the keyed record store over the database pool
- Shadow-flag bookkeeping that mirrors listing and retirement state

Records are created at mint time (or by the backfill monitor as
placeholders), edited by their owner and never deleted; archiving is a
status change.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from database import get_pool

logger = logging.getLogger(__name__)


# Owner-editable fields
MUTABLE_FIELDS = {
    'name',
    'project_name',
    'location',
    'vintage_year',
    'quantity_tonnes',
    'verification_standard',
    'certification_body',
    'verification_date',
    'project_type',
    'description',
    'image_uri',
}

# Shadow flags mirrored from the ledger (managed by workflows and the monitor)
SHADOW_FIELDS = {
    'owner',
    'is_listed',
    'listing_price',
    'is_retired',
    'retired_by',
    'retired_at',
    'beneficiary',
    'status',
}

# System-managed fields
SYSTEM_FIELDS = {
    'token_id',
    'symbol',
    'metadata_uri',
    'mint_signature',
    'is_placeholder',
    'views',
    'favorites',
    'created_at',
    'updated_at',
    'last_synced_at',
}

COLUMNS = [
    'token_id', 'owner', 'name', 'symbol', 'project_name', 'country', 'region',
    'vintage_year', 'quantity_tonnes', 'verification_standard', 'certification_body',
    'verification_date', 'project_type', 'description', 'image_uri', 'metadata_uri',
    'is_listed', 'listing_price', 'is_retired', 'retired_by', 'retired_at',
    'beneficiary', 'views', 'favorites', 'status', 'is_placeholder', 'mint_signature',
]

# Columns an upsert must not overwrite on an existing row
_PRESERVED_ON_UPSERT = {'token_id', 'views', 'favorites'}


class CreditError(Exception):
    """Base exception for credit record operations."""
    pass


class CreditNotFoundError(CreditError):
    """Raised when no record exists for a token id."""
    pass


class RecordStatus(str, Enum):
    ACTIVE = "active"
    LISTED = "listed"
    RETIRED = "retired"
    ARCHIVED = "archived"


class Location(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None


class OffChainRecord(BaseModel):
    """Descriptive metadata for one minted carbon credit token."""
    token_id: str
    owner: str
    name: str = ""
    symbol: str = ""
    project_name: str = ""
    location: Location = Field(default_factory=Location)
    vintage_year: Optional[int] = None
    quantity_tonnes: Optional[Decimal] = None
    verification_standard: Optional[str] = None
    certification_body: Optional[str] = None
    verification_date: Optional[date] = None
    project_type: Optional[str] = None
    description: Optional[str] = None
    image_uri: Optional[str] = None
    metadata_uri: Optional[str] = None
    is_listed: bool = False
    listing_price: Optional[int] = None  # lamports
    is_retired: bool = False
    retired_by: Optional[str] = None
    retired_at: Optional[datetime] = None
    beneficiary: Optional[str] = None
    views: int = 0
    favorites: int = 0
    status: RecordStatus = RecordStatus.ACTIVE
    is_placeholder: bool = False
    mint_signature: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "OffChainRecord":
        data = dict(row)
        data['location'] = Location(
            country=data.pop('country', None), region=data.pop('region', None)
        )
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={'location', 'created_at', 'updated_at', 'last_synced_at'})
        data['country'] = self.location.country
        data['region'] = self.location.region
        data['status'] = self.status.value
        return {column: data[column] for column in COLUMNS}


class CarbonCreditStore:
    """Keyed store of off-chain records."""

    def __init__(self, pool=None):
        """Initialize the store.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def get(self, token_id: str) -> Optional[OffChainRecord]:
        """Record for a token id, or None when absent."""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM carbon_credits WHERE token_id = $1', str(token_id)
            )
        return OffChainRecord.from_row(row) if row else None

    async def get_many(self, token_ids: Iterable[str]) -> Dict[str, OffChainRecord]:
        ids = [str(t) for t in token_ids]
        if not ids:
            return {}
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM carbon_credits WHERE token_id = ANY($1::text[])', ids
            )
        return {row['token_id']: OffChainRecord.from_row(row) for row in rows}

    async def put(self, record: OffChainRecord) -> OffChainRecord:
        """Insert or replace a record. View and favorite counters are preserved."""
        await self.ensure_pool()
        row = record.to_row()
        placeholders = ', '.join(f'${i}' for i in range(1, len(COLUMNS) + 1))
        assignments = ', '.join(
            f'{column} = EXCLUDED.{column}'
            for column in COLUMNS if column not in _PRESERVED_ON_UPSERT
        )
        async with self.pool.acquire() as conn:
            saved = await conn.fetchrow(
                f'''
                INSERT INTO carbon_credits ({', '.join(COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT (token_id) DO UPDATE SET {assignments}
                RETURNING *
                ''',
                *[row[column] for column in COLUMNS]
            )
        logger.info(f"Saved record for {record.token_id}")
        return OffChainRecord.from_row(saved)

    async def query(
        self,
        owner: Optional[str] = None,
        project_type: Optional[str] = None,
        is_listed: Optional[bool] = None,
        is_retired: Optional[bool] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[OffChainRecord]:
        """Records matching all given filters, newest first."""
        await self.ensure_pool()
        conditions = []
        params: List[Any] = []

        def add(condition: str, value: Any) -> None:
            params.append(value)
            conditions.append(condition.format(f'${len(params)}'))

        if owner is not None:
            add('owner = {}', str(owner))
        if project_type is not None:
            add('project_type = {}', project_type)
        if is_listed is not None:
            add('is_listed = {}', is_listed)
        if is_retired is not None:
            add('is_retired = {}', is_retired)
        if not include_archived:
            add('status != {}', RecordStatus.ARCHIVED.value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ''
        params.extend([limit, offset])
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'''
                SELECT * FROM carbon_credits
                {where}
                ORDER BY created_at DESC
                LIMIT ${len(params) - 1} OFFSET ${len(params)}
                ''',
                *params
            )
        return [OffChainRecord.from_row(row) for row in rows]

    async def missing(self, token_ids: Iterable[str]) -> Set[str]:
        """Token ids from the input that have no record."""
        ids = {str(t) for t in token_ids}
        if not ids:
            return set()
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT token_id FROM carbon_credits WHERE token_id = ANY($1::text[])',
                list(ids)
            )
        return ids - {row['token_id'] for row in rows}

    async def _update_columns(self, token_id: str, columns: Dict[str, Any]) -> OffChainRecord:
        await self.ensure_pool()
        assignments = ', '.join(f'{column} = ${i}' for i, column in enumerate(columns, start=2))
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'UPDATE carbon_credits SET {assignments} WHERE token_id = $1 RETURNING *',
                str(token_id), *columns.values()
            )
        if row is None:
            raise CreditNotFoundError(f"No record for token {token_id}")
        return OffChainRecord.from_row(row)

    async def update(self, token_id: str, updates: Dict[str, Any]) -> OffChainRecord:
        """Apply owner edits.

        Raises:
            CreditError: If any field is not owner-editable
            CreditNotFoundError: If there is no record
        """
        invalid = set(updates) - MUTABLE_FIELDS
        if invalid:
            raise CreditError(f"Fields not editable: {', '.join(sorted(invalid))}")
        if not updates:
            record = await self.get(token_id)
            if record is None:
                raise CreditNotFoundError(f"No record for token {token_id}")
            return record

        columns = dict(updates)
        if 'location' in columns:
            location = columns.pop('location') or {}
            if isinstance(location, Location):
                location = location.model_dump()
            columns['country'] = location.get('country')
            columns['region'] = location.get('region')
        return await self._update_columns(token_id, columns)

    async def set_shadow_flags(self, token_id: str, updates: Dict[str, Any]) -> OffChainRecord:
        """Overwrite mirrored ledger state.

        Raises:
            CreditError: If any field is not a shadow flag
            CreditNotFoundError: If there is no record
        """
        invalid = set(updates) - SHADOW_FIELDS
        if invalid:
            raise CreditError(f"Not shadow fields: {', '.join(sorted(invalid))}")
        columns = dict(updates)
        if isinstance(columns.get('status'), RecordStatus):
            columns['status'] = columns['status'].value
        return await self._update_columns(token_id, columns)

    async def mark_listed(self, token_id: str, price: int) -> OffChainRecord:
        return await self._update_columns(token_id, {
            'is_listed': True,
            'listing_price': price,
            'status': RecordStatus.LISTED.value,
        })

    async def mark_unlisted(self, token_id: str) -> OffChainRecord:
        return await self._update_columns(token_id, {
            'is_listed': False,
            'listing_price': None,
            'status': RecordStatus.ACTIVE.value,
        })

    async def mark_sold(self, token_id: str, new_owner: str) -> OffChainRecord:
        return await self._update_columns(token_id, {
            'owner': str(new_owner),
            'is_listed': False,
            'listing_price': None,
            'status': RecordStatus.ACTIVE.value,
        })

    async def mark_retired(
        self,
        token_id: str,
        retired_by: str,
        beneficiary: Optional[str] = None,
        retired_at: Optional[datetime] = None
    ) -> OffChainRecord:
        return await self._update_columns(token_id, {
            'is_retired': True,
            'is_listed': False,
            'listing_price': None,
            'retired_by': str(retired_by),
            'beneficiary': str(beneficiary) if beneficiary else str(retired_by),
            'retired_at': retired_at or datetime.now(timezone.utc),
            'status': RecordStatus.RETIRED.value,
        })

    async def mark_synced(self, token_ids: Iterable[str]) -> None:
        ids = [str(t) for t in token_ids]
        if not ids:
            return
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            await conn.execute(
                'UPDATE carbon_credits SET last_synced_at = now() WHERE token_id = ANY($1::text[])',
                ids
            )

    async def increment_views(self, token_id: str) -> int:
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            views = await conn.fetchval(
                'UPDATE carbon_credits SET views = views + 1 WHERE token_id = $1 RETURNING views',
                str(token_id)
            )
        if views is None:
            raise CreditNotFoundError(f"No record for token {token_id}")
        return views

    async def set_favorite(self, token_id: str, favorite: bool) -> int:
        """Add or remove one favorite; the counter never goes below zero."""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            favorites = await conn.fetchval(
                '''
                UPDATE carbon_credits
                SET favorites = GREATEST(favorites + $2, 0)
                WHERE token_id = $1
                RETURNING favorites
                ''',
                str(token_id), 1 if favorite else -1
            )
        if favorites is None:
            raise CreditNotFoundError(f"No record for token {token_id}")
        return favorites

    async def archive(self, token_id: str) -> OffChainRecord:
        """Soft-archive a record. Archived records are hidden from default queries."""
        record = await self._update_columns(token_id, {'status': RecordStatus.ARCHIVED.value})
        logger.info(f"Archived record for {token_id}")
        return record


__all__ = [
    'CarbonCreditStore',
    'OffChainRecord',
    'Location',
    'RecordStatus',
    'CreditError',
    'CreditNotFoundError',
    'MUTABLE_FIELDS',
    'SHADOW_FIELDS',
    'SYSTEM_FIELDS',
]
