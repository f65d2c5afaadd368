"""Database schema management module.

Schema versions live in ``database/schema/vN.py``, each defining a
``schema`` dict::

    schema = {
        'version': N,
        'tables': [...],       # full table definitions at this version
        'triggers': [...],     # optional trigger functions
        'migrations': [...],   # SQL taking version N-1 to N
    }

A fresh database gets the latest version's tables directly. An existing
one runs each newer version's migrations in order.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'


class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Path = SCHEMA_DIR) -> None:
        self.pool = pool
        self._schema_dir = Path(schema_dir)
        self.current_version = 0

    async def initialize(self, force_recreate: bool = False) -> None:
        """Create the version table and apply pending migrations.

        Raises:
            DatabaseSchemaError: If no schema files exist or a migration fails
        """
        schemas = self.load_schemas()
        if not schemas:
            raise DatabaseSchemaError(f"No schema files found in {self._schema_dir}")

        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INT8 PRIMARY KEY,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            ''')
            if force_recreate:
                logger.warning("Force recreate requested, dropping all tables")
                await conn.execute('DELETE FROM schema_version')

            row = await conn.fetchrow(
                'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
            )
            self.current_version = row['version'] if row else 0

            latest = max(schemas)
            if self.current_version >= latest:
                logger.info(f"Schema is up to date at version {self.current_version}")
                return

            logger.info(f"Updating schema from version {self.current_version} to {latest}")
            try:
                async with conn.transaction():
                    if self.current_version == 0:
                        await self._create_fresh_schema(conn, schemas[latest])
                    else:
                        for version in range(self.current_version + 1, latest + 1):
                            if version in schemas:
                                await self._apply_version_migrations(conn, schemas[version])
            except DatabaseSchemaError:
                raise
            except Exception as e:
                logger.error(f"Schema migration failed: {e}")
                raise DatabaseSchemaError(f"Failed to apply schema migrations: {e}") from e
            self.current_version = latest

    def load_schemas(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files, keyed by version.

        Raises:
            DatabaseSchemaError: If a file lacks a schema or its version mismatches its name
        """
        schemas = {}
        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"expected v{version}, got v{schema['version']}"
                )
            schemas[version] = schema
        return dict(sorted(schemas.items()))

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        for table in schema.get('tables', []):
            await conn.execute(f"DROP TABLE IF EXISTS {table['name']} CASCADE")
            await conn.execute(self.create_table_sql(table))
            for statement in self.index_sql(table):
                await conn.execute(statement)
            logger.info(f"Created table {table['name']}")

        for trigger in schema.get('triggers', []):
            await self._create_trigger(conn, trigger)

        await conn.execute(
            'INSERT INTO schema_version (version) VALUES ($1)', schema['version']
        )
        logger.info(f"Created fresh schema version {schema['version']}")

    async def _apply_version_migrations(self, conn, schema: Dict[str, Any]) -> None:
        for migration in schema.get('migrations', []):
            await conn.execute(migration)
        await conn.execute(
            'INSERT INTO schema_version (version) VALUES ($1)', schema['version']
        )
        logger.info(f"Migrated to version {schema['version']}")

    @staticmethod
    def create_table_sql(table: Dict[str, Any]) -> str:
        """CREATE TABLE statement for a table definition."""
        columns = []
        constraints = []
        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"
            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")
            elif col.get('unique'):
                constraints.append(f"UNIQUE ({col['name']})")
            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"
            if col.get('nullable') is False:
                col_def += " NOT NULL"
            columns.append(col_def)
        for check in table.get('checks', []):
            constraints.append(f"CHECK ({check})")
        return f"CREATE TABLE {table['name']} ({', '.join(columns + constraints)})"

    @staticmethod
    def index_sql(table: Dict[str, Any]) -> list:
        statements = []
        for idx in table.get('indexes', []):
            unique = 'UNIQUE ' if idx.get('unique') else ''
            where = f" WHERE {idx['where']}" if 'where' in idx else ''
            statements.append(
                f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
                f"ON {table['name']} ({', '.join(idx['columns'])}){where}"
            )
        return statements

    async def _create_trigger(self, conn, trigger: Dict[str, Any]) -> None:
        await conn.execute(f'''
            CREATE OR REPLACE FUNCTION {trigger['function_name']}()
            RETURNS TRIGGER
            AS $${trigger['function_body']}$$
            LANGUAGE plpgsql;
        ''')
        await conn.execute(f"DROP TRIGGER IF EXISTS {trigger['name']} ON {trigger['table']}")
        await conn.execute(f'''
            CREATE TRIGGER {trigger['name']}
            {trigger['timing']} {trigger['event']} ON {trigger['table']}
            FOR EACH ROW
            EXECUTE FUNCTION {trigger['function_name']}();
        ''')
        logger.info(f"Created trigger {trigger['name']} on {trigger['table']}")
