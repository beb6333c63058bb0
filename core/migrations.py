"""Versioned schema migrations for the geolocation database.

Each migration's statements run inside a single explicit transaction on an
autocommit connection, so SQLite DDL is rolled back together with the ledger
row when any statement fails.
"""

import aiosqlite
import logging
from config import HIGH_PRIORITY_SOURCES, SPATIAL_GRID_SCALE
from core.exceptions import MigrationError
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_HIGH_PRIORITY_SQL = ', '.join(f"'{source}'" for source in HIGH_PRIORITY_SOURCES)

GEOLOCATION_INDEXES = [
    # Composite
    ('idx_geolocation_source_timestamp', 'geolocation(source, timestamp)'),
    ('idx_geolocation_lat_lon_timestamp', 'geolocation(latitude, longitude, timestamp)'),
    ('idx_geolocation_timestamp_source', 'geolocation(timestamp, source)'),
    # Covering
    ('idx_geolocation_covering_coords', 'geolocation(file_path, latitude, longitude, accuracy, confidence)'),
    ('idx_geolocation_covering_temporal', 'geolocation(timestamp, source, latitude, longitude, accuracy)'),
    # Temporal
    ('idx_geolocation_timestamp_range', 'geolocation(timestamp)'),
    ('idx_geolocation_timestamp_hour', "geolocation(strftime('%Y-%m-%dT%H:00:00', timestamp))"),
    ('idx_geolocation_timestamp_day', 'geolocation(date(timestamp))'),
    ('idx_geolocation_created_at', 'geolocation(created_at)'),
    ('idx_geolocation_updated_at', 'geolocation(updated_at)'),
    # Spatial
    ('idx_geolocation_latitude', 'geolocation(latitude)'),
    ('idx_geolocation_longitude', 'geolocation(longitude)'),
    (
        'idx_geolocation_spatial_grid',
        f'geolocation(CAST(latitude * {SPATIAL_GRID_SCALE} AS INTEGER), CAST(longitude * {SPATIAL_GRID_SCALE} AS INTEGER))',
    ),
    # Partial
    (
        'idx_geolocation_high_priority_sources',
        f'geolocation(timestamp, latitude, longitude) WHERE source IN ({_HIGH_PRIORITY_SQL})',
    ),
    ('idx_geolocation_high_confidence', 'geolocation(timestamp, latitude, longitude) WHERE confidence > 0.8'),
    (
        'idx_geolocation_high_accuracy',
        'geolocation(timestamp, latitude, longitude) WHERE accuracy IS NOT NULL AND accuracy < 100',
    ),
]


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    up: tuple[str, ...]
    down: tuple[str, ...]


MIGRATIONS = [
    Migration(
        version=1,
        name='initial_schema',
        up=(
            """
            CREATE TABLE IF NOT EXISTS geolocation (
                file_path TEXT PRIMARY KEY,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                source TEXT NOT NULL,
                accuracy REAL,
                confidence REAL,
                timestamp TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """,
        ),
        down=('DROP TABLE IF EXISTS geolocation',),
    ),
    Migration(
        version=2,
        name='comprehensive_index_optimization',
        up=(
            *(f'CREATE INDEX IF NOT EXISTS {name} ON {definition}' for name, definition in GEOLOCATION_INDEXES),
            """
            CREATE TABLE IF NOT EXISTS geolocation_query_stats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query_type TEXT NOT NULL,
                execution_time_ms REAL NOT NULL,
                rows_examined INTEGER,
                rows_returned INTEGER,
                index_used TEXT,
                timestamp TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """,
            'CREATE INDEX IF NOT EXISTS idx_query_stats_type_timestamp ON geolocation_query_stats(query_type, timestamp)',
        ),
        down=(
            *(f'DROP INDEX IF EXISTS {name}' for name, _ in GEOLOCATION_INDEXES),
            'DROP INDEX IF EXISTS idx_query_stats_type_timestamp',
            'DROP TABLE IF EXISTS geolocation_query_stats',
        ),
    ),
    Migration(
        version=3,
        name='query_stats_outcome_tracking',
        up=(
            'ALTER TABLE geolocation_query_stats ADD COLUMN success INTEGER NOT NULL DEFAULT 1',
            'ALTER TABLE geolocation_query_stats ADD COLUMN error_message TEXT',
        ),
        down=(
            'ALTER TABLE geolocation_query_stats DROP COLUMN error_message',
            'ALTER TABLE geolocation_query_stats DROP COLUMN success',
        ),
    ),
]


class MigrationRunner:
    """Apply and roll back schema migrations tracked in schema_migrations"""

    def __init__(self, db: aiosqlite.Connection, migrations: list[Migration] | None = None):
        self.db = db
        self.migrations = sorted(migrations if migrations is not None else MIGRATIONS, key=lambda m: m.version)

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    async def ensure_ledger(self):
        await self.db.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )

    async def get_current_version(self) -> int:
        await self.ensure_ledger()
        async with self.db.execute('SELECT MAX(version) FROM schema_migrations') as cursor:
            row = await cursor.fetchone()
        return row[0] or 0

    async def get_applied_migrations(self) -> list[dict]:
        await self.ensure_ledger()
        async with self.db.execute('SELECT version, name, applied_at FROM schema_migrations ORDER BY version') as cursor:
            rows = await cursor.fetchall()
        return [{'version': row[0], 'name': row[1], 'applied_at': row[2]} for row in rows]

    async def _apply(self, migration: Migration, statements: tuple[str, ...], ledger_sql: str, ledger_params: tuple):
        await self.db.execute('BEGIN')
        try:
            for statement in statements:
                await self.db.execute(statement)
            await self.db.execute(ledger_sql, ledger_params)
            await self.db.execute('COMMIT')
        except Exception as e:
            await self.db.execute('ROLLBACK')
            raise MigrationError(migration.version, migration.name, e) from e

    async def run(self) -> int:
        """Apply pending migrations in ascending order; returns the number applied"""
        current = await self.get_current_version()
        pending = [m for m in self.migrations if m.version > current]

        if not pending:
            logger.debug(f"Database schema is up to date at version {current}")
            return 0

        for migration in pending:
            logger.info(f"Applying migration {migration.version}: {migration.name}")
            await self._apply(
                migration,
                migration.up,
                'INSERT INTO schema_migrations (version, name) VALUES (?, ?)',
                (migration.version, migration.name),
            )

        logger.info(f"Applied {len(pending)} migrations, schema now at version {pending[-1].version}")
        return len(pending)

    async def rollback_to(self, target_version: int) -> int:
        """Undo migrations above target_version in descending order; returns the number undone"""
        current = await self.get_current_version()
        if target_version >= current:
            logger.info(f"Nothing to roll back: current version {current}, target {target_version}")
            return 0

        to_undo = [m for m in reversed(self.migrations) if target_version < m.version <= current]
        for migration in to_undo:
            logger.info(f"Rolling back migration {migration.version}: {migration.name}")
            await self._apply(
                migration,
                migration.down,
                'DELETE FROM schema_migrations WHERE version = ?',
                (migration.version,),
            )

        return len(to_undo)

    async def get_status(self) -> dict:
        current = await self.get_current_version()
        applied = await self.get_applied_migrations()
        pending = [{'version': m.version, 'name': m.name} for m in self.migrations if m.version > current]
        return {
            'current_version': current,
            'latest_version': self.latest_version,
            'is_up_to_date': current >= self.latest_version,
            'applied': applied,
            'pending': pending,
        }
