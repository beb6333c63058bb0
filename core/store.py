"""Priority-ranked geolocation store.

Maps a photo identifier to its best-known coordinate. An in-memory tier sits in
front of a SQLite tier; writes are accepted only when the incoming source ranks
strictly higher than the one already stored, and the check-then-write is
serialized per identifier.
"""

import aiosqlite
import asyncio
import json
import logging
import math
import statistics
import weakref
from collections import Counter
from config import (
    DATA_DIR,
    DATABASE_EXPORT_FILE,
    DATABASE_FILE,
    ENABLE_SQLITE_PERSISTENCE,
    MAINTENANCE_INTERVAL_HOURS,
    PROXIMITY_RESULT_LIMIT,
    SLOW_QUERY_THRESHOLD_MS,
    SOURCE_PRIORITIES,
    SPATIAL_GRID_SCALE,
    STATS_RETENTION_DAYS,
    TIME_RANGE_RESULT_LIMIT,
)
from core.exceptions import InvalidCoordinatesError, MigrationError
from core.migrations import MigrationRunner
from core.performance import QueryPerformanceMonitor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from utils.geo import distance_km, validate_coordinates
from utils.timeutils import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0

ENTRY_COLUMNS = 'file_path, latitude, longitude, source, accuracy, confidence, timestamp'


def source_priority(source: str | None) -> int:
    return SOURCE_PRIORITIES.get(source, 0)


def longitude_ranges(longitude: float, delta: float) -> list[tuple[float, float]]:
    """Longitude intervals covering longitude +/- delta, split at the antimeridian"""
    low, high = longitude - delta, longitude + delta
    if high - low >= 360:
        return [(-180.0, 180.0)]
    if low < -180:
        return [(low + 360, 180.0), (-180.0, high)]
    if high > 180:
        return [(low, 180.0), (-180.0, high - 360)]
    return [(low, high)]


@dataclass(frozen=True)
class CacheEntry:
    file_id: str
    latitude: float
    longitude: float
    source: str
    accuracy: float | None
    confidence: float | None
    timestamp: datetime

    @classmethod
    def from_row(cls, row) -> 'CacheEntry | None':
        """Build an entry from a database row; rows with an unreadable timestamp are skipped"""
        timestamp = parse_timestamp(row['timestamp'])
        if timestamp is None:
            logger.warning(f"Skipping stored coordinates for {row['file_path']}: bad timestamp {row['timestamp']!r}")
            return None
        return cls(
            file_id=row['file_path'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            source=row['source'],
            accuracy=row['accuracy'],
            confidence=row['confidence'],
            timestamp=timestamp,
        )

    @classmethod
    def from_export(cls, item: dict) -> 'CacheEntry | None':
        file_id = item.get('filePath')
        lat, lon = item.get('latitude'), item.get('longitude')
        if not file_id or not validate_coordinates(lat, lon):
            return None
        timestamp = parse_timestamp(item.get('timestamp'))
        if timestamp is None:
            logger.warning(f"Skipping exported coordinates for {file_id}: bad timestamp {item.get('timestamp')!r}")
            return None
        return cls(
            file_id=file_id,
            latitude=lat,
            longitude=lon,
            source=item.get('source') or 'unknown',
            accuracy=item.get('accuracy'),
            confidence=item.get('confidence'),
            timestamp=timestamp,
        )

    def to_export(self) -> dict:
        return {
            'filePath': self.file_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'source': self.source,
            'accuracy': self.accuracy,
            'confidence': self.confidence,
            'timestamp': to_iso(self.timestamp),
        }


def entries_from_rows(rows) -> list[CacheEntry]:
    return [entry for entry in map(CacheEntry.from_row, rows) if entry is not None]


def _summarize(values: list[float]) -> dict:
    if not values:
        return {'count': 0, 'min': None, 'max': None, 'mean': None, 'median': None}
    return {
        'count': len(values),
        'min': min(values),
        'max': max(values),
        'mean': round(statistics.fmean(values), 3),
        'median': statistics.median(values),
    }


class GeolocationStore:
    """Two-tier photo coordinate store arbitrated by source priority"""

    def __init__(
        self,
        db_path: Path | str = DATA_DIR / DATABASE_FILE,
        export_path: Path | None = DATA_DIR / DATABASE_EXPORT_FILE,
        enable_sqlite: bool = ENABLE_SQLITE_PERSISTENCE,
        slow_query_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS,
        maintenance_interval_hours: float = MAINTENANCE_INTERVAL_HOURS,
    ):
        self.db_path = db_path
        self.export_path = export_path
        self.enable_sqlite = enable_sqlite
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.maintenance_interval_hours = maintenance_interval_hours

        self.memory: dict[str, CacheEntry] = {}
        self.db: aiosqlite.Connection | None = None
        self.monitor: QueryPerformanceMonitor | None = None
        self.migrations: MigrationRunner | None = None
        self.last_maintenance: datetime | None = None
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def initialize(self):
        """Load the JSON export, then open SQLite and bring its schema up to date"""
        if self.export_path is not None:
            loaded = await self.load_export(self.export_path)
            if loaded:
                logger.info(f"Loaded {loaded} cached coordinates from {self.export_path}")

        if not self.enable_sqlite:
            logger.info("SQLite persistence disabled, using in-memory store only")
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self.db.row_factory = aiosqlite.Row
        self.migrations = MigrationRunner(self.db)
        try:
            await self.migrations.run()
        except MigrationError:
            logger.error("Database migration failed, aborting store initialization")
            await self.close()
            raise

        self.monitor = QueryPerformanceMonitor(self.db, self.slow_query_threshold_ms)
        logger.info(f"Geolocation database ready at {self.db_path}")

    @property
    def sqlite_enabled(self) -> bool:
        return self.db is not None

    def _lock_for(self, file_id: str) -> asyncio.Lock:
        lock = self._locks.get(file_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[file_id] = lock
        return lock

    async def store_coordinates(
        self, file_id: str, coords: dict, source: str, original_timestamp: datetime | None = None
    ) -> bool:
        """Store coordinates if the source outranks whatever is already stored.

        Raises InvalidCoordinatesError before any mutation when the coordinates
        are out of range or the (0, 0) placeholder.
        """
        latitude, longitude = coords.get('latitude'), coords.get('longitude')
        if not validate_coordinates(latitude, longitude):
            raise InvalidCoordinatesError(latitude, longitude)

        timestamp = parse_timestamp(original_timestamp) if original_timestamp is not None else None
        entry = CacheEntry(
            file_id=file_id,
            latitude=float(latitude),
            longitude=float(longitude),
            source=source,
            accuracy=coords.get('accuracy'),
            confidence=coords.get('confidence'),
            timestamp=timestamp or datetime.now(UTC),
        )

        async with self._lock_for(file_id):
            existing = await self.get_coordinates(file_id)
            new_priority = source_priority(source)
            existing_priority = source_priority(existing.source) if existing else -1

            if existing is not None and existing_priority >= new_priority:
                logger.debug(
                    f"Skipping lower priority update for {file_id}: {source} ({new_priority}) "
                    f"vs {existing.source} ({existing_priority})"
                )
                return False

            self.memory[file_id] = entry
            if self.db is not None:
                try:
                    await self.monitor.monitor_query(
                        'store_coordinates',
                        f"""
                        INSERT INTO geolocation ({ENTRY_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(file_path) DO UPDATE SET
                            latitude = excluded.latitude,
                            longitude = excluded.longitude,
                            source = excluded.source,
                            accuracy = excluded.accuracy,
                            confidence = excluded.confidence,
                            timestamp = excluded.timestamp,
                            updated_at = CURRENT_TIMESTAMP
                        """,
                        (
                            file_id,
                            entry.latitude,
                            entry.longitude,
                            entry.source,
                            entry.accuracy,
                            entry.confidence,
                            to_iso(entry.timestamp),
                        ),
                        fetch='none',
                    )
                except aiosqlite.Error as e:
                    logger.error(f"Failed to persist coordinates for {file_id}: {e}")

        logger.debug(f"Stored coordinates for {file_id} from {source}")
        return True

    async def get_coordinates(self, file_id: str) -> CacheEntry | None:
        """Memory tier first, then SQLite; durable hits are cached in memory"""
        entry = self.memory.get(file_id)
        if entry is not None or self.db is None:
            return entry

        try:
            row = await self.monitor.monitor_query(
                'get_coordinates',
                f'SELECT {ENTRY_COLUMNS} FROM geolocation WHERE file_path = ?',
                (file_id,),
                fetch='one',
            )
        except aiosqlite.Error as e:
            logger.error(f"Failed to read coordinates for {file_id}: {e}")
            return None

        entry = CacheEntry.from_row(row) if row is not None else None
        if entry is not None:
            self.memory[file_id] = entry
        return entry

    async def has_coordinates(self, file_id: str) -> bool:
        return await self.get_coordinates(file_id) is not None

    async def find_by_time_range(
        self, target: datetime, tolerance_minutes: float = 60, limit: int = TIME_RANGE_RESULT_LIMIT
    ) -> list[CacheEntry]:
        """Entries captured within tolerance of target, closest first"""
        target = parse_timestamp(target)
        if target is None:
            return []
        start = target - timedelta(minutes=tolerance_minutes)
        end = target + timedelta(minutes=tolerance_minutes)

        if self.db is None:
            matches = [e for e in self.memory.values() if start <= e.timestamp <= end]
            matches.sort(key=lambda e: abs((e.timestamp - target).total_seconds()))
            return matches[:limit]

        try:
            rows = await self.monitor.monitor_query(
                'find_by_time_range',
                f"""
                SELECT {ENTRY_COLUMNS} FROM geolocation
                WHERE timestamp BETWEEN ? AND ?
                ORDER BY ABS(julianday(timestamp) - julianday(?))
                LIMIT ?
                """,
                (to_iso(start), to_iso(end), to_iso(target), limit),
            )
        except aiosqlite.Error as e:
            logger.error(f"Time range query failed: {e}")
            return []
        return entries_from_rows(rows)

    async def find_by_proximity(
        self, latitude: float, longitude: float, radius_km: float = 1.0, limit: int = PROXIMITY_RESULT_LIMIT
    ) -> list[tuple[CacheEntry, float]]:
        """Entries within radius_km, nearest first, as (entry, distance_km) pairs"""
        if self.db is None:
            candidates = list(self.memory.values())
        else:
            lat_delta = radius_km / KM_PER_DEGREE
            lon_delta = radius_km / (KM_PER_DEGREE * max(math.cos(math.radians(latitude)), 0.01))
            lon_ranges = longitude_ranges(longitude, lon_delta)
            # One grid unit of margin on each side covers truncation toward zero
            params = [
                int((latitude - lat_delta) * SPATIAL_GRID_SCALE) - 1,
                int((latitude + lat_delta) * SPATIAL_GRID_SCALE) + 1,
            ]
            for low, high in lon_ranges:
                params += [int(low * SPATIAL_GRID_SCALE) - 1, int(high * SPATIAL_GRID_SCALE) + 1]
            lon_clause = ' OR '.join(
                f'CAST(longitude * {SPATIAL_GRID_SCALE} AS INTEGER) BETWEEN ? AND ?' for _ in lon_ranges
            )
            try:
                rows = await self.monitor.monitor_query(
                    'find_by_proximity',
                    f"""
                    SELECT {ENTRY_COLUMNS} FROM geolocation
                    WHERE CAST(latitude * {SPATIAL_GRID_SCALE} AS INTEGER) BETWEEN ? AND ?
                      AND ({lon_clause})
                    """,
                    tuple(params),
                )
            except aiosqlite.Error as e:
                logger.error(f"Proximity query failed: {e}")
                return []
            candidates = entries_from_rows(rows)

        matches = []
        for entry in candidates:
            distance = distance_km(latitude, longitude, entry.latitude, entry.longitude)
            if distance <= radius_km:
                matches.append((entry, distance))
        matches.sort(key=lambda match: match[1])
        return matches[:limit]

    async def get_all_coordinates(self) -> list[CacheEntry]:
        entries = {}
        if self.db is not None:
            try:
                rows = await self.monitor.monitor_query(
                    'get_all_coordinates', f'SELECT {ENTRY_COLUMNS} FROM geolocation ORDER BY file_path'
                )
                entries = {entry.file_id: entry for entry in entries_from_rows(rows)}
            except aiosqlite.Error as e:
                logger.error(f"Failed to read all coordinates: {e}")
        entries.update(self.memory)
        return sorted(entries.values(), key=lambda e: e.file_id)

    async def remove_coordinates(self, file_id: str) -> bool:
        async with self._lock_for(file_id):
            removed = self.memory.pop(file_id, None) is not None
            if self.db is not None:
                try:
                    deleted = await self.monitor.monitor_query(
                        'remove_coordinates', 'DELETE FROM geolocation WHERE file_path = ?', (file_id,), fetch='none'
                    )
                    removed = removed or deleted > 0
                except aiosqlite.Error as e:
                    logger.error(f"Failed to remove coordinates for {file_id}: {e}")
        return removed

    async def clear_all(self):
        self.memory.clear()
        if self.db is not None:
            try:
                await self.monitor.monitor_query('clear_all', 'DELETE FROM geolocation', fetch='none')
            except aiosqlite.Error as e:
                logger.error(f"Failed to clear stored coordinates: {e}")
                return
        logger.info("Cleared all stored coordinates")

    async def load_export(self, path: Path) -> int:
        """Populate the memory tier from a JSON export; missing or corrupt files load nothing"""
        if not path.exists():
            return 0

        def _read():
            with open(path, encoding='utf-8') as f:
                return json.load(f)

        try:
            data = await asyncio.to_thread(_read)
        except json.JSONDecodeError as e:
            logger.warning(f"Could not load geolocation export {path}: {e}")
            return 0

        loaded = 0
        for item in data if isinstance(data, list) else []:
            entry = CacheEntry.from_export(item) if isinstance(item, dict) else None
            if entry is not None:
                self.memory[entry.file_id] = entry
                loaded += 1
        return loaded

    async def export_database(self, path: Path | None = None) -> Path:
        """Write every stored entry as a flat JSON array"""
        path = path or self.export_path
        data = [entry.to_export() for entry in await self.get_all_coordinates()]

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)

        await asyncio.to_thread(_write)
        logger.info(f"Exported {len(data)} geolocation records to {path}")
        return path

    async def get_statistics(self) -> dict:
        entries = await self.get_all_coordinates()
        return {
            'total_records': len(entries),
            'memory_records': len(self.memory),
            'sqlite_enabled': self.sqlite_enabled,
            'sources': dict(Counter(entry.source for entry in entries)),
            'accuracy': _summarize([e.accuracy for e in entries if e.accuracy is not None]),
            'confidence': _summarize([e.confidence for e in entries if e.confidence is not None]),
        }

    async def run_maintenance(self, retention_days: int = STATS_RETENTION_DAYS) -> int:
        """ANALYZE/REINDEX/optimize and purge old telemetry; returns purged row count"""
        if self.monitor is None:
            return 0
        await self.monitor.run_index_maintenance()
        purged = await self.monitor.clean_old_stats(retention_days)
        self.last_maintenance = datetime.now(UTC)
        return purged

    async def run_maintenance_if_due(self, retention_days: int = STATS_RETENTION_DAYS) -> bool:
        if self.monitor is None:
            return False
        now = datetime.now(UTC)
        if self.last_maintenance and now - self.last_maintenance < timedelta(hours=self.maintenance_interval_hours):
            return False
        await self.run_maintenance(retention_days)
        return True

    async def close(self):
        if self.db is not None:
            await self.db.close()
            self.db = None
            self.monitor = None
