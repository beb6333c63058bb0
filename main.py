#!/usr/bin/env python

"""
Geo Infer - Photo Geolocation Inference

Infers missing GPS coordinates for Google Takeout photos by correlating capture
times against a location timeline export and other geotagged photos.

Usage:
    main.py [command] [options]

    Default command is 'run-inference' if none specified.

Commands:
    run-inference: Load the timeline, augment it from geotagged photos, and infer coordinates (default)
    migrate: Apply pending database schema migrations
    migration-status: Show applied and pending database migrations
    rollback: Roll the database schema back to --to-version
    db-stats: Display geolocation database statistics
    performance-report: Display query performance and index effectiveness
    db-maintenance: Analyze, reindex, and purge old query statistics
    export-database: Write all stored coordinates to the JSON export
    timeline-stats: Display timeline statistics and temporal gaps

Options:
    --dry-run: Infer without writing sidecars, the location file, or the database
    --verbose: Enable verbose logging output
    --photos-dir: Path to the Takeout photos directory (default: takeout/photos)
    --data-dir: Path to the data directory (default: data)
"""

import aiosqlite
import argparse
import asyncio
import logging
import sys
from collections import Counter
from config import (
    AUGMENTATION_ENABLED,
    BATCH_SIZE,
    DATA_DIR,
    DATABASE_EXPORT_FILE,
    DATABASE_FILE,
    ENABLE_SQLITE_PERSISTENCE,
    LOCATION_FILE,
    PHOTOS_DIR,
    STATS_RETENTION_DAYS,
    TIMELINE_EXPORT_FILE,
)
from core.exceptions import MigrationError, MissingTimestampError, TimelineFormatError
from core.interpolation import InterpolationEngine, InterpolationResult
from core.metadata import PhotoMetadata, SidecarMetadataReader
from core.migrations import MigrationRunner
from core.store import GeolocationStore
from core.timeline import TimelineAugmenter, TimelineIndex
from dataclasses import dataclass, field
from pathlib import Path
from utils.geo import validate_coordinates

logger = logging.getLogger(__name__)


@dataclass
class InferenceStatistics:
    """Tally of inference outcomes for one run"""

    total: int = 0
    skipped_with_gps: int = 0
    successes: Counter = field(default_factory=Counter)
    failures: Counter = field(default_factory=Counter)
    failure_details: list[dict] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(self.successes.values())

    @property
    def failure_count(self) -> int:
        return sum(self.failures.values())

    def record_success(self, file_id: str, result: InterpolationResult):
        self.successes[result.source] += 1
        logger.debug(f"{file_id}: {result.source_label} ({result.latitude:.6f}, {result.longitude:.6f})")

    def record_failure(self, category: str, file_id: str, message: str):
        self.failures[category] += 1
        self.failure_details.append({'category': category, 'file_id': file_id, 'message': message})

    def summary(self) -> dict:
        return {
            'total': self.total,
            'skipped_with_gps': self.skipped_with_gps,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'successes_by_source': dict(self.successes),
            'failures_by_category': dict(self.failures),
        }

    def log_summary(self):
        logger.info(f"Processed {self.total} photos: {self.success_count} located, {self.failure_count} failed")
        for source, count in self.successes.most_common():
            logger.info(f"  {source}: {count}")
        for category, count in self.failures.most_common():
            logger.warning(f"  {category}: {count}")


class GeoInferencePipeline:
    """Orchestrates timeline loading, augmentation, and batched inference"""

    def __init__(
        self,
        photos_dir: Path = PHOTOS_DIR,
        data_dir: Path = DATA_DIR,
        dry_run: bool = False,
        batch_size: int = BATCH_SIZE,
        store: GeolocationStore | None = None,
        reader: SidecarMetadataReader | None = None,
    ):
        self.photos_dir = photos_dir
        self.data_dir = data_dir
        self.dry_run = dry_run
        self.batch_size = batch_size
        self.location_file = data_dir / LOCATION_FILE
        self.timeline_file = data_dir / TIMELINE_EXPORT_FILE

        self.index = TimelineIndex()
        self.store = store or GeolocationStore(
            db_path=data_dir / DATABASE_FILE,
            export_path=data_dir / DATABASE_EXPORT_FILE,
            enable_sqlite=ENABLE_SQLITE_PERSISTENCE and not dry_run,
        )
        self.reader = reader or SidecarMetadataReader()
        self.engine = InterpolationEngine(self.index, self.store, self.reader)
        self.augmenter = TimelineAugmenter(self.index)
        self.stats = InferenceStatistics()

    async def startup(self):
        """Open the store and build the timeline index"""
        await self.store.initialize()
        await self.index.load_file(self.location_file)
        await self.index.load_file(self.timeline_file)
        logger.info(f"Timeline index holds {len(self.index)} points")

    async def discover(self) -> list[PhotoMetadata]:
        file_ids = self.reader.discover(self.photos_dir)
        photos = await asyncio.gather(*(self.reader.read_metadata(file_id) for file_id in file_ids))
        return [photo or PhotoMetadata(file_id=file_id) for file_id, photo in zip(file_ids, photos)]

    async def augment(self, photos: list[PhotoMetadata]):
        """Feed geotagged photos to the index, the nearby-image registry, and the store"""
        geotagged = [p for p in photos if p.has_gps and validate_coordinates(p.latitude, p.longitude)]
        logger.info(f"Found {len(geotagged)} geotagged photos of {len(photos)}")

        for photo in geotagged:
            if photo.timestamp is not None:
                self.engine.register_nearby_image(photo.file_id, photo.latitude, photo.longitude, photo.timestamp)
            await self.store.store_coordinates(
                photo.file_id,
                {'latitude': photo.latitude, 'longitude': photo.longitude, 'confidence': 1.0},
                'image_exif',
                photo.timestamp,
            )

        if not AUGMENTATION_ENABLED:
            return
        if self.dry_run:
            self.augmenter.augment(geotagged)
        else:
            await self.augmenter.augment_and_save(geotagged, self.location_file)

    async def process_photo(self, photo: PhotoMetadata):
        """Infer one photo, tallying the outcome; never raises"""
        try:
            result = await self.engine.interpolate_coordinates(photo.timestamp, photo.file_id)
        except MissingTimestampError as e:
            self.stats.record_failure('missing_timestamp', photo.file_id, str(e))
            return
        except Exception as e:
            logger.error(f"Error processing {photo.file_id}: {e}", exc_info=True)
            self.stats.record_failure('processing_error', photo.file_id, str(e))
            return

        if result is None:
            self.stats.record_failure('no_coordinates', photo.file_id, 'All interpolation methods failed')
            return

        self.stats.record_success(photo.file_id, result)
        if self.dry_run:
            logger.info(f"DRY RUN: Would write {result.source_label} coordinates to {photo.file_id}")
            return

        try:
            await self.reader.write_coordinates(photo.file_id, result.latitude, result.longitude, result.source_label)
        except OSError as e:
            logger.error(f"Failed to write coordinates for {photo.file_id}: {e}")
            self.stats.record_failure('write_error', photo.file_id, str(e))

    async def process_batches(self, photos: list[PhotoMetadata]):
        total_batches = (len(photos) + self.batch_size - 1) // self.batch_size
        for batch_number, start in enumerate(range(0, len(photos), self.batch_size), start=1):
            batch = photos[start : start + self.batch_size]
            logger.info(f"[{batch_number}/{total_batches}] Processing {len(batch)} photos")
            await asyncio.gather(*(self.process_photo(photo) for photo in batch))

    async def finalize(self):
        if not self.dry_run:
            await self.store.export_database()
        await self.store.run_maintenance_if_due()

    async def run(self) -> bool:
        """Execute the complete inference pipeline"""
        logger.info("Starting geolocation inference pipeline")
        if self.dry_run:
            logger.info("DRY RUN MODE - No files will be modified")

        try:
            await self.startup()
        except (MigrationError, TimelineFormatError) as e:
            logger.error(f"Startup failed: {e}")
            await self.store.close()
            return False

        try:
            photos = await self.discover()
            await self.augment(photos)

            targets = [p for p in photos if not p.has_gps]
            self.stats.total = len(targets)
            self.stats.skipped_with_gps = len(photos) - len(targets)
            await self.process_batches(targets)

            await self.finalize()
        finally:
            await self.store.close()

        self.stats.log_summary()
        logger.info("Inference completed")
        return True


async def migrate(db_path: Path) -> bool:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path, isolation_level=None) as db:
        runner = MigrationRunner(db)
        try:
            applied = await runner.run()
        except MigrationError as e:
            logger.error(str(e))
            return False
        status = await runner.get_status()
    print(f"Applied {applied} migrations, schema at version {status['current_version']}")
    return True


async def migration_status(db_path: Path) -> bool:
    async with aiosqlite.connect(db_path, isolation_level=None) as db:
        status = await MigrationRunner(db).get_status()

    print("\n=== Migration Status ===")
    print(f"Current version: {status['current_version']}")
    print(f"Latest version: {status['latest_version']}")
    print(f"Up to date: {status['is_up_to_date']}")
    for migration in status['applied']:
        print(f"  [applied] {migration['version']}: {migration['name']} ({migration['applied_at']})")
    for migration in status['pending']:
        print(f"  [pending] {migration['version']}: {migration['name']}")
    return True


async def rollback(db_path: Path, target_version: int) -> bool:
    async with aiosqlite.connect(db_path, isolation_level=None) as db:
        try:
            undone = await MigrationRunner(db).rollback_to(target_version)
        except MigrationError as e:
            logger.error(str(e))
            return False
    print(f"Rolled back {undone} migrations to version {target_version}")
    return True


async def database_command(command: str, data_dir: Path) -> bool:
    store = GeolocationStore(db_path=data_dir / DATABASE_FILE, export_path=data_dir / DATABASE_EXPORT_FILE)
    try:
        await store.initialize()
    except MigrationError as e:
        logger.error(str(e))
        return False

    try:
        if command == 'db-stats':
            stats = await store.get_statistics()
            print("\n=== Geolocation Database Statistics ===")
            print(f"Total records: {stats['total_records']}")
            print(f"Memory records: {stats['memory_records']}")
            print(f"SQLite enabled: {stats['sqlite_enabled']}")
            for source, count in sorted(stats['sources'].items()):
                print(f"  {source}: {count}")
            for name in ('accuracy', 'confidence'):
                summary = stats[name]
                print(f"{name.title()}: count={summary['count']} min={summary['min']} max={summary['max']} "
                      f"mean={summary['mean']} median={summary['median']}")

        elif command == 'performance-report':
            if store.monitor is None:
                print("SQLite persistence disabled - no query telemetry available")
                return True
            stats = await store.monitor.get_performance_stats()
            analysis = await store.monitor.analyze_index_effectiveness()
            print("\n=== Query Performance (last 24h) ===")
            for row in stats['query_types']:
                print(f"  {row['query_type']}: {row['count']} queries, avg {row['avg_time']:.2f}ms, "
                      f"max {row['max_time']:.2f}ms, errors {row['error_count']}")
            print("\n=== Index Usage ===")
            for row in stats['index_usage']:
                efficiency = analysis['index_efficiency'].get(row['index_used'])
                print(f"  {row['index_used']}: {row['usage_count']} uses, efficiency {efficiency}")
            for recommendation in analysis['recommendations']:
                print(f"[{recommendation['priority']}] {recommendation['message']}")
            for optimization in analysis['query_optimizations']:
                print(f"[query] {optimization['query_type']}: {optimization['recommendation']}")

        elif command == 'db-maintenance':
            purged = await store.run_maintenance(STATS_RETENTION_DAYS)
            print(f"Maintenance complete, purged {purged} old query stats")

        elif command == 'export-database':
            path = await store.export_database()
            print(f"Exported database to {path}")

        return True
    finally:
        await store.close()


async def timeline_stats(data_dir: Path) -> bool:
    index = TimelineIndex()
    try:
        await index.load_file(data_dir / LOCATION_FILE)
        await index.load_file(data_dir / TIMELINE_EXPORT_FILE)
    except TimelineFormatError as e:
        logger.error(str(e))
        return False

    stats = index.get_statistics()
    gaps = TimelineAugmenter(index).find_temporal_gaps()

    print("\n=== Timeline Statistics ===")
    print(f"Total points: {stats['total_records']}")
    if stats['date_range']:
        print(f"Date range: {stats['date_range']['start']} to {stats['date_range']['end']}")
    for source, count in sorted(stats['sources'].items()):
        print(f"  {source}: {count}")
    print(f"Gaps over 24 hours: {len(gaps)}")
    for gap in gaps[:10]:
        print(f"  {gap['start']} to {gap['end']} ({gap['duration_hours']}h)")
    return True


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Geo Infer - Photo Geolocation Inference",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument('command', nargs='?', default='run-inference', help='Command to execute (default: run-inference)')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done without making changes')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging output')
    parser.add_argument('--photos-dir', type=Path, default=PHOTOS_DIR, help='Path to Takeout photos directory')
    parser.add_argument('--data-dir', type=Path, default=DATA_DIR, help='Path to data directory')
    parser.add_argument('--to-version', type=int, default=0, help='Target schema version for rollback')

    return parser.parse_args()


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s', force=True)


def main():
    args = parse_arguments()

    # Setup logging
    setup_logging(args.verbose)

    command = args.command
    db_path = args.data_dir / DATABASE_FILE

    if command == "run-inference":
        pipeline = GeoInferencePipeline(photos_dir=args.photos_dir, data_dir=args.data_dir, dry_run=args.dry_run)
        success = asyncio.run(pipeline.run())
        sys.exit(0 if success else 1)

    elif command == "migrate":
        sys.exit(0 if asyncio.run(migrate(db_path)) else 1)

    elif command == "migration-status":
        if not db_path.exists():
            logger.error(f"Database not found: {db_path}")
            sys.exit(1)
        sys.exit(0 if asyncio.run(migration_status(db_path)) else 1)

    elif command == "rollback":
        if not db_path.exists():
            logger.error(f"Database not found: {db_path}")
            sys.exit(1)
        if args.dry_run:
            logger.info(f"DRY RUN: Would roll back schema to version {args.to_version}")
            sys.exit(0)
        sys.exit(0 if asyncio.run(rollback(db_path, args.to_version)) else 1)

    elif command in ("db-stats", "performance-report", "db-maintenance", "export-database"):
        sys.exit(0 if asyncio.run(database_command(command, args.data_dir)) else 1)

    elif command == "timeline-stats":
        sys.exit(0 if asyncio.run(timeline_stats(args.data_dir)) else 1)

    else:
        print(__doc__.strip())


if __name__ == "__main__":
    main()
