import asyncio
import bisect
import json
import logging
import shutil
import threading
from collections import Counter
from config import (
    CREATE_TIMELINE_BACKUP,
    DUPLICATE_DISTANCE_METERS,
    EXACT_TIME_TOLERANCE_MINUTES,
    IMAGE_POINT_ACCURACY_METERS,
    LOCATION_BACKUP_PREFIX,
    MAX_TOLERANCE_HOURS,
    PROGRESSIVE_TOLERANCES_MINUTES,
    SPATIAL_MAX_SPAN_MINUTES,
    TEMPORAL_GAP_HOURS,
)
from core.exceptions import TimelineFormatError
from core.timeline_formats import TimelineFormat, coerce_timestamp, extract_points
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from utils.geo import distance_meters, normalize_location, validate_coordinates
from utils.timeutils import from_epoch_ms, ms_to_iso, parse_timestamp, to_epoch_ms

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60 * 1000


@dataclass(frozen=True, slots=True)
class LocationRecord:
    timestamp_ms: int
    latitude: float
    longitude: float
    source: str
    accuracy: float | None = None

    @property
    def timestamp(self) -> datetime:
        return from_epoch_ms(self.timestamp_ms)

    def is_better_than(self, other: 'LocationRecord') -> bool:
        """Lower accuracy figure wins; an unknown accuracy never wins"""
        if self.accuracy is None:
            return False
        return other.accuracy is None or self.accuracy < other.accuracy

    def to_dict(self) -> dict:
        return {
            'timestamp': ms_to_iso(self.timestamp_ms),
            'latitude': self.latitude,
            'longitude': self.longitude,
            'source': self.source,
            'accuracy': self.accuracy,
        }


@dataclass(frozen=True, slots=True)
class TimelineMatch:
    record: LocationRecord
    time_difference: float  # minutes

    @property
    def latitude(self) -> float:
        return self.record.latitude

    @property
    def longitude(self) -> float:
        return self.record.longitude

    @property
    def accuracy(self) -> float | None:
        return self.record.accuracy

    @property
    def source(self) -> str:
        return self.record.source


@dataclass
class IngestReport:
    format: TimelineFormat
    points_found: int = 0
    points_added: int = 0
    points_dropped: int = 0
    points_superseded: int = 0


class TimelineIndex:
    """Time-ordered, deduplicated set of known locations keyed by epoch milliseconds"""

    def __init__(self):
        self._records: dict[int, LocationRecord] = {}
        self._keys: list[int] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    def _build_record(self, timestamp, raw_location: dict | None, source: str) -> LocationRecord | None:
        dt = coerce_timestamp(timestamp)
        if dt is None:
            logger.debug(f"Invalid timestamp from {source}: {timestamp!r}")
            return None

        coords = normalize_location(raw_location)
        if coords is None or not validate_coordinates(*coords):
            logger.debug(f"Invalid coordinates from {source}: {raw_location!r}")
            return None

        accuracy = raw_location.get('accuracy') if isinstance(raw_location, dict) else None
        if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or accuracy <= 0:
            accuracy = None

        return LocationRecord(
            timestamp_ms=to_epoch_ms(dt),
            latitude=coords[0],
            longitude=coords[1],
            source=source,
            accuracy=float(accuracy) if accuracy is not None else None,
        )

    def _insert(self, record: LocationRecord) -> bool:
        with self._lock:
            existing = self._records.get(record.timestamp_ms)
            if existing is None:
                bisect.insort(self._keys, record.timestamp_ms)
            elif not record.is_better_than(existing):
                return False
            self._records[record.timestamp_ms] = record
            return True

    def add_point(self, timestamp, raw_location: dict | None, source: str) -> bool:
        """Validate and insert a point, keeping the better-accuracy record on key collisions"""
        record = self._build_record(timestamp, raw_location, source)
        if record is None:
            return False
        return self._insert(record)

    def add_image_derived_point(self, file_id: str, coords: tuple[float, float], timestamp) -> bool:
        """Densify the index with a photo that already has GPS"""
        location = {'latitude': coords[0], 'longitude': coords[1], 'accuracy': IMAGE_POINT_ACCURACY_METERS}
        return self.add_point(timestamp, location, f'image:{file_id}')

    def ingest(self, document) -> IngestReport:
        """Normalize a timeline document and add every valid point"""
        timeline_format, candidates = extract_points(document)
        report = IngestReport(format=timeline_format, points_found=len(candidates))

        for candidate in candidates:
            record = self._build_record(candidate.timestamp, candidate.location, candidate.source)
            if record is None:
                report.points_dropped += 1
            elif self._insert(record):
                report.points_added += 1
            else:
                report.points_superseded += 1

        logger.info(
            f"Ingested {timeline_format.value} timeline: {report.points_added} added, "
            f"{report.points_dropped} dropped, {report.points_superseded} superseded of {report.points_found}"
        )
        return report

    def nearest(self, target, tolerance_minutes: float) -> TimelineMatch | None:
        """Closest record within tolerance; on equal distance the earlier record wins"""
        target_dt = parse_timestamp(target)
        if target_dt is None:
            return None
        target_ms = to_epoch_ms(target_dt)
        tolerance_ms = tolerance_minutes * MS_PER_MINUTE

        with self._lock:
            position = bisect.bisect_left(self._keys, target_ms)
            best_key = None
            for candidate_position in (position - 1, position):
                if 0 <= candidate_position < len(self._keys):
                    key = self._keys[candidate_position]
                    if best_key is None or abs(key - target_ms) < abs(best_key - target_ms):
                        best_key = key

            if best_key is None or abs(best_key - target_ms) > tolerance_ms:
                return None
            record = self._records[best_key]

        return TimelineMatch(record=record, time_difference=abs(best_key - target_ms) / MS_PER_MINUTE)

    def nearest_with_escalation(
        self, target, max_tolerance_hours: float = MAX_TOLERANCE_HOURS, progressive_search: bool = True
    ) -> TimelineMatch | None:
        """Retry nearest() with widening tolerances up to max_tolerance_hours"""
        max_minutes = max_tolerance_hours * 60
        tolerances = [*PROGRESSIVE_TOLERANCES_MINUTES, max_minutes] if progressive_search else [max_minutes]

        for tolerance in tolerances:
            match = self.nearest(target, tolerance)
            if match is not None:
                logger.debug(f"Escalated search matched at {tolerance} minute tolerance")
                return match

        return None

    def bracket(self, target, max_span_minutes: float = SPATIAL_MAX_SPAN_MINUTES) -> tuple[LocationRecord, LocationRecord] | None:
        """Nearest records strictly before and strictly after target, each within max_span_minutes"""
        target_dt = parse_timestamp(target)
        if target_dt is None:
            return None
        target_ms = to_epoch_ms(target_dt)
        span_ms = max_span_minutes * MS_PER_MINUTE

        with self._lock:
            before_position = bisect.bisect_left(self._keys, target_ms) - 1
            after_position = bisect.bisect_right(self._keys, target_ms)
            if before_position < 0 or after_position >= len(self._keys):
                return None

            before = self._records[self._keys[before_position]]
            after = self._records[self._keys[after_position]]

        if target_ms - before.timestamp_ms > span_ms or after.timestamp_ms - target_ms > span_ms:
            return None
        return before, after

    def records(self) -> list[LocationRecord]:
        with self._lock:
            return [self._records[key] for key in self._keys]

    def export(self) -> list[dict]:
        """Full point set as a time-sorted list of plain dicts"""
        return [record.to_dict() for record in self.records()]

    def clear(self):
        with self._lock:
            self._records.clear()
            self._keys.clear()

    def get_statistics(self) -> dict:
        records = self.records()
        if not records:
            return {'total_records': 0, 'date_range': None, 'sources': {}}

        return {
            'total_records': len(records),
            'date_range': {
                'start': ms_to_iso(records[0].timestamp_ms),
                'end': ms_to_iso(records[-1].timestamp_ms),
            },
            'sources': dict(Counter(record.source for record in records)),
        }

    async def load_file(self, path: Path) -> IngestReport | None:
        """Read a timeline JSON file and ingest it"""
        if not path.exists():
            logger.info(f"Timeline file not found: {path}")
            return None

        def _read():
            with open(path, encoding='utf-8') as f:
                return json.load(f)

        try:
            document = await asyncio.to_thread(_read)
        except json.JSONDecodeError as e:
            raise TimelineFormatError(f"Could not decode timeline file {path}: {e}") from e

        return self.ingest(document)

    async def save_file(self, path: Path):
        """Write the flat export to disk"""
        data = self.export()

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)

        await asyncio.to_thread(_write)
        logger.info(f"Saved {len(data)} timeline points to {path}")


@dataclass
class AugmentationResult:
    augmented: int = 0
    duplicates: int = 0
    errors: int = 0
    backup_path: Path | None = None
    skipped: list[str] = field(default_factory=list)


class TimelineAugmenter:
    """Densify a timeline index with points from already geotagged photos"""

    def __init__(
        self,
        index: TimelineIndex,
        exact_time_tolerance_minutes: float = EXACT_TIME_TOLERANCE_MINUTES,
        duplicate_distance_meters: float = DUPLICATE_DISTANCE_METERS,
        create_backup: bool = CREATE_TIMELINE_BACKUP,
    ):
        self.index = index
        self.exact_time_tolerance_minutes = exact_time_tolerance_minutes
        self.duplicate_distance_meters = duplicate_distance_meters
        self.create_backup = create_backup

    def is_duplicate(self, latitude: float, longitude: float, timestamp) -> bool:
        """An existing point close in both time and space makes the photo redundant"""
        match = self.index.nearest(timestamp, self.exact_time_tolerance_minutes)
        if match is None:
            return False
        return distance_meters(latitude, longitude, match.latitude, match.longitude) < self.duplicate_distance_meters

    def augment(self, photos: list) -> AugmentationResult:
        """Add one image-derived point per geotagged photo with a timestamp"""
        result = AugmentationResult()

        for photo in photos:
            if not photo.has_gps or photo.timestamp is None:
                continue

            if not validate_coordinates(photo.latitude, photo.longitude):
                logger.warning(f"Invalid GPS in {photo.file_id}: lat={photo.latitude}, lon={photo.longitude}")
                result.errors += 1
                result.skipped.append(photo.file_id)
                continue

            if self.is_duplicate(photo.latitude, photo.longitude, photo.timestamp):
                result.duplicates += 1
                continue

            if self.index.add_image_derived_point(photo.file_id, (photo.latitude, photo.longitude), photo.timestamp):
                result.augmented += 1
            else:
                result.duplicates += 1

        logger.info(
            f"Timeline augmentation: {result.augmented} added, {result.duplicates} duplicates, {result.errors} errors"
        )
        return result

    def backup_location_file(self, location_file: Path) -> Path | None:
        if not self.create_backup or not location_file.exists():
            return None
        stamp = datetime.now(UTC).strftime('%Y%m%dT%H%M%S')
        backup_path = location_file.with_name(f'{LOCATION_BACKUP_PREFIX}-{stamp}.json')
        shutil.copy2(location_file, backup_path)
        logger.info(f"Backed up {location_file} to {backup_path}")
        return backup_path

    async def augment_and_save(self, photos: list, location_file: Path) -> AugmentationResult:
        """Augment the index and rewrite the location file when anything was added"""
        result = self.augment(photos)
        if result.augmented:
            result.backup_path = await asyncio.to_thread(self.backup_location_file, location_file)
            await self.index.save_file(location_file)
        return result

    def find_temporal_gaps(self, min_gap_hours: float = TEMPORAL_GAP_HOURS) -> list[dict]:
        """Stretches of time with no known location"""
        records = self.index.records()
        gaps = []
        for previous, current in zip(records, records[1:]):
            gap_hours = (current.timestamp_ms - previous.timestamp_ms) / (60 * MS_PER_MINUTE)
            if gap_hours > min_gap_hours:
                gaps.append(
                    {
                        'start': ms_to_iso(previous.timestamp_ms),
                        'end': ms_to_iso(current.timestamp_ms),
                        'duration_hours': round(gap_hours, 1),
                    }
                )
        return gaps

    def analyze_potential(self, photos: list) -> dict:
        """Estimate how many geotagged photos could fill gaps in the timeline"""
        candidates = [p for p in photos if p.has_gps and p.timestamp is not None]
        gaps = self.find_temporal_gaps()

        in_gaps = 0
        for photo in candidates:
            photo_iso = ms_to_iso(to_epoch_ms(photo.timestamp))
            if any(gap['start'] < photo_iso < gap['end'] for gap in gaps):
                in_gaps += 1

        analysis = {
            'timeline_points': len(self.index),
            'geotagged_photos': len(candidates),
            'photos_in_gaps': in_gaps,
            'temporal_gaps': gaps,
        }
        analysis['recommendations'] = self.generate_recommendations(analysis)
        return analysis

    def generate_recommendations(self, analysis: dict) -> list[str]:
        recommendations = []
        if analysis['timeline_points'] == 0:
            recommendations.append('No timeline data loaded; inference will rely on geotagged photos only')
        if analysis['geotagged_photos'] == 0:
            recommendations.append('No geotagged photos found to augment the timeline')
        if analysis['photos_in_gaps']:
            recommendations.append(f"{analysis['photos_in_gaps']} geotagged photos fall inside timeline gaps")
        if len(analysis['temporal_gaps']) > 10:
            recommendations.append('Timeline has many multi-day gaps; consider a more complete export')
        return recommendations
