"""Multi-tier coordinate inference for photos without GPS.

Strategies run in order and the first one to produce valid coordinates wins:
stored result, embedded metadata, timeline match, nearby geotagged images,
widened timeline search, and finally interpolation between bracketing points.
"""

import logging
import threading
from config import (
    ACCURACY_SCALE_METERS,
    ENHANCED_FALLBACK_ENABLED,
    EXACT_TIME_TOLERANCE_MINUTES,
    FALLBACK_CONFIDENCE_FACTOR,
    MAX_TOLERANCE_HOURS,
    MIN_FALLBACK_CONFIDENCE,
    NEARBY_IMAGE_WINDOW_HOURS,
    PROGRESSIVE_SEARCH,
    SPATIAL_DISTANCE_SCALE_METERS,
    SPATIAL_INTERPOLATION_ENABLED,
    SPATIAL_MAX_SPAN_MINUTES,
    TIMELINE_TOLERANCE_MINUTES,
)
from core.exceptions import MissingTimestampError
from core.metadata import MetadataReader
from core.store import GeolocationStore
from core.timeline import LocationRecord, TimelineIndex, TimelineMatch
from dataclasses import dataclass, field
from datetime import datetime
from utils.camera import attribute_source
from utils.geo import distance_meters, validate_coordinates
from utils.timeutils import parse_timestamp, to_epoch_ms, to_iso

logger = logging.getLogger(__name__)

CONFIDENCE_TIME_SCALE_MINUTES = 60
MS_PER_MINUTE = 60 * 1000


@dataclass
class InterpolationResult:
    latitude: float
    longitude: float
    source: str
    method: str
    confidence: float | None = None
    accuracy: float | None = None
    time_difference: float | None = None  # minutes
    source_label: str | None = None
    details: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.source_label is None:
            self.source_label = self.source

    def to_store_coords(self) -> dict:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy': self.accuracy,
            'confidence': self.confidence,
        }


def calculate_confidence(time_diff_minutes: float, accuracy: float | None) -> float:
    """Average of time closeness and positional accuracy, both in [0, 1]"""
    time_confidence = max(0.0, 1 - time_diff_minutes / CONFIDENCE_TIME_SCALE_MINUTES)
    accuracy_confidence = 1.0 if accuracy is None else max(0.0, 1 - accuracy / ACCURACY_SCALE_METERS)
    return (time_confidence + accuracy_confidence) / 2


def calculate_fallback_confidence(time_diff_minutes: float, accuracy: float | None) -> float:
    return max(MIN_FALLBACK_CONFIDENCE, calculate_confidence(time_diff_minutes, accuracy) * FALLBACK_CONFIDENCE_FACTOR)


def calculate_spatial_confidence(distance: float, span_minutes: float, max_span_minutes: float = SPATIAL_MAX_SPAN_MINUTES) -> float:
    distance_confidence = max(0.0, 1 - distance / SPATIAL_DISTANCE_SCALE_METERS)
    time_confidence = max(0.0, 1 - span_minutes / max_span_minutes)
    return (distance_confidence + time_confidence) / 2


def spatial_interpolation(
    before: LocationRecord, after: LocationRecord, target, max_span_minutes: float = SPATIAL_MAX_SPAN_MINUTES
) -> InterpolationResult | None:
    """Linear interpolation between two timeline points by elapsed-time ratio"""
    target_dt = parse_timestamp(target)
    if target_dt is None:
        return None
    target_ms = to_epoch_ms(target_dt)

    span_ms = after.timestamp_ms - before.timestamp_ms
    if span_ms <= 0 or not before.timestamp_ms <= target_ms <= after.timestamp_ms:
        return None

    ratio = (target_ms - before.timestamp_ms) / span_ms
    latitude = before.latitude + (after.latitude - before.latitude) * ratio
    longitude = before.longitude + (after.longitude - before.longitude) * ratio

    distance = distance_meters(before.latitude, before.longitude, after.latitude, after.longitude)
    span_minutes = span_ms / MS_PER_MINUTE

    return InterpolationResult(
        latitude=latitude,
        longitude=longitude,
        source='spatial_interpolation',
        method='spatial',
        confidence=calculate_spatial_confidence(distance, span_minutes, max_span_minutes),
        time_difference=min(target_ms - before.timestamp_ms, after.timestamp_ms - target_ms) / MS_PER_MINUTE,
        details={
            'ratio': ratio,
            'interpolation_distance': distance,
            'interpolation_time_span': span_minutes,
            'before': to_iso(before.timestamp),
            'after': to_iso(after.timestamp),
        },
    )


@dataclass(frozen=True)
class NearbyImage:
    file_id: str
    latitude: float
    longitude: float
    timestamp_ms: int


class NearbyImageRegistry:
    """Recently seen geotagged photos used for cross-referencing"""

    def __init__(self, window_hours: float = NEARBY_IMAGE_WINDOW_HOURS):
        self.window_ms = window_hours * 60 * MS_PER_MINUTE
        self._images: dict[str, NearbyImage] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._images)

    def register(self, file_id: str, latitude: float, longitude: float, timestamp) -> bool:
        dt = parse_timestamp(timestamp)
        if dt is None or not validate_coordinates(latitude, longitude):
            return False
        with self._lock:
            self._images[file_id] = NearbyImage(file_id, latitude, longitude, to_epoch_ms(dt))
        return True

    def closest(self, timestamp) -> tuple[NearbyImage, int] | None:
        """Image with the smallest time delta inside the window, with that delta in ms"""
        dt = parse_timestamp(timestamp)
        if dt is None:
            return None
        target_ms = to_epoch_ms(dt)

        best = None
        best_delta = None
        with self._lock:
            for image in self._images.values():
                delta = abs(image.timestamp_ms - target_ms)
                if delta < self.window_ms and (best_delta is None or delta < best_delta):
                    best, best_delta = image, delta

        return (best, best_delta) if best is not None else None

    def clear(self):
        with self._lock:
            self._images.clear()


class InterpolationEngine:
    """Runs the fallback chain for one photo at a time against a shared index and store"""

    def __init__(
        self,
        index: TimelineIndex,
        store: GeolocationStore,
        metadata_reader: MetadataReader | None = None,
        timeline_tolerance_minutes: float = TIMELINE_TOLERANCE_MINUTES,
        exact_time_tolerance_minutes: float = EXACT_TIME_TOLERANCE_MINUTES,
        enhanced_fallback_enabled: bool = ENHANCED_FALLBACK_ENABLED,
        max_tolerance_hours: float = MAX_TOLERANCE_HOURS,
        progressive_search: bool = PROGRESSIVE_SEARCH,
        spatial_interpolation_enabled: bool = SPATIAL_INTERPOLATION_ENABLED,
        spatial_max_span_minutes: float = SPATIAL_MAX_SPAN_MINUTES,
        nearby_window_hours: float = NEARBY_IMAGE_WINDOW_HOURS,
    ):
        self.index = index
        self.store = store
        self.metadata_reader = metadata_reader
        self.timeline_tolerance_minutes = timeline_tolerance_minutes
        self.exact_time_tolerance_minutes = exact_time_tolerance_minutes
        self.enhanced_fallback_enabled = enhanced_fallback_enabled
        self.max_tolerance_hours = max_tolerance_hours
        self.progressive_search = progressive_search
        self.spatial_interpolation_enabled = spatial_interpolation_enabled
        self.spatial_max_span_minutes = spatial_max_span_minutes
        self.nearby_images = NearbyImageRegistry(nearby_window_hours)

    def register_nearby_image(self, file_id: str, latitude: float, longitude: float, timestamp) -> bool:
        return self.nearby_images.register(file_id, latitude, longitude, timestamp)

    def clear_nearby_images(self):
        self.nearby_images.clear()

    async def interpolate_coordinates(self, timestamp: datetime | None, file_id: str) -> InterpolationResult | None:
        """Infer coordinates for a photo, or None when every strategy fails.

        Raises MissingTimestampError before touching the store or index when
        no timestamp is supplied.
        """
        if timestamp is None:
            logger.error(
                f"No timestamp available for {file_id} - GPS processing skipped",
                extra={'file_id': file_id, 'stage': 'timestamp_validation'},
            )
            raise MissingTimestampError(file_id)

        logger.debug(f"Interpolating coordinates for {file_id} at {to_iso(timestamp)}")

        cached = await self.store.get_coordinates(file_id)
        if cached is not None:
            logger.debug(f"Found cached coordinates for {file_id}")
            return InterpolationResult(
                latitude=cached.latitude,
                longitude=cached.longitude,
                source=cached.source,
                method='cached',
                confidence=cached.confidence,
                accuracy=cached.accuracy,
            )

        attempted = []
        for name, strategy in (
            ('metadata', self._from_metadata),
            ('timeline', self._from_timeline),
            ('nearby_images', self._from_nearby_images),
            ('enhanced_fallback', self._from_enhanced_fallback),
            ('spatial_interpolation', self._from_spatial_interpolation),
        ):
            result = await strategy(timestamp, file_id)
            if result is None:
                attempted.append(name)
                continue
            if not validate_coordinates(result.latitude, result.longitude):
                logger.warning(f"Discarding invalid {name} result for {file_id}: {result.latitude}, {result.longitude}")
                attempted.append(name)
                continue

            logger.debug(f"{name} succeeded for {file_id} with confidence {result.confidence}")
            await self._remember(file_id, result, timestamp)
            return result

        logger.error(
            f"No coordinates found for {file_id} - all interpolation methods failed",
            extra={
                'file_id': file_id,
                'timestamp': to_iso(timestamp),
                'stage': 'interpolation_complete_failure',
                'attempted_methods': attempted,
                'timeline_records': len(self.index),
                'nearby_images': len(self.nearby_images),
                'enhanced_fallback': self.enhanced_fallback_enabled,
            },
        )
        return None

    async def _remember(self, file_id: str, result: InterpolationResult, timestamp: datetime):
        stored = await self.store.store_coordinates(file_id, result.to_store_coords(), result.source, timestamp)
        if not stored:
            logger.debug(f"Store kept a higher priority entry for {file_id}")

    async def _from_metadata(self, timestamp: datetime, file_id: str) -> InterpolationResult | None:
        if self.metadata_reader is None:
            return None
        try:
            metadata = await self.metadata_reader.read_metadata(file_id)
        except (OSError, ValueError) as e:
            logger.debug(f"Metadata extraction failed for {file_id}: {e}")
            return None

        if metadata is None or not metadata.has_gps:
            return None

        return InterpolationResult(
            latitude=metadata.latitude,
            longitude=metadata.longitude,
            source='image_exif',
            source_label=attribute_source('image_exif', metadata.camera.as_dict()),
            method='direct',
            confidence=1.0,
        )

    def _match_result(self, match: TimelineMatch, source: str, method: str, confidence: float) -> InterpolationResult:
        return InterpolationResult(
            latitude=match.latitude,
            longitude=match.longitude,
            source=source,
            method=method,
            confidence=confidence,
            accuracy=match.accuracy,
            time_difference=match.time_difference,
            details={'timeline_source': match.source},
        )

    async def _from_timeline(self, timestamp: datetime, file_id: str) -> InterpolationResult | None:
        match = self.index.nearest(timestamp, self.timeline_tolerance_minutes)
        if match is None:
            return None
        exact = match.time_difference <= self.exact_time_tolerance_minutes
        return self._match_result(
            match,
            'timeline_exact' if exact else 'timeline_interpolation',
            'primary',
            calculate_confidence(match.time_difference, match.accuracy),
        )

    async def _from_nearby_images(self, timestamp: datetime, file_id: str) -> InterpolationResult | None:
        found = self.nearby_images.closest(timestamp)
        if found is None:
            return None
        image, delta_ms = found
        return InterpolationResult(
            latitude=image.latitude,
            longitude=image.longitude,
            source='nearby_images',
            method='cross_reference',
            confidence=1 - delta_ms / self.nearby_images.window_ms,
            time_difference=delta_ms / MS_PER_MINUTE,
            details={'source_image': image.file_id},
        )

    async def _from_enhanced_fallback(self, timestamp: datetime, file_id: str) -> InterpolationResult | None:
        if not self.enhanced_fallback_enabled:
            return None
        match = self.index.nearest_with_escalation(timestamp, self.max_tolerance_hours, self.progressive_search)
        if match is None:
            return None
        return self._match_result(
            match,
            'enhanced_fallback',
            'fallback',
            calculate_fallback_confidence(match.time_difference, match.accuracy),
        )

    async def _from_spatial_interpolation(self, timestamp: datetime, file_id: str) -> InterpolationResult | None:
        if not self.spatial_interpolation_enabled:
            return None
        bracket = self.index.bracket(timestamp, self.spatial_max_span_minutes)
        if bracket is None:
            return None
        return spatial_interpolation(*bracket, timestamp, self.spatial_max_span_minutes)

    def get_statistics(self) -> dict:
        return {
            'timeline_records': len(self.index),
            'nearby_images': len(self.nearby_images),
            'timeline_tolerance_minutes': self.timeline_tolerance_minutes,
            'exact_time_tolerance_minutes': self.exact_time_tolerance_minutes,
            'enhanced_fallback_enabled': self.enhanced_fallback_enabled,
            'max_tolerance_hours': self.max_tolerance_hours,
            'progressive_search': self.progressive_search,
            'spatial_interpolation_enabled': self.spatial_interpolation_enabled,
        }
