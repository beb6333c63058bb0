"""Timeline export schema detection and normalization.

A timeline document is classified once by ``detect_format`` and handed to the
matching adapter. Adapters yield ``CandidatePoint`` values and never validate
coordinates themselves; the index decides what to keep.
"""

import logging
from collections.abc import Iterator
from config import (
    DEFAULT_PLACE_ACCURACY_METERS,
    DEFAULT_WIFI_ACCURACY_METERS,
    PLACE_SCORE_ACCURACY_STEPS,
)
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from utils.timeutils import from_epoch_ms, parse_timestamp

logger = logging.getLogger(__name__)


class TimelineFormat(Enum):
    STANDARD = 'standard'
    EDITS = 'edits'
    LOCATION_EXPORT = 'location_export'
    UNKNOWN = 'unknown'


@dataclass(frozen=True, slots=True)
class CandidatePoint:
    """A raw point pulled out of a timeline document, not yet validated"""

    timestamp: object
    location: dict | None
    source: str


def detect_format(document) -> TimelineFormat:
    """Classify a decoded timeline document"""
    if isinstance(document, dict):
        if isinstance(document.get('timelineObjects'), list):
            return TimelineFormat.STANDARD
        if isinstance(document.get('timelineEdits'), list):
            return TimelineFormat.EDITS
        return TimelineFormat.UNKNOWN
    if isinstance(document, list):
        return TimelineFormat.LOCATION_EXPORT
    return TimelineFormat.UNKNOWN


def accuracy_from_score(score) -> int:
    """Estimate accuracy in meters from a place aggregate confidence score"""
    if not isinstance(score, (int, float)) or score <= 0:
        return DEFAULT_PLACE_ACCURACY_METERS
    for threshold, accuracy in PLACE_SCORE_ACCURACY_STEPS:
        if score >= threshold:
            return accuracy
    return DEFAULT_PLACE_ACCURACY_METERS


def _duration_bound(duration: dict | None, bound: str) -> datetime | None:
    """Read startTimestamp/endTimestamp, or the older *TimestampMs variant"""
    if not isinstance(duration, dict):
        return None
    value = duration.get(f'{bound}Timestamp')
    if value is not None:
        return parse_timestamp(value)
    value = duration.get(f'{bound}TimestampMs')
    if value is not None:
        try:
            return parse_timestamp(int(value))
        except (TypeError, ValueError):
            return None
    return None


def _with_accuracy(location: dict | None, accuracy) -> dict | None:
    if not isinstance(location, dict):
        return location
    return {**location, 'accuracy': accuracy}


class StandardTimelineAdapter:
    """Activity segments and place visits from a ``timelineObjects`` export"""

    def points(self, document: dict) -> Iterator[CandidatePoint]:
        for timeline_object in document.get('timelineObjects', []):
            if not isinstance(timeline_object, dict):
                yield CandidatePoint(None, None, 'timeline_unrecognized')
                continue

            if 'activitySegment' in timeline_object:
                yield from self._activity_segment(timeline_object['activitySegment'])
            elif 'placeVisit' in timeline_object:
                yield from self._place_visit(timeline_object['placeVisit'])
            else:
                logger.debug(f"Skipping unrecognized timeline object with keys {list(timeline_object)}")

    def _activity_segment(self, segment) -> Iterator[CandidatePoint]:
        if not isinstance(segment, dict):
            yield CandidatePoint(None, None, 'timeline_activity_start')
            return

        duration = segment.get('duration')
        start = _duration_bound(duration, 'start')
        end = _duration_bound(duration, 'end')

        if 'startLocation' in segment:
            yield CandidatePoint(start, segment['startLocation'], 'timeline_activity_start')
        if 'endLocation' in segment:
            yield CandidatePoint(end, segment['endLocation'], 'timeline_activity_end')

        waypoints = (segment.get('waypointPath') or {}).get('waypoints') or []
        if not waypoints:
            return

        for index, waypoint in enumerate(waypoints):
            if start is None or end is None:
                yield CandidatePoint(None, waypoint, 'timeline_waypoint')
                continue
            # Spread waypoints evenly across the segment duration
            offset = (end - start) * index / len(waypoints)
            yield CandidatePoint(start + offset, waypoint, 'timeline_waypoint')

    def _place_visit(self, visit) -> Iterator[CandidatePoint]:
        if not isinstance(visit, dict):
            yield CandidatePoint(None, None, 'timeline_place_visit')
            return
        duration = visit.get('duration')
        timestamp = _duration_bound(duration, 'start') or _duration_bound(duration, 'end')
        yield CandidatePoint(timestamp, visit.get('location'), 'timeline_place_visit')


class TimelineEditsAdapter:
    """Place aggregates and raw signals from a ``timelineEdits`` export"""

    def points(self, document: dict) -> Iterator[CandidatePoint]:
        for edit in document.get('timelineEdits', []):
            if not isinstance(edit, dict):
                yield CandidatePoint(None, None, 'timeline_edits_unrecognized')
                continue

            if isinstance(edit.get('placeAggregates'), dict):
                yield from self._place_aggregates(edit['placeAggregates'])

            signal = (edit.get('rawSignal') or {}).get('signal')
            if isinstance(signal, dict):
                yield from self._raw_signal(signal)

            if isinstance(edit.get('locationData'), list):
                for location in edit['locationData']:
                    if isinstance(location, dict):
                        yield CandidatePoint(location.get('timestamp'), location, 'timeline_edits_direct_location')

    def _place_aggregates(self, aggregates: dict) -> Iterator[CandidatePoint]:
        places = [p for p in aggregates.get('placeAggregateInfo') or [] if isinstance(p, dict)]
        window = aggregates.get('processWindow') or {}
        timestamp = window.get('startTime') or window.get('endTime')

        for place in places:
            location = place.get('placePoint') or place.get('point')
            yield CandidatePoint(
                timestamp,
                _with_accuracy(location, accuracy_from_score(place.get('score'))),
                'timeline_edits_place',
            )

        if places and window.get('endTime'):
            top_place = max(places, key=lambda p: p.get('score') if isinstance(p.get('score'), (int, float)) else 0)
            location = top_place.get('placePoint') or top_place.get('point')
            yield CandidatePoint(
                window['endTime'],
                _with_accuracy(location, accuracy_from_score(top_place.get('score'))),
                'timeline_edits_window_end',
            )

    def _raw_signal(self, signal: dict) -> Iterator[CandidatePoint]:
        position = signal.get('position')
        if isinstance(position, dict):
            accuracy_mm = position.get('accuracyMm')
            accuracy = accuracy_mm / 1000 if isinstance(accuracy_mm, (int, float)) and accuracy_mm else None
            yield CandidatePoint(
                position.get('timestamp'),
                _with_accuracy(position.get('point'), accuracy),
                'timeline_edits_position',
            )

        # activityRecord entries carry no coordinates

        record = signal.get('locationRecord')
        if isinstance(record, dict):
            yield CandidatePoint(record.get('timestamp'), record, 'timeline_edits_location_record')

        wifi_scan = signal.get('wifiScan')
        if isinstance(wifi_scan, dict) and isinstance(wifi_scan.get('inferredLocation'), dict):
            location = wifi_scan['inferredLocation']
            yield CandidatePoint(
                wifi_scan.get('timestamp'),
                _with_accuracy(location, location.get('accuracy') or DEFAULT_WIFI_ACCURACY_METERS),
                'timeline_edits_wifi_inferred',
            )


class LocationExportAdapter:
    """Flat point list written by ``TimelineIndex.export``"""

    def points(self, document: list) -> Iterator[CandidatePoint]:
        for entry in document:
            if not isinstance(entry, dict):
                yield CandidatePoint(None, None, 'location_export')
                continue
            yield CandidatePoint(entry.get('timestamp'), entry, entry.get('source') or 'location_export')


ADAPTERS = {
    TimelineFormat.STANDARD: StandardTimelineAdapter(),
    TimelineFormat.EDITS: TimelineEditsAdapter(),
    TimelineFormat.LOCATION_EXPORT: LocationExportAdapter(),
}


def extract_points(document) -> tuple[TimelineFormat, list[CandidatePoint]]:
    """Detect the document format and return all candidate points"""
    timeline_format = detect_format(document)
    adapter = ADAPTERS.get(timeline_format)
    if adapter is None:
        logger.warning("Unrecognized timeline format, no points extracted")
        return timeline_format, []
    return timeline_format, list(adapter.points(document))


def coerce_timestamp(value) -> datetime | None:
    """Timestamps in exports may also be raw epoch milliseconds"""
    if isinstance(value, str) and value.isdigit():
        return from_epoch_ms(int(value))
    return parse_timestamp(value)
