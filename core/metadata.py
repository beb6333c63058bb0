import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol
from utils.geo import validate_coordinates
from utils.timeutils import from_epoch_seconds

logger = logging.getLogger(__name__)

SIDECAR_SUFFIXES = ('.json', '.supplemental-metadata.json')
ALBUM_METADATA_NAMES = {'metadata.json', 'print-subscriptions.json', 'shared_album_comments.json', 'user-generated-memory-titles.json'}


@dataclass(frozen=True)
class CameraInfo:
    make: str | None = None
    model: str | None = None
    lens: str | None = None

    def as_dict(self) -> dict:
        return {'make': self.make, 'model': self.model, 'lens': self.lens}


@dataclass(frozen=True)
class PhotoMetadata:
    file_id: str
    has_gps: bool = False
    latitude: float | None = None
    longitude: float | None = None
    timestamp: datetime | None = None
    camera: CameraInfo = field(default_factory=CameraInfo)
    format: str | None = None


class MetadataReader(Protocol):
    async def read_metadata(self, file_id: str) -> PhotoMetadata | None: ...


def sidecar_path_for(photo_path: Path) -> Path | None:
    """Locate the Takeout JSON sidecar for a photo"""
    for suffix in SIDECAR_SUFFIXES:
        candidate = photo_path.with_name(photo_path.name + suffix)
        if candidate.exists():
            return candidate
    return None


def photo_path_for(sidecar: Path) -> Path:
    """Strip the sidecar suffix to recover the photo path"""
    name = sidecar.name
    for suffix in sorted(SIDECAR_SUFFIXES, key=len, reverse=True):
        if name.endswith(suffix):
            return sidecar.with_name(name[: -len(suffix)])
    return sidecar


def parse_sidecar(data: dict, file_id: str) -> PhotoMetadata:
    """Build PhotoMetadata from a decoded Takeout sidecar"""
    timestamp = None
    for key in ('photoTakenTime', 'creationTime'):
        value = (data.get(key) or {}).get('timestamp')
        timestamp = from_epoch_seconds(value)
        if timestamp is not None:
            break

    latitude = longitude = None
    has_gps = False
    for key in ('geoDataExif', 'geoData'):
        if key == 'geoData' and data.get('geoDataSource'):
            # Written back by a previous inference run, not embedded by the camera
            continue
        geo = data.get(key) or {}
        lat, lon = geo.get('latitude'), geo.get('longitude')
        if lat is None or lon is None:
            continue
        # Takeout writes 0.0/0.0 when there is no location
        if validate_coordinates(lat, lon):
            latitude, longitude, has_gps = float(lat), float(lon), True
            break
        if lat or lon:
            logger.warning(f"Invalid coordinates in {file_id}: lat={lat}, lon={lon}")

    camera = CameraInfo(make=data.get('cameraMake'), model=data.get('cameraModel'), lens=data.get('lensModel'))
    suffix = Path(file_id).suffix.lower().lstrip('.')

    return PhotoMetadata(
        file_id=file_id,
        has_gps=has_gps,
        latitude=latitude,
        longitude=longitude,
        timestamp=timestamp,
        camera=camera,
        format=suffix or None,
    )


class SidecarMetadataReader:
    """Reads and writes Google Takeout photo sidecar JSON files"""

    def discover(self, photos_dir: Path) -> list[str]:
        """Photo paths for every sidecar under photos_dir"""
        if not photos_dir.exists():
            logger.info(f"Photos directory not found: {photos_dir}")
            return []

        photos = []
        for sidecar in sorted(photos_dir.rglob('*.json')):
            if sidecar.name in ALBUM_METADATA_NAMES:
                continue
            photos.append(str(photo_path_for(sidecar)))

        logger.info(f"Found {len(photos)} photo sidecars in {photos_dir}")
        return photos

    async def read_metadata(self, file_id: str) -> PhotoMetadata | None:
        sidecar = sidecar_path_for(Path(file_id))
        if sidecar is None:
            return None

        def _read():
            with open(sidecar, encoding='utf-8') as f:
                return json.load(f)

        try:
            data = await asyncio.to_thread(_read)
        except json.JSONDecodeError as e:
            logger.warning(f"Could not decode sidecar {sidecar}: {e}")
            return None

        return parse_sidecar(data, file_id)

    async def write_coordinates(self, file_id: str, latitude: float, longitude: float, source_label: str) -> bool:
        """Record inferred coordinates in the sidecar's geoData block"""
        sidecar = sidecar_path_for(Path(file_id))
        if sidecar is None:
            logger.warning(f"No sidecar to update for {file_id}")
            return False

        def _update():
            with open(sidecar, encoding='utf-8') as f:
                data = json.load(f)
            geo = data.get('geoData') or {}
            geo.update({'latitude': latitude, 'longitude': longitude})
            geo.setdefault('altitude', 0.0)
            data['geoData'] = geo
            data['geoDataSource'] = source_label
            with open(sidecar, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)

        await asyncio.to_thread(_update)
        logger.debug(f"Wrote coordinates to {sidecar}")
        return True
