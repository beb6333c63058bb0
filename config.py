from decouple import config
from pathlib import Path

# Directory paths
DATA_DIR = Path(config('DATA_DIR', default='data'))
PHOTOS_DIR = Path(config('PHOTOS_DIR', default='takeout/photos'))

# File names
TIMELINE_EXPORT_FILE = config('TIMELINE_EXPORT_FILE', default='Timeline.json')
LOCATION_FILE = 'location.json'
LOCATION_BACKUP_PREFIX = 'location-backup'
DATABASE_FILE = 'geolocation.db'
DATABASE_EXPORT_FILE = 'geolocation-export.json'

# Timeline matching
TIMELINE_TOLERANCE_MINUTES = config('TIMELINE_TOLERANCE_MINUTES', default=60, cast=int)
EXACT_TIME_TOLERANCE_MINUTES = config('EXACT_TIME_TOLERANCE_MINUTES', default=2, cast=int)
PROGRESSIVE_TOLERANCES_MINUTES = [60, 360]  # Final step is MAX_TOLERANCE_HOURS * 60

# Fallback chain
ENHANCED_FALLBACK_ENABLED = config('ENHANCED_FALLBACK_ENABLED', default=True, cast=bool)
MAX_TOLERANCE_HOURS = config('MAX_TOLERANCE_HOURS', default=24, cast=int)
PROGRESSIVE_SEARCH = config('PROGRESSIVE_SEARCH', default=True, cast=bool)
FALLBACK_CONFIDENCE_FACTOR = 0.7
MIN_FALLBACK_CONFIDENCE = 0.1
NEARBY_IMAGE_WINDOW_HOURS = 6
SPATIAL_INTERPOLATION_ENABLED = config('SPATIAL_INTERPOLATION_ENABLED', default=True, cast=bool)
SPATIAL_MAX_SPAN_MINUTES = config('SPATIAL_MAX_SPAN_MINUTES', default=120, cast=int)
SPATIAL_DISTANCE_SCALE_METERS = 10000
ACCURACY_SCALE_METERS = 100

# Batch processing
BATCH_SIZE = config('BATCH_SIZE', default=25, cast=int)

# Persistent store
ENABLE_SQLITE_PERSISTENCE = config('ENABLE_SQLITE_PERSISTENCE', default=True, cast=bool)
TIME_RANGE_RESULT_LIMIT = 10
PROXIMITY_RESULT_LIMIT = 20
SPATIAL_GRID_SCALE = 1000  # ~111 m per grid unit at the equator

# Source priorities, higher wins
SOURCE_PRIORITIES = {
    'image_exif': 100,
    'database_cached': 90,
    'timeline_exact': 80,
    'timeline_interpolation': 70,
    'nearby_images': 60,
    'enhanced_fallback': 50,
    'spatial_interpolation': 40,
}
HIGH_PRIORITY_SOURCES = ['image_exif', 'database_cached', 'timeline_exact']

# Performance monitoring
SLOW_QUERY_THRESHOLD_MS = config('SLOW_QUERY_THRESHOLD_MS', default=100, cast=int)
STATS_RETENTION_DAYS = config('STATS_RETENTION_DAYS', default=30, cast=int)
MAINTENANCE_INTERVAL_HOURS = config('MAINTENANCE_INTERVAL_HOURS', default=24, cast=int)
TABLE_SCAN_ALERT_COUNT = 10
STATS_WINDOW_HOURS = 24

# Timeline augmentation
AUGMENTATION_ENABLED = config('AUGMENTATION_ENABLED', default=True, cast=bool)
CREATE_TIMELINE_BACKUP = config('CREATE_TIMELINE_BACKUP', default=True, cast=bool)
DUPLICATE_DISTANCE_METERS = 50
IMAGE_POINT_ACCURACY_METERS = 1
TEMPORAL_GAP_HOURS = 24

# Timeline edits accuracy estimation (score threshold, meters)
PLACE_SCORE_ACCURACY_STEPS = [(100, 50), (50, 100), (10, 500)]
DEFAULT_PLACE_ACCURACY_METERS = 1000
DEFAULT_WIFI_ACCURACY_METERS = 1000

# Validation constants
MIN_VALID_LATITUDE = -90.0
MAX_VALID_LATITUDE = 90.0
MIN_VALID_LONGITUDE = -180.0
MAX_VALID_LONGITUDE = 180.0

# Camera attribution
EXIF_SOURCES = {'exif_metadata', 'image_exif', 'piexif', 'exiftool', 'sharp'}
CAMERA_SOURCE_FALLBACK = 'embedded-gps'
