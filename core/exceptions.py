class GeoInferError(Exception):
    """Base class for geolocation inference errors"""


class MissingTimestampError(GeoInferError):
    """Raised when a photo has no capture timestamp to correlate"""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"No timestamp available for {file_id}")


class InvalidCoordinatesError(GeoInferError, ValueError):
    """Raised when coordinates are out of range or the (0, 0) placeholder"""

    def __init__(self, latitude, longitude):
        self.latitude = latitude
        self.longitude = longitude
        super().__init__(f"Invalid coordinates: lat={latitude}, lon={longitude}")


class MigrationError(GeoInferError):
    """Raised when a schema migration fails and is rolled back"""

    def __init__(self, version: int, name: str, cause: Exception):
        self.version = version
        self.name = name
        self.cause = cause
        super().__init__(f"Migration {version} ({name}) failed: {cause}")


class TimelineFormatError(GeoInferError):
    """Raised when a timeline file cannot be decoded"""
