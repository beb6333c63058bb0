"""Test data fixtures for geo_infer tests"""

import json
from pathlib import Path


class TestDataFixtures:
    """Centralized test data fixtures"""

    @staticmethod
    def get_standard_timeline():
        """Generate a timelineObjects export with one activity segment and one place visit"""
        return {
            "timelineObjects": [
                {
                    "activitySegment": {
                        "startLocation": {"latitudeE7": 407128000, "longitudeE7": -740060000},
                        "endLocation": {"latitudeE7": 407580000, "longitudeE7": -739855000},
                        "duration": {
                            "startTimestamp": "2024-01-15T10:00:00.000Z",
                            "endTimestamp": "2024-01-15T11:00:00.000Z",
                        },
                        "waypointPath": {
                            "waypoints": [
                                {"latE7": 407200000, "lngE7": -740000000},
                                {"latE7": 407400000, "lngE7": -739900000},
                            ]
                        },
                    }
                },
                {
                    "placeVisit": {
                        "location": {"latitudeE7": 407580000, "longitudeE7": -739855000, "accuracy": 25},
                        "duration": {
                            "startTimestamp": "2024-01-15T12:00:00.000Z",
                            "endTimestamp": "2024-01-15T13:00:00.000Z",
                        },
                    }
                },
                {"unknownObject": {}},
            ]
        }

    @staticmethod
    def get_edits_timeline():
        """Generate a timelineEdits export covering each signal type"""
        return {
            "timelineEdits": [
                {
                    "placeAggregates": {
                        "placeAggregateInfo": [
                            {"placePoint": {"latE7": 377749000, "lngE7": -1224194000}, "score": 120},
                            {"point": {"latE7": 377800000, "lngE7": -1224100000}, "score": 20},
                        ],
                        "processWindow": {
                            "startTime": "2024-02-01T00:00:00.000Z",
                            "endTime": "2024-02-02T00:00:00.000Z",
                        },
                    }
                },
                {
                    "rawSignal": {
                        "signal": {
                            "position": {
                                "timestamp": "2024-02-01T08:00:00.000Z",
                                "point": {"latE7": 377700000, "lngE7": -1224200000},
                                "accuracyMm": 15000,
                            }
                        }
                    }
                },
                {"rawSignal": {"signal": {"activityRecord": {"timestamp": "2024-02-01T09:00:00.000Z"}}}},
                {
                    "rawSignal": {
                        "signal": {
                            "locationRecord": {
                                "timestamp": "2024-02-01T10:00:00.000Z",
                                "latitude": 37.76,
                                "longitude": -122.43,
                            }
                        }
                    }
                },
                {
                    "rawSignal": {
                        "signal": {
                            "wifiScan": {
                                "timestamp": "2024-02-01T11:00:00.000Z",
                                "inferredLocation": {"latE7": 377650000, "lngE7": -1224250000},
                            }
                        }
                    }
                },
                {
                    "locationData": [
                        {"timestamp": "2024-02-01T12:00:00.000Z", "latitude": 37.75, "longitude": -122.44},
                    ]
                },
            ]
        }

    @staticmethod
    def get_invalid_points_timeline():
        """Generate a timelineObjects export where every point is unusable"""
        return {
            "timelineObjects": [
                {
                    "placeVisit": {
                        "location": {"latitudeE7": 0, "longitudeE7": 0},
                        "duration": {"startTimestamp": "2024-01-15T12:00:00.000Z"},
                    }
                },
                {
                    "placeVisit": {
                        "location": {"latitudeE7": 950000000, "longitudeE7": 100000000},
                        "duration": {"startTimestamp": "2024-01-15T13:00:00.000Z"},
                    }
                },
                {
                    "placeVisit": {
                        "location": {"latitudeE7": 407128000, "longitudeE7": -740060000},
                        "duration": {"startTimestamp": "not a timestamp"},
                    }
                },
            ]
        }

    @staticmethod
    def get_sidecar(timestamp: int | None = 1705320000, latitude: float = 0.0, longitude: float = 0.0, **extra):
        """Generate a Google Takeout photo sidecar"""
        data = {
            "title": "IMG_0001.jpg",
            "geoData": {"latitude": 0.0, "longitude": 0.0, "altitude": 0.0},
            "geoDataExif": {"latitude": latitude, "longitude": longitude, "altitude": 0.0},
        }
        if timestamp is not None:
            data["photoTakenTime"] = {"timestamp": str(timestamp)}
        data.update(extra)
        return data

    @staticmethod
    def write_photo(photos_dir: Path, name: str, sidecar: dict) -> Path:
        """Create an empty photo file and its sidecar, returning the photo path"""
        photos_dir.mkdir(parents=True, exist_ok=True)
        photo = photos_dir / name
        photo.write_bytes(b"")
        with open(photos_dir / f"{name}.json", 'w') as f:
            json.dump(sidecar, f)
        return photo
