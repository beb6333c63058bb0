from config import CAMERA_SOURCE_FALLBACK, EXIF_SOURCES


def format_camera_source(make: str | None = None, model: str | None = None, lens: str | None = None) -> str:
    """Build a human-readable camera label from EXIF camera fields"""
    make = (make or '').strip()
    model = (model or '').strip()
    lens = (lens or '').strip()

    if make and model:
        label = f"{make} {model}"
    elif model:
        label = model
    elif make:
        label = make
    else:
        label = ''

    if lens:
        return f"{label} with {lens}" if label else f"Camera with {lens}"

    return label or CAMERA_SOURCE_FALLBACK


def should_use_camera_attribution(source: str | None) -> bool:
    """Only sources that read coordinates straight from the file get a camera label"""
    return source in EXIF_SOURCES


def attribute_source(source: str, camera: dict | None = None) -> str:
    """Return the camera label for EXIF-derived sources, otherwise the source unchanged"""
    if not should_use_camera_attribution(source):
        return source
    camera = camera or {}
    return format_camera_source(camera.get('make'), camera.get('model'), camera.get('lens'))
