"""
EXIF extraction - camera, capture time and GPS from uploaded photos.

Only JPEG carries tags here; PNG and anything else yields an empty result.
Never raises: a broken EXIF block degrades to partial or empty metadata,
because missing evidence is itself fed into the completeness alerts.
"""

import io
import logging
from datetime import datetime

from PIL import Image
from PIL.ExifTags import GPSTAGS, IFD, TAGS

from pms_fraud.config import EXIF_DATETIME_FORMAT, EXIF_MIME_TYPES
from pms_fraud.geo import dms_to_decimal
from pms_fraud.models import ExifMetadata, GpsCoordinates

logger = logging.getLogger(__name__)


# --- Public API ---

def extract_exif(image_bytes: bytes, mime_type: str, file_name: str | None = None) -> ExifMetadata:
    """
    Extracts camera make/model, DateTimeOriginal and GPS position.

    Each tag group is read independently, so a corrupt GPS block does not
    cost us the camera fields.
    """
    if (mime_type or "").lower() not in EXIF_MIME_TYPES:
        return ExifMetadata()

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            exif = img.getexif()
            base_tags = {TAGS.get(tag_id, tag_id): value for tag_id, value in exif.items()}
    except Exception as e:
        logger.warning("EXIF extraction failed for %s: %s", file_name or "<upload>", e)
        return ExifMetadata()

    if not exif:
        return ExifMetadata()

    metadata = ExifMetadata(has_exif=True)

    try:
        metadata.camera_make = _clean_text(base_tags.get("Make"))
        metadata.camera_model = _clean_text(base_tags.get("Model"))
    except Exception as e:
        logger.warning("Could not read camera tags from %s: %s", file_name or "<upload>", e)

    try:
        metadata.captured_at = _capture_time(exif, base_tags)
    except Exception as e:
        logger.warning("Could not read capture time from %s: %s", file_name or "<upload>", e)

    try:
        metadata.gps = _gps_coordinates(exif)
    except Exception as e:
        logger.warning("Could not read GPS tags from %s: %s", file_name or "<upload>", e)

    return metadata


def parse_exif_datetime(value) -> datetime | None:
    """Parses "YYYY:MM:DD HH:MM:SS". Anything else is None, not an error."""
    text = _clean_text(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, EXIF_DATETIME_FORMAT)
    except ValueError:
        logger.warning("Unparsable EXIF datetime: %r", text)
        return None


# --- Tag Groups ---

def _capture_time(exif: Image.Exif, base_tags: dict) -> datetime | None:
    exif_ifd = exif.get_ifd(IFD.Exif)
    tags = {TAGS.get(tag_id, tag_id): value for tag_id, value in exif_ifd.items()}
    raw = tags.get("DateTimeOriginal") or base_tags.get("DateTimeOriginal")
    if raw is None:
        return None
    return parse_exif_datetime(raw)


def _gps_coordinates(exif: Image.Exif) -> GpsCoordinates | None:
    gps_ifd = exif.get_ifd(IFD.GPSInfo)
    if not gps_ifd:
        return None

    gps = {GPSTAGS.get(tag_id, tag_id): value for tag_id, value in gps_ifd.items()}

    # Both groups must be present; a lone latitude is not a position
    if "GPSLatitude" not in gps or "GPSLongitude" not in gps:
        return None

    return GpsCoordinates(
        latitude=_to_decimal(gps["GPSLatitude"], gps.get("GPSLatitudeRef") or "N"),
        longitude=_to_decimal(gps["GPSLongitude"], gps.get("GPSLongitudeRef") or "E"),
    )


def _to_decimal(coordinate, hemisphere) -> float:
    if not isinstance(coordinate, (tuple, list)) or len(coordinate) < 3:
        return 0.0
    return dms_to_decimal(coordinate[0], coordinate[1], coordinate[2], _clean_text(hemisphere) or "")


def _clean_text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).replace("\x00", "").strip()
    return text or None
