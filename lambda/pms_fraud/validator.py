"""
Input validation - odometer readings and photo uploads.

All pre-persistence checks in a single module. Rejections come back as
result objects; the service turns them into InvalidInputError so nothing
invalid is ever silently coerced and stored.
"""

import io

from PIL import Image

from pms_fraud.config import (
    ALLOWED_IMAGE_FORMATS,
    ALLOWED_MIME_TYPES,
    ALLOWED_UNITS,
    MAX_PHOTO_SIZE_MB,
    MAX_PHOTOS_PER_UPLOAD,
    VIN_LENGTH,
)
from pms_fraud.models import (
    InvalidInputError,
    PhotoType,
    PhotoUpload,
    PhotoValidationResult,
    ReadingValidationResult,
)


def validate_reading_input(reading, unit: str = "km", vin: str | None = None) -> ReadingValidationResult:
    """
    Checks a submitted reading before any lookup or write.

    The VIN is only checked when the caller supplies one directly;
    readings recorded against a work order take the work order's VIN.
    """
    if vin is not None and (not isinstance(vin, str) or len(vin.strip()) != VIN_LENGTH):
        return ReadingValidationResult(
            is_valid=False,
            field="vin",
            error_message=f"VIN must be exactly {VIN_LENGTH} characters",
        )

    # bool is an int subclass; True is not a mileage
    if isinstance(reading, bool) or not isinstance(reading, int):
        return ReadingValidationResult(
            is_valid=False,
            field="reading",
            error_message="Reading must be a whole number of kilometres",
        )

    if reading < 0:
        return ReadingValidationResult(
            is_valid=False,
            field="reading",
            error_message=f"Reading cannot be negative: {reading}",
        )

    if unit not in ALLOWED_UNITS:
        return ReadingValidationResult(
            is_valid=False,
            field="unit",
            error_message=f"Unsupported unit: {unit} (only {', '.join(sorted(ALLOWED_UNITS))} allowed)",
        )

    return ReadingValidationResult(is_valid=True)


def validate_photo_upload(upload: PhotoUpload) -> PhotoValidationResult:
    """
    Validates declared type, size, and that the bytes decode as JPEG/PNG.

    Performs checks in order:
    1. Declared MIME type
    2. File size
    3. Decodability and actual format
    """
    size_bytes = len(upload.content)
    size_mb = size_bytes / (1024 * 1024)

    if upload.mime_type.lower() not in ALLOWED_MIME_TYPES:
        return PhotoValidationResult(
            is_valid=False,
            error_message=f"Unsupported file type: {upload.mime_type} (only jpeg, jpg, png allowed)",
            size_bytes=size_bytes,
        )

    if size_mb > MAX_PHOTO_SIZE_MB:
        return PhotoValidationResult(
            is_valid=False,
            error_message=f"Photo too large: {size_mb:.1f}MB (max {MAX_PHOTO_SIZE_MB}MB)",
            size_bytes=size_bytes,
        )

    try:
        img = Image.open(io.BytesIO(upload.content))
        img.verify()
        img = Image.open(io.BytesIO(upload.content))
    except Exception:
        return PhotoValidationResult(
            is_valid=False,
            error_message="Invalid image - file is corrupted or not an image",
            size_bytes=size_bytes,
        )

    if img.format not in ALLOWED_IMAGE_FORMATS:
        return PhotoValidationResult(
            is_valid=False,
            error_message=f"Unsupported format: {img.format} (only {', '.join(sorted(ALLOWED_IMAGE_FORMATS))} allowed)",
            format=img.format,
            size_bytes=size_bytes,
        )

    return PhotoValidationResult(
        is_valid=True,
        format=img.format,
        size_bytes=size_bytes,
        resolution=img.size,
    )


def parse_photo_type(value) -> PhotoType:
    try:
        return PhotoType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in PhotoType)
        raise InvalidInputError("photo_type", f"Invalid photo type: {value} (must be one of {allowed})")


def check_batch_size(count: int) -> None:
    if count == 0:
        raise InvalidInputError("photos", "At least one photo is required")
    if count > MAX_PHOTOS_PER_UPLOAD:
        raise InvalidInputError(
            "photos",
            f"Too many photos: {count} (max {MAX_PHOTOS_PER_UPLOAD} per upload)",
        )
