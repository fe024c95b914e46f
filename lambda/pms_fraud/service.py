"""
Orchestration of reading submissions and photo evidence.

Each operation reads what it needs, computes work-order changes with the
pure ledger functions, and hands them to storage.update_work_order (or
storage.commit_reading for a new reading) so the alert collection is only
ever changed under a version check.
"""

import logging
import uuid

from pms_fraud.anomaly import anomaly_alert_data, build_reading, check_reading
from pms_fraud.clock import Clock, as_utc, utc_now
from pms_fraud.config import DEFAULT_PHOTO_TYPE, READING_HISTORY_LIMIT
from pms_fraud.exif import extract_exif
from pms_fraud.intervals import check_missed_interval
from pms_fraud.ledger import append_alerts, chain, recompute_photo_alerts
from pms_fraud.location import verify_photo_location
from pms_fraud.models import (
    AlertType,
    FraudAlert,
    InvalidInputError,
    OdometerReading,
    PhotoNotFoundError,
    PhotoStatistics,
    PhotoType,
    PhotoUpload,
    ReadingCheck,
    ReadingNotFoundError,
    RequestContext,
    WorkOrder,
    WorkOrderNotFoundError,
    WorkOrderPatch,
    WorkOrderPhoto,
)
from pms_fraud import storage
from pms_fraud.validator import (
    check_batch_size,
    parse_photo_type,
    validate_photo_upload,
    validate_reading_input,
)

logger = logging.getLogger(__name__)

_EXTENSIONS = {"image/jpeg": "jpg", "image/jpg": "jpg", "image/png": "png"}


# --- Odometer Readings ---

def record_reading(
    work_order_id: str,
    reading,
    photo_path: str | None = None,
    unit: str = "km",
    context: RequestContext | None = None,
    clock: Clock = utc_now,
) -> OdometerReading:
    """
    Records a reading for the work order's vehicle and updates the work order.

    Submitted -> Classified -> AnomalyRecorded | Clean -> IntervalChecked ->
    Persisted. The reading row, the vehicle's latest-reading pointer and every
    work-order change are written in one transaction.

    Raises:
        InvalidInputError: If the reading or unit is rejected.
        WorkOrderNotFoundError: If the work order does not exist.
        ConcurrencyConflictError: If the work order kept changing; nothing was written.
    """
    check = validate_reading_input(reading, unit=unit)
    if not check.is_valid:
        raise InvalidInputError(check.field, check.error_message)

    reading_id = uuid.uuid4().hex
    # UTC at second precision keeps ISO sort keys ordered
    now = as_utc(clock()).replace(microsecond=0)

    def prepare(work_order: WorkOrder, previous: OdometerReading | None):
        odometer = build_reading(
            reading_id=reading_id,
            work_order=work_order,
            reading=reading,
            previous=previous,
            reading_date=now,
            photo_path=photo_path,
            context=context,
        )
        return odometer, reading_patch(work_order, odometer, now)

    odometer, _ = storage.commit_reading(work_order_id, prepare)

    if odometer.is_anomaly:
        logger.info(
            "Odometer anomaly %s on VIN %s: %s",
            odometer.anomaly_type.value, odometer.vehicle_vin, odometer.anomaly_notes,
        )
    return odometer


def reading_patch(work_order: WorkOrder, reading: OdometerReading, detected_at) -> WorkOrderPatch:
    """All work-order changes caused by one new reading."""
    alerts = []
    if reading.is_anomaly:
        alerts.append(FraudAlert(
            type=AlertType.ODOMETER_ANOMALY,
            message=reading.anomaly_notes or "Odometer anomaly detected",
            data=anomaly_alert_data(reading),
            detected_at=detected_at,
        ))
    alerts.extend(check_missed_interval(work_order, reading, detected_at))

    patch = append_alerts(work_order, alerts)
    patch.current_mileage = reading.reading
    if not reading.is_anomaly:
        patch.odometer_verified = True
    return patch


def validate_reading(vin: str, reading, clock: Clock = utc_now) -> ReadingCheck:
    """Advisory check of a candidate reading. Nothing is written."""
    check = validate_reading_input(reading, vin=vin)
    if not check.is_valid:
        raise InvalidInputError(check.field, check.error_message)

    previous = storage.latest_reading_for_vin(vin.strip())
    return check_reading(reading, previous, clock())


def get_reading_history(vin: str, limit: int = READING_HISTORY_LIMIT) -> list[OdometerReading]:
    if limit < 1:
        raise InvalidInputError("limit", "Limit must be at least 1")
    return storage.get_reading_history(vin, limit)


def get_anomalies_for_vin(vin: str) -> list[OdometerReading]:
    return storage.get_anomalies_for_vin(vin)


def verify_reading(reading_id: str, verifier_id: str | None, clock: Clock = utc_now) -> OdometerReading:
    """Manual supervisor sign-off on a reading."""
    if storage.get_reading(reading_id) is None:
        raise ReadingNotFoundError(f"Reading {reading_id} not found")
    return storage.mark_reading_verified(reading_id, verifier_id, clock())


# --- Photos ---

def upload_photo(
    work_order_id: str,
    upload: PhotoUpload,
    photo_type=DEFAULT_PHOTO_TYPE,
    notes: str | None = None,
    context: RequestContext | None = None,
    clock: Clock = utc_now,
) -> WorkOrderPhoto:
    """
    Stores a photo, extracts its EXIF evidence, and refreshes the work
    order's photo alerts and location verification.

    The photo row is written before the alert update, so a conflict on the
    work order never loses the photo itself.
    """
    photo_type = parse_photo_type(photo_type)
    context = context or RequestContext()

    validation = validate_photo_upload(upload)
    if not validation.is_valid:
        raise InvalidInputError("photos", f"{upload.file_name}: {validation.error_message}")

    if storage.get_work_order(work_order_id) is None:
        raise WorkOrderNotFoundError(f"Work order {work_order_id} not found")

    photo_id = uuid.uuid4().hex
    extension = _EXTENSIONS.get(upload.mime_type.lower(), "bin")
    path = storage.store_photo_file(
        f"work_orders/{work_order_id}/photos/{photo_id}.{extension}",
        upload.content,
        upload.mime_type,
    )

    metadata = extract_exif(upload.content, upload.mime_type, upload.file_name)
    now = clock()

    photo = WorkOrderPhoto(
        photo_id=photo_id,
        work_order_id=work_order_id,
        file_path=path,
        file_name=upload.file_name,
        file_size=len(upload.content),
        mime_type=upload.mime_type,
        photo_type=photo_type,
        latitude=metadata.gps.latitude if metadata.gps else None,
        longitude=metadata.gps.longitude if metadata.gps else None,
        photo_taken_at=metadata.captured_at,
        camera_make=metadata.camera_make,
        camera_model=metadata.camera_model,
        uploaded_ip_address=context.ip_address,
        user_agent=context.user_agent,
        uploaded_by=context.user_id,
        has_gps_data=metadata.has_gps,
        has_exif_data=metadata.has_exif,
        notes=notes,
        created_at=now,
    )
    storage.save_photo(photo)

    def mutate(work_order: WorkOrder) -> WorkOrderPatch:
        photos = _current_photos(work_order_id, include=photo)
        return chain(
            work_order,
            lambda wo: recompute_photo_alerts(wo, photos, now),
            lambda wo: verify_photo_location(wo, photo, now),
        )

    storage.update_work_order(work_order_id, mutate)
    return photo


def upload_photos(
    work_order_id: str,
    uploads: list[PhotoUpload],
    photo_type=DEFAULT_PHOTO_TYPE,
    notes: str | None = None,
    context: RequestContext | None = None,
    clock: Clock = utc_now,
) -> list[WorkOrderPhoto]:
    """Uploads a batch; every file is validated before any is stored."""
    check_batch_size(len(uploads))
    parse_photo_type(photo_type)

    for upload in uploads:
        validation = validate_photo_upload(upload)
        if not validation.is_valid:
            raise InvalidInputError("photos", f"{upload.file_name}: {validation.error_message}")

    return [
        upload_photo(work_order_id, upload, photo_type, notes, context, clock)
        for upload in uploads
    ]


def delete_photo(work_order_id: str, photo_id: str, clock: Clock = utc_now) -> None:
    """
    Deletes a photo and recomputes the work order's photo alerts.

    Raises:
        PhotoNotFoundError: If the photo does not exist.
        InvalidInputError: If the photo belongs to another work order.
    """
    photo = storage.get_photo(photo_id)
    if photo is None:
        raise PhotoNotFoundError(f"Photo {photo_id} not found")
    if photo.work_order_id != work_order_id:
        raise InvalidInputError("photo_id", "Photo does not belong to this work order")

    storage.delete_photo_file(photo.file_path)
    storage.delete_photo(photo_id)
    now = clock()

    storage.update_work_order(
        work_order_id,
        lambda wo: recompute_photo_alerts(wo, _current_photos(work_order_id, exclude=photo_id), now),
    )


def recompute_work_order_photos(work_order_id: str, clock: Clock = utc_now) -> WorkOrder:
    """Re-runs the completeness check without a photo change. Idempotent."""
    now = clock()
    return storage.update_work_order(
        work_order_id,
        lambda wo: recompute_photo_alerts(wo, storage.list_photos(work_order_id), now),
    )


def get_photo_statistics(work_order_id: str) -> PhotoStatistics:
    work_order = storage.get_work_order(work_order_id)
    if work_order is None:
        raise WorkOrderNotFoundError(f"Work order {work_order_id} not found")

    photos = storage.list_photos(work_order_id)
    before = sum(1 for p in photos if p.photo_type == PhotoType.BEFORE)
    after = sum(1 for p in photos if p.photo_type == PhotoType.AFTER)

    return PhotoStatistics(
        total_count=len(photos),
        before_count=before,
        after_count=after,
        during_count=sum(1 for p in photos if p.photo_type == PhotoType.DURING),
        with_gps_count=sum(1 for p in photos if p.has_gps_data),
        with_exif_count=sum(1 for p in photos if p.has_exif_data),
        verified_count=sum(1 for p in photos if p.is_verified),
        has_required_minimum=len(photos) >= work_order.minimum_photos_required,
        has_before_after=before > 0 and after > 0,
    )


def _current_photos(
    work_order_id: str,
    include: WorkOrderPhoto | None = None,
    exclude: str | None = None,
) -> list[WorkOrderPhoto]:
    # The photo index is eventually consistent; patch in the change we just made
    photos = {p.photo_id: p for p in storage.list_photos(work_order_id)}
    if include is not None:
        photos[include.photo_id] = include
    if exclude is not None:
        photos.pop(exclude, None)
    return list(photos.values())
