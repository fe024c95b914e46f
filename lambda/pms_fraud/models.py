"""
Domain models for the PMS fraud detection core.

All Pydantic models in one place. Imported by the classifiers, the ledger,
storage, and handler modules. Single source of truth for data contracts.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from pms_fraud.config import DEFAULT_MINIMUM_PHOTOS, READING_UNIT


# --- Domain Enums ---

class AnomalyType(str, Enum):
    """
    Odometer anomaly categories. Inherits str so Pydantic serializes
    to "rollback" / "duplicate" without extra conversion.
    """
    NONE = "none"
    ROLLBACK = "rollback"
    EXCESSIVE_INCREASE = "excessive_increase"
    DUPLICATE = "duplicate"
    MISSED_INTERVAL = "missed_interval"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class AlertType(str, Enum):
    ODOMETER_ANOMALY = "odometer_anomaly"
    MISSED_PMS_INTERVAL = "missed_pms_interval"
    MISSED_TIME_INTERVAL = "missed_time_interval"
    MISSING_PHOTOS = "missing_photos"
    MISSING_BEFORE_AFTER = "missing_before_after"
    LOCATION_MISMATCH = "location_mismatch"


# Photo-completeness alerts are replaced on every recompute; everything else is history.
REGENERABLE_ALERT_TYPES: frozenset[AlertType] = frozenset({
    AlertType.MISSING_PHOTOS,
    AlertType.MISSING_BEFORE_AFTER,
})


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"
    REJECTED = "rejected"


class PhotoType(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    DURING = "during"
    DAMAGE = "damage"
    COMPLETION = "completion"


# --- Alert Ledger ---

class FraudAlert(BaseModel):
    """One detected anomaly or missing-evidence condition on a work order."""
    type: AlertType
    message: str
    data: dict[str, Any] = {}
    detected_at: datetime


class WorkOrder(BaseModel):
    """
    The slice of a work order this core reads and mutates.

    `version` is bumped on every write and checked on the next one,
    so concurrent alert updates cannot overwrite each other.
    """
    work_order_id: str
    work_order_number: str | None = None
    vehicle_vin: str
    vehicle_plate_number: str | None = None
    branch_id: str | None = None

    current_mileage: int | None = Field(None, ge=0)
    pms_interval_km: int | None = Field(None, ge=0)
    time_interval_months: int | None = Field(None, ge=0)

    requires_photo_verification: bool = True
    minimum_photos_required: int = Field(DEFAULT_MINIMUM_PHOTOS, ge=0)
    photos_uploaded: bool = False

    odometer_verified: bool = False
    location_verified: bool = False
    service_location_lat: float | None = None
    service_location_lng: float | None = None

    fraud_alerts: list[FraudAlert] = []
    has_fraud_alerts: bool = False
    verification_status: VerificationStatus = VerificationStatus.PENDING

    version: int = Field(0, ge=0)


class WorkOrderPatch(BaseModel):
    """
    Field changes to apply to a work order. None means "leave as is";
    `fraud_alerts`, when set, replaces the whole collection.
    """
    fraud_alerts: list[FraudAlert] | None = None
    has_fraud_alerts: bool | None = None
    verification_status: VerificationStatus | None = None
    odometer_verified: bool | None = None
    location_verified: bool | None = None
    current_mileage: int | None = None
    photos_uploaded: bool | None = None

    def changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


# --- Odometer Context ---

class RequestContext(BaseModel):
    """Who submitted the request and from where. Recorded, never checked."""
    user_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class AnomalyResult(BaseModel):
    """Outcome of classifying one reading against the previous one."""
    anomaly_type: AnomalyType = AnomalyType.NONE
    severity: Severity | None = None
    message: str | None = None
    distance_diff: int | None = None
    days_since: int | None = None
    avg_daily_distance: float | None = None

    @property
    def is_anomaly(self) -> bool:
        return self.anomaly_type != AnomalyType.NONE


class OdometerReading(BaseModel):
    """One recorded mileage observation. Immutable except for verification."""
    reading_id: str
    vehicle_vin: str
    vehicle_plate_number: str | None = None
    work_order_id: str | None = None
    branch_id: str | None = None

    reading: int = Field(ge=0)
    unit: str = READING_UNIT
    reading_date: datetime

    previous_reading: int | None = None
    previous_reading_date: datetime | None = None
    distance_diff: int | None = None
    days_diff: int | None = None
    avg_daily_distance: float | None = None

    is_anomaly: bool = False
    anomaly_type: AnomalyType = AnomalyType.NONE
    anomaly_notes: str | None = None

    photo_path: str | None = None
    has_photo_evidence: bool = False

    recorded_by: str | None = None
    recorded_ip_address: str | None = None
    is_verified: bool = False
    verified_by: str | None = None
    verified_at: datetime | None = None


class ReadingIssue(BaseModel):
    type: AnomalyType
    severity: Severity
    message: str


class ReadingCheck(BaseModel):
    """Advisory result for a candidate reading that has not been submitted yet."""
    valid: bool
    message: str | None = None
    errors: list[ReadingIssue] = []
    previous_reading: int | None = None
    previous_date: str | None = None
    days_since_last: int | None = None


# --- Photo Context ---

class GpsCoordinates(BaseModel):
    latitude: float
    longitude: float


class ExifMetadata(BaseModel):
    """Fields pulled from an image's EXIF block. Every group is optional."""
    camera_make: str | None = None
    camera_model: str | None = None
    captured_at: datetime | None = None
    gps: GpsCoordinates | None = None
    has_exif: bool = False

    @property
    def has_gps(self) -> bool:
        return self.gps is not None


class PhotoUpload(BaseModel):
    """A decoded image as received from the caller."""
    file_name: str
    mime_type: str
    content: bytes


class PhotoValidationResult(BaseModel):
    """Result of upload checks on a single photo."""
    is_valid: bool
    error_message: str | None = None

    format: str | None = None
    size_bytes: int | None = Field(None, ge=0)
    resolution: tuple[int, int] | None = None


class ReadingValidationResult(BaseModel):
    """Result of input checks on a submitted odometer reading."""
    is_valid: bool
    field: str | None = None
    error_message: str | None = None


class WorkOrderPhoto(BaseModel):
    """One uploaded image and the evidence extracted from it."""
    photo_id: str
    work_order_id: str
    file_path: str
    file_name: str
    file_size: int = Field(ge=0)
    mime_type: str
    photo_type: PhotoType = PhotoType.DURING

    latitude: float | None = None
    longitude: float | None = None
    photo_taken_at: datetime | None = None
    camera_make: str | None = None
    camera_model: str | None = None

    uploaded_ip_address: str | None = None
    user_agent: str | None = None
    uploaded_by: str | None = None

    has_gps_data: bool = False
    has_exif_data: bool = False
    is_verified: bool = False
    notes: str | None = None
    created_at: datetime

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class PhotoStatistics(BaseModel):
    total_count: int = 0
    before_count: int = 0
    after_count: int = 0
    during_count: int = 0
    with_gps_count: int = 0
    with_exif_count: int = 0
    verified_count: int = 0
    has_required_minimum: bool = False
    has_before_after: bool = False


# --- Exceptions ---

class InvalidInputError(Exception):
    """Caller supplied a value that must be rejected before persistence."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class StorageError(Exception):
    """Database or object store operation failed."""
    pass


class WorkOrderNotFoundError(Exception):
    """Requested work order does not exist."""
    pass


class ReadingNotFoundError(Exception):
    """Requested odometer reading does not exist."""
    pass


class PhotoNotFoundError(Exception):
    """Requested photo does not exist."""
    pass


class ConcurrencyConflictError(Exception):
    """Work order kept changing underneath us; retries exhausted."""
    pass
