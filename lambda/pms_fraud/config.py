import os
"""
Configuration for the PMS fraud detection core.

All thresholds, limits, and defaults in one place.
Change here, not in business logic modules.
"""

# --- Odometer Anomalies ---

MAX_DAILY_DISTANCE_KM: int = 500
READING_UNIT: str = "km"
ALLOWED_UNITS: set[str] = {"km"}
VIN_LENGTH: int = 17
READING_HISTORY_LIMIT: int = 10

# --- PMS Intervals ---

PMS_INTERVAL_TOLERANCE_KM: int = 1000
TIME_INTERVAL_MONTHS: int = 6

# --- Geo Verification ---

EARTH_RADIUS_KM: float = 6371.0
LOCATION_TOLERANCE_KM: float = 1.0
GPS_DECIMAL_PLACES: int = 7

# --- EXIF ---

EXIF_MIME_TYPES: set[str] = {"image/jpeg", "image/jpg"}
EXIF_DATETIME_FORMAT: str = "%Y:%m:%d %H:%M:%S"

# --- Photo Uploads ---

MAX_PHOTO_SIZE_MB: float = 5.0
MAX_PHOTOS_PER_UPLOAD: int = 10
ALLOWED_MIME_TYPES: set[str] = {"image/jpeg", "image/jpg", "image/png"}
ALLOWED_IMAGE_FORMATS: set[str] = {"JPEG", "PNG"}
DEFAULT_PHOTO_TYPE: str = "during"
DEFAULT_MINIMUM_PHOTOS: int = 2

# --- Storage ---

MAX_UPDATE_RETRIES: int = 3
WORK_ORDERS_TABLE: str = os.environ.get("WORK_ORDERS_TABLE", "work_orders")
ODOMETER_READINGS_TABLE: str = os.environ.get("ODOMETER_READINGS_TABLE", "odometer_readings")
LATEST_READINGS_TABLE: str = os.environ.get("LATEST_READINGS_TABLE", "latest_odometer_readings")
WORK_ORDER_PHOTOS_TABLE: str = os.environ.get("WORK_ORDER_PHOTOS_TABLE", "work_order_photos")
READINGS_VIN_INDEX: str = "vin-reading_date-index"
PHOTOS_WORK_ORDER_INDEX: str = "work_order_id-index"
PHOTO_BUCKET: str = os.environ.get("PHOTO_BUCKET", "pms-work-order-photos")

# --- Logging ---

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
