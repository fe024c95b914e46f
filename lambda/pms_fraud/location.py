"""
Photo location verification against the declared service location.

A photo more than LOCATION_TOLERANCE_KM from the service center raises a
location_mismatch alert. A photo within range marks the work order as
location verified, and that flag is never cleared by later photos.
"""

import logging
from datetime import datetime

from pms_fraud.config import LOCATION_TOLERANCE_KM
from pms_fraud.geo import haversine_km
from pms_fraud.ledger import append_alerts
from pms_fraud.models import AlertType, FraudAlert, WorkOrder, WorkOrderPatch, WorkOrderPhoto

logger = logging.getLogger(__name__)


def photo_distance_km(work_order: WorkOrder, photo: WorkOrderPhoto) -> float | None:
    """Distance from the service location, or None when either position is unknown."""
    if not photo.has_location:
        return None
    if work_order.service_location_lat is None or work_order.service_location_lng is None:
        return None

    return haversine_km(
        work_order.service_location_lat,
        work_order.service_location_lng,
        photo.latitude,
        photo.longitude,
    )


def verify_photo_location(
    work_order: WorkOrder,
    photo: WorkOrderPhoto,
    detected_at: datetime,
) -> WorkOrderPatch:
    """
    Checks one photo's GPS position. Missing data on either side means the
    check does not apply: empty patch, no alert.
    """
    distance = photo_distance_km(work_order, photo)
    if distance is None:
        return WorkOrderPatch()

    if distance <= LOCATION_TOLERANCE_KM:
        return WorkOrderPatch(location_verified=True)

    logger.info(
        "Photo %s taken %.2f km from service location of work order %s",
        photo.photo_id, distance, work_order.work_order_id,
    )

    alert = FraudAlert(
        type=AlertType.LOCATION_MISMATCH,
        message=f"Photo taken {distance:.2f} km away from service center",
        data={
            "distance_km": round(distance, 2),
            "photo_id": photo.photo_id,
            "photo_location": {"lat": photo.latitude, "lng": photo.longitude},
            "service_location": {
                "lat": work_order.service_location_lat,
                "lng": work_order.service_location_lng,
            },
        },
        detected_at=detected_at,
    )
    return append_alerts(work_order, [alert])
