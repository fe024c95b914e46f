"""
Fraud alert ledger - the alert collection and its derived status fields.

Everything here is pure: functions take the current work order and return
a WorkOrderPatch. storage.update_work_order applies the patch under a
version check, re-running the function on conflict, so every function
must be safe to call again on fresher state.
"""

from datetime import datetime
from typing import Callable, Iterable

from pms_fraud.models import (
    AlertType,
    FraudAlert,
    PhotoType,
    REGENERABLE_ALERT_TYPES,
    VerificationStatus,
    WorkOrder,
    WorkOrderPatch,
    WorkOrderPhoto,
)

LedgerStep = Callable[[WorkOrder], WorkOrderPatch]


# --- Public API ---

def append_alerts(work_order: WorkOrder, alerts: Iterable[FraudAlert]) -> WorkOrderPatch:
    """Appends history alerts and refreshes the derived fields."""
    new_alerts = list(alerts)
    if not new_alerts:
        return WorkOrderPatch()
    return _with_alerts(work_order, [*work_order.fraud_alerts, *new_alerts])


def recompute_photo_alerts(
    work_order: WorkOrder,
    photos: list[WorkOrderPhoto],
    detected_at: datetime,
) -> WorkOrderPatch:
    """
    Rebuilds the photo-completeness alerts from the current photo set.

    Stale missing_photos / missing_before_after alerts are dropped before
    fresh ones are added, so at most one of each exists and running this
    twice with the same photos gives the same collection.
    """
    photo_count = len(photos)
    has_before = any(p.photo_type == PhotoType.BEFORE for p in photos)
    has_after = any(p.photo_type == PhotoType.AFTER for p in photos)

    kept = [a for a in work_order.fraud_alerts if a.type not in REGENERABLE_ALERT_TYPES]
    previous = {a.type: a for a in work_order.fraud_alerts if a.type in REGENERABLE_ALERT_TYPES}

    fresh = []
    if photo_count < work_order.minimum_photos_required:
        fresh.append(FraudAlert(
            type=AlertType.MISSING_PHOTOS,
            message=(
                f"Only {photo_count} photo(s) uploaded. "
                f"Minimum required: {work_order.minimum_photos_required}"
            ),
            data={
                "photo_count": photo_count,
                "minimum_required": work_order.minimum_photos_required,
            },
            detected_at=detected_at,
        ))

    if work_order.requires_photo_verification and (not has_before or not has_after):
        fresh.append(FraudAlert(
            type=AlertType.MISSING_BEFORE_AFTER,
            message="Missing required before/after photos",
            data={"has_before": has_before, "has_after": has_after},
            detected_at=detected_at,
        ))

    fresh = [_keep_detection_time(alert, previous.get(alert.type)) for alert in fresh]

    patch = _with_alerts(work_order, [*kept, *fresh])
    patch.photos_uploaded = photo_count > 0
    return patch


def derive_status(alerts: list[FraudAlert], current: VerificationStatus) -> VerificationStatus:
    """
    flagged -> pending once the collection is empty; anything but
    rejected -> flagged while alerts exist. rejected is never overwritten.
    """
    if current == VerificationStatus.REJECTED:
        return current
    if alerts:
        return VerificationStatus.FLAGGED
    if current == VerificationStatus.FLAGGED:
        return VerificationStatus.PENDING
    return current


def apply_patch(work_order: WorkOrder, patch: WorkOrderPatch) -> WorkOrder:
    return work_order.model_copy(update=patch.changes())


def chain(work_order: WorkOrder, *steps: LedgerStep) -> WorkOrderPatch:
    """Runs steps in order, each seeing the previous ones applied; returns the combined patch."""
    current = work_order
    combined: dict = {}
    for step in steps:
        patch = step(current)
        changes = patch.changes()
        combined.update(changes)
        current = current.model_copy(update=changes)
    return WorkOrderPatch(**combined)


# --- Helpers ---

def _with_alerts(work_order: WorkOrder, alerts: list[FraudAlert]) -> WorkOrderPatch:
    return WorkOrderPatch(
        fraud_alerts=alerts,
        has_fraud_alerts=len(alerts) > 0,
        verification_status=derive_status(alerts, work_order.verification_status),
    )


def _keep_detection_time(fresh: FraudAlert, previous: FraudAlert | None) -> FraudAlert:
    # An unchanged condition keeps its original detection time
    if previous is not None and previous.message == fresh.message and previous.data == fresh.data:
        return previous
    return fresh
