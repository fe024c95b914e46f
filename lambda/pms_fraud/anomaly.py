"""
Odometer anomaly classification.

One classifier serves both call sites: the record written when a reading
is submitted, and the advisory check a caller runs before submitting.
Rules are evaluated in a fixed order and the first match wins.
"""

from datetime import datetime

from pms_fraud.clock import as_utc
from pms_fraud.config import MAX_DAILY_DISTANCE_KM, READING_UNIT
from pms_fraud.models import (
    AnomalyResult,
    AnomalyType,
    OdometerReading,
    ReadingCheck,
    ReadingIssue,
    RequestContext,
    Severity,
    WorkOrder,
)

# Rollback is the only anomaly that is critical on its own
ANOMALY_SEVERITY: dict[AnomalyType, Severity] = {
    AnomalyType.ROLLBACK: Severity.CRITICAL,
    AnomalyType.DUPLICATE: Severity.WARNING,
    AnomalyType.EXCESSIVE_INCREASE: Severity.WARNING,
    AnomalyType.MISSED_INTERVAL: Severity.WARNING,
}


# --- Public API ---

def classify_reading(
    new_reading: int,
    prior_reading: int | None,
    prior_date: datetime | None,
    now: datetime,
) -> AnomalyResult:
    """
    Classifies a reading against the vehicle's last known one.

    Order: no prior -> rollback -> duplicate -> excessive increase -> none.
    The excessive-increase rule is skipped when no full calendar day
    has passed, since the daily average is undefined.
    """
    if prior_reading is None:
        return AnomalyResult()

    distance_diff = new_reading - prior_reading
    days_since = days_between(prior_date, now) if prior_date is not None else 0

    if distance_diff < 0:
        return AnomalyResult(
            anomaly_type=AnomalyType.ROLLBACK,
            severity=ANOMALY_SEVERITY[AnomalyType.ROLLBACK],
            message=f"Odometer reading decreased by {abs(distance_diff)} km",
            distance_diff=distance_diff,
            days_since=days_since,
        )

    if distance_diff == 0:
        return AnomalyResult(
            anomaly_type=AnomalyType.DUPLICATE,
            severity=ANOMALY_SEVERITY[AnomalyType.DUPLICATE],
            message="Reading is identical to previous reading",
            distance_diff=distance_diff,
            days_since=days_since,
        )

    if days_since > 0:
        avg_daily = distance_diff / days_since
        if avg_daily > MAX_DAILY_DISTANCE_KM:
            return AnomalyResult(
                anomaly_type=AnomalyType.EXCESSIVE_INCREASE,
                severity=ANOMALY_SEVERITY[AnomalyType.EXCESSIVE_INCREASE],
                message=(
                    f"Unusually high daily average: {avg_daily:.2f} km/day "
                    f"({distance_diff} km in {days_since} days)"
                ),
                distance_diff=distance_diff,
                days_since=days_since,
                avg_daily_distance=round(avg_daily, 2),
            )

    return AnomalyResult(distance_diff=distance_diff, days_since=days_since)


def days_between(earlier: datetime, later: datetime) -> int:
    """Calendar days from `earlier` to `later` in UTC. Negative if reversed."""
    return (as_utc(later).date() - as_utc(earlier).date()).days


def build_reading(
    reading_id: str,
    work_order: WorkOrder,
    reading: int,
    previous: OdometerReading | None,
    reading_date: datetime,
    photo_path: str | None = None,
    context: RequestContext | None = None,
) -> OdometerReading:
    """
    Builds the reading row with its history-derived fields and classification.

    `avg_daily_distance` stays None when both readings fall on the same day.
    """
    context = context or RequestContext()

    result = classify_reading(
        reading,
        previous.reading if previous else None,
        previous.reading_date if previous else None,
        reading_date,
    )

    derived = {}
    if previous is not None:
        days_diff = days_between(previous.reading_date, reading_date)
        distance_diff = reading - previous.reading
        derived = {
            "previous_reading": previous.reading,
            "previous_reading_date": previous.reading_date,
            "distance_diff": distance_diff,
            "days_diff": days_diff,
            "avg_daily_distance": round(distance_diff / days_diff, 2) if days_diff > 0 else None,
        }

    return OdometerReading(
        reading_id=reading_id,
        vehicle_vin=work_order.vehicle_vin,
        vehicle_plate_number=work_order.vehicle_plate_number,
        work_order_id=work_order.work_order_id,
        branch_id=work_order.branch_id,
        reading=reading,
        unit=READING_UNIT,
        reading_date=reading_date,
        is_anomaly=result.is_anomaly,
        anomaly_type=result.anomaly_type,
        anomaly_notes=result.message,
        photo_path=photo_path,
        has_photo_evidence=photo_path is not None,
        recorded_by=context.user_id,
        recorded_ip_address=context.ip_address,
        **derived,
    )


def check_reading(new_reading: int, previous: OdometerReading | None, now: datetime) -> ReadingCheck:
    """Advisory check for a candidate reading. Nothing is persisted."""
    if previous is None:
        return ReadingCheck(valid=True, message="First reading for this vehicle")

    result = classify_reading(new_reading, previous.reading, previous.reading_date, now)

    errors = []
    if result.is_anomaly:
        errors.append(ReadingIssue(
            type=result.anomaly_type,
            severity=result.severity,
            message=result.message,
        ))

    return ReadingCheck(
        valid=not errors,
        errors=errors,
        previous_reading=previous.reading,
        previous_date=previous.reading_date.strftime("%Y-%m-%d"),
        days_since_last=result.days_since,
    )


def anomaly_alert_data(reading: OdometerReading) -> dict:
    """Structured payload attached to an odometer_anomaly alert."""
    severity = ANOMALY_SEVERITY.get(reading.anomaly_type)
    return {
        "anomaly_type": reading.anomaly_type.value,
        "severity": severity.value if severity else None,
        "reading": reading.reading,
        "previous_reading": reading.previous_reading,
        "distance_diff": reading.distance_diff,
        "days_diff": reading.days_diff,
        "avg_daily_distance": reading.avg_daily_distance,
    }
