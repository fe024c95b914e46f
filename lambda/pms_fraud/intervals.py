"""
PMS interval compliance - mileage and time based.

Both checks run on every new reading, independently of the anomaly
outcome. Their alerts are audit history and are never deduplicated.
"""

from datetime import datetime

from pms_fraud.clock import as_utc
from pms_fraud.config import PMS_INTERVAL_TOLERANCE_KM, TIME_INTERVAL_MONTHS
from pms_fraud.models import AlertType, FraudAlert, OdometerReading, WorkOrder


def check_missed_interval(
    work_order: WorkOrder,
    reading: OdometerReading,
    detected_at: datetime,
) -> list[FraudAlert]:
    """Returns zero, one or two interval alerts for the reading."""
    alerts = []

    mileage_alert = _check_mileage(work_order, reading, detected_at)
    if mileage_alert is not None:
        alerts.append(mileage_alert)

    time_alert = _check_time(work_order, reading, detected_at)
    if time_alert is not None:
        alerts.append(time_alert)

    return alerts


def months_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar months elapsed from `earlier` to `later`."""
    start = as_utc(earlier)
    end = as_utc(later)
    if end < start:
        return -months_between(later, earlier)

    months = (end.year - start.year) * 12 + (end.month - start.month)

    # A month only counts once the day-of-month and time have been reached
    if (end.day, end.time()) < (start.day, start.time()):
        months -= 1

    return months


def _check_mileage(work_order: WorkOrder, reading: OdometerReading, detected_at: datetime) -> FraudAlert | None:
    if not work_order.pms_interval_km or not reading.distance_diff:
        return None

    allowed_km = work_order.pms_interval_km + PMS_INTERVAL_TOLERANCE_KM
    if reading.distance_diff <= allowed_km:
        return None

    km_over = reading.distance_diff - allowed_km
    return FraudAlert(
        type=AlertType.MISSED_PMS_INTERVAL,
        message=f"PMS interval exceeded by {km_over} km",
        data={
            "interval_km": work_order.pms_interval_km,
            "tolerance_km": PMS_INTERVAL_TOLERANCE_KM,
            "actual_km": reading.distance_diff,
            "km_over": km_over,
        },
        detected_at=detected_at,
    )


def _check_time(work_order: WorkOrder, reading: OdometerReading, detected_at: datetime) -> FraudAlert | None:
    if reading.previous_reading_date is None:
        return None

    limit_months = work_order.time_interval_months or TIME_INTERVAL_MONTHS
    months = months_between(reading.previous_reading_date, reading.reading_date)
    if months <= limit_months:
        return None

    return FraudAlert(
        type=AlertType.MISSED_TIME_INTERVAL,
        message=f"Service delayed by {months} months",
        data={
            "months_delayed": months,
            "interval_months": limit_months,
            "last_service_date": reading.previous_reading_date.strftime("%Y-%m-%d"),
            "current_service_date": reading.reading_date.strftime("%Y-%m-%d"),
        },
        detected_at=detected_at,
    )
