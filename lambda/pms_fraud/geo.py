"""
Geo math - great-circle distance and EXIF GPS coordinate conversion.

Pure functions, no I/O. Callers check that coordinates are present
before asking for a distance.
"""

import math
import numbers

from pms_fraud.config import EARTH_RADIUS_KM, GPS_DECIMAL_PLACES


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in km between two points given in decimal degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def dms_to_decimal(degrees, minutes, seconds, hemisphere: str) -> float:
    """
    Converts degrees/minutes/seconds to signed decimal degrees.

    Each component may be a number, a "num/den" string, a (num, den) pair,
    or a Pillow IFDRational. A component that cannot be read counts as 0.0.
    S and W hemispheres are negative.
    """
    decimal = (
        parse_gps_value(degrees)
        + parse_gps_value(minutes) / 60
        + parse_gps_value(seconds) / 3600
    )

    if str(hemisphere).strip().upper() in ("S", "W"):
        decimal *= -1

    return round(decimal, GPS_DECIMAL_PLACES)


def parse_gps_value(value) -> float:
    """Reads one EXIF GPS component. Malformed or zero-denominator values are 0.0."""
    if isinstance(value, bool):
        return 0.0

    if isinstance(value, numbers.Rational):
        # IFDRational keeps a zero denominator instead of raising
        if value.denominator == 0:
            return 0.0
        return float(value.numerator) / float(value.denominator)

    if isinstance(value, numbers.Real):
        result = float(value)
        return 0.0 if math.isnan(result) or math.isinf(result) else result

    if isinstance(value, (tuple, list)) and len(value) == 2:
        return _divide(value[0], value[1])

    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")

    if isinstance(value, str):
        text = value.strip()
        if "/" in text:
            parts = text.split("/")
            if len(parts) != 2:
                return 0.0
            return _divide(parts[0], parts[1])
        try:
            result = float(text)
        except ValueError:
            return 0.0
        return 0.0 if math.isnan(result) or math.isinf(result) else result

    return 0.0


def _divide(numerator, denominator) -> float:
    try:
        num = float(numerator)
        den = float(denominator)
    except (TypeError, ValueError):
        return 0.0
    if den == 0 or math.isnan(num) or math.isnan(den):
        return 0.0
    return num / den
