"""
Coarse geo bucketing for proximity filters.

A bucket is ``"{lat},{lng}"`` with both coordinates fixed to ``precision``
decimals (2 → roughly 1.1 km bins). Statements are tagged with a bucket at
write time and read-side filters match on equality/prefix, so the precision
must be the same on both paths.
"""
import math
from typing import Optional

from memorial_feed.errors import ValidationError

DEFAULT_PRECISION = 2


def _fixed(value: float, precision: int) -> str:
    text = f"{value:.{precision}f}"
    # -0.00 and 0.00 must land in the same bin
    if float(text) == 0:
        text = f"{0.0:.{precision}f}"
    return text


def bucket(lat: float, lng: float, precision: int = DEFAULT_PRECISION) -> Optional[str]:
    """Return the bucket key, or ``None`` for non-finite coordinates."""
    try:
        lat_f, lng_f = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        return None
    return f"{_fixed(lat_f, precision)},{_fixed(lng_f, precision)}"


def validate_coordinates(lat: Optional[float], lng: Optional[float]) -> None:
    """Raise ValidationError unless both are absent or both form a real point."""
    if lat is None and lng is None:
        return
    if lat is None or lng is None:
        raise ValidationError("lat and lng must be supplied together")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError("lat/lng must be finite numbers")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise ValidationError(f"coordinates out of range: ({lat}, {lng})")
