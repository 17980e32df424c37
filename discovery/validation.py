"""Input checks that run before any remote call is made."""
from __future__ import annotations

import re
from typing import Optional

from .errors import ValidationError
from .schemas import MapBounds

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

MAX_RADIUS_KM = 50


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not -90 <= latitude <= 90:
        raise ValidationError("Invalid latitude: must be between -90 and 90.", field="latitude")
    if not -180 <= longitude <= 180:
        raise ValidationError("Invalid longitude: must be between -180 and 180.", field="longitude")


def validate_bounds(bounds: MapBounds) -> None:
    if bounds.north <= bounds.south:
        raise ValidationError("Invalid bounds: north must be greater than south.", field="north")
    # Only a box touching the -180 or 180 meridian may have east <= west.
    if bounds.east <= bounds.west and bounds.east > -180 and bounds.west < 180:
        raise ValidationError("Invalid bounds: east must be greater than west.", field="east")


def validate_uuid(value: Optional[str], field: str, label: str) -> None:
    if value is None or not UUID_PATTERN.match(value):
        raise ValidationError(f"Invalid {label} id.", field=field)


def cap(value: float, maximum: float) -> float:
    """Silently clamp slider-driven values instead of rejecting them."""

    return min(value, maximum)
