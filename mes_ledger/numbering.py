"""Human-readable document numbers (``WO-20250101-042`` style)."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from .domain import utcnow


def _plant_time(utc_offset_hours: int, now: Optional[datetime]) -> datetime:
    return (now or utcnow()).astimezone(timezone(timedelta(hours=utc_offset_hours)))


def document_number(
    prefix: str, *, utc_offset_hours: int = 8, now: Optional[datetime] = None
) -> str:
    """Return ``PREFIX-yyyymmdd-NNN`` using the plant-local date."""

    local = _plant_time(utc_offset_hours, now)
    return f"{prefix}-{local:%Y%m%d}-{random.randint(0, 999):03d}"


def stock_take_number(*, utc_offset_hours: int = 8, now: Optional[datetime] = None) -> str:
    local = _plant_time(utc_offset_hours, now)
    return f"ST{local:%Y%m%d%H%M%S}"


__all__ = ["document_number", "stock_take_number"]
