"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def period_of(moment: datetime.datetime | datetime.date) -> str:
    """Return the ``YYYY-MM`` billing period containing *moment*."""
    return f"{moment.year:04d}-{moment.month:02d}"


def period_bounds(period: str) -> tuple[datetime.date, datetime.date]:
    """Return the first and last day of a ``YYYY-MM`` period.

    Raises ``ValueError`` for malformed periods.
    """
    start = datetime.datetime.strptime(period, "%Y-%m").date()
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - datetime.timedelta(days=1)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 datetime, treating naive values as UTC."""
    if not raw:
        return None
    try:
        value = datetime.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Convert *value* to ``Decimal`` via ``str`` so floats keep their printed value."""
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def quantize_money(value) -> Decimal:
    """Round to cents, half up.  Apply only to stored/displayed fields."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str:
    return str(quantize_money(value))


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def safe_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Safely convert *value* to ``Decimal``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        result = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default
    if not result.is_finite():
        logger.warning("Rejected non-finite amount %r, using default %s", value, default)
        return default
    return result
