"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from typing import Any, Optional
from fastapi import HTTPException

logger = logging.getLogger(__name__)


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(started_at: Optional[datetime], ended_at: Optional[datetime] = None) -> Optional[int]:
    """Milliseconds between two naive UTC datetimes; None if never started."""
    if not started_at:
        return None
    ended_at = ended_at or utcnow()
    return max(int((ended_at - started_at).total_seconds() * 1000), 0)


def to_float(value: Any, default: float = 0.0) -> float:
    """Lenient numeric parse for API payloads ("12.50", 12.5, None, "")."""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result or result in (float("inf"), float("-inf")):
        return default
    return result


def to_int(value: Any, default: int = 0) -> int:
    """Lenient integer parse; accepts "12", 12.0, "12.7" (truncated)."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        parsed = to_float(value, float(default))
        return int(parsed)


def short_error(exc: BaseException, limit: int = 500) -> str:
    """Exception message trimmed for storage on execution rows."""
    message = str(exc) or exc.__class__.__name__
    return message[:limit]
