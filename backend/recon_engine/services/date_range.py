"""
Date-range resolution for workflow executions.

Workflow configs describe *which* days to pull relative to "today" in the
business timezone; executions store the concrete [since, until] pair.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from recon_engine.config import get_settings
from recon_engine.errors import ValidationError
from recon_engine.models import DateRangeType

DEFAULT_DATE_RANGE = {"type": DateRangeType.RELATIVE.value, "days": 1}

# Upper bound on a single execution's span
MAX_RANGE_DAYS = 366


def local_today(tz_name: Optional[str] = None) -> date:
    """Today's date in the business timezone."""
    tz = ZoneInfo(tz_name or get_settings().timezone)
    return datetime.now(tz).date()


def parse_date(value: str, field_name: str = "date") -> date:
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name} {value!r}, expected YYYY-MM-DD")


def _int_field(value, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"date_range.{field_name} must be an integer, got {value!r}")
    return number


def resolve_workflow_date_range(workflow_date_range: Optional[dict], sources: Optional[dict]) -> dict:
    """
    Pick the date-range config for a workflow: top-level date_range first,
    then the first source that carries one, then the default (today only).
    """
    if workflow_date_range:
        return workflow_date_range
    for key in ("meta", "pos"):
        source_cfg = (sources or {}).get(key) or {}
        if source_cfg.get("date_range"):
            return source_cfg["date_range"]
    return DEFAULT_DATE_RANGE


def calculate_date_range(config: Optional[dict], today: Optional[date] = None) -> Tuple[str, str]:
    """
    Return (since, until) as YYYY-MM-DD strings.

    relative  {"days": N}                 -> today-(N-1) .. today
    absolute  {"since": s, "until": u}    -> s .. u
    rolling   {"offset_days": K}          -> today-K .. today-K
    """
    config = config or DEFAULT_DATE_RANGE
    today = today or local_today()
    range_type = (config.get("type") or DateRangeType.RELATIVE.value).lower()

    if range_type == DateRangeType.RELATIVE.value:
        days = _int_field(config.get("days", 1), "days")
        if days < 1:
            raise ValidationError("date_range.days must be at least 1")
        since, until = today - timedelta(days=days - 1), today
    elif range_type == DateRangeType.ABSOLUTE.value:
        if not config.get("since") or not config.get("until"):
            raise ValidationError("Absolute date_range requires since and until")
        since = parse_date(config["since"], "since")
        until = parse_date(config["until"], "until")
    elif range_type == DateRangeType.ROLLING.value:
        offset = _int_field(config.get("offset_days", config.get("offsetDays", 0)), "offset_days")
        if offset < 0:
            raise ValidationError("date_range.offset_days cannot be negative")
        since = until = today - timedelta(days=offset)
    else:
        raise ValidationError(f"Unknown date_range type {range_type!r}")

    validate_range(since, until)
    return since.isoformat(), until.isoformat()


def validate_range(since: date, until: date) -> None:
    if since > until:
        raise ValidationError(f"since ({since}) is after until ({until})")
    if (until - since).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range exceeds {MAX_RANGE_DAYS} days")


def get_date_array(since: str, until: str) -> list[str]:
    """Inclusive list of YYYY-MM-DD days, oldest first."""
    start = parse_date(since, "since")
    end = parse_date(until, "until")
    days = []
    current = start
    while current <= end:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def get_total_days(since: str, until: str) -> int:
    start = parse_date(since, "since")
    end = parse_date(until, "until")
    return max((end - start).days + 1, 0)


def local_day_bounds(day: str, tz_name: Optional[str] = None) -> Tuple[int, int]:
    """
    Unix epoch seconds for the first and last second of a local day,
    e.g. 2025-03-01 in Asia/Manila -> 2025-02-28T16:00:00Z .. 2025-03-01T15:59:59Z.
    """
    tz = ZoneInfo(tz_name or get_settings().timezone)
    start = datetime.combine(parse_date(day), time.min, tzinfo=tz)
    end = start + timedelta(days=1) - timedelta(seconds=1)
    return int(start.timestamp()), int(end.timestamp())
