"""Tolerant parsing helpers shared by the rule modules.

Merged data arrives partial and sometimes malformed. These helpers turn bad
values into ``None`` so rules can treat them as absence of evidence.
"""

import math
from datetime import UTC, datetime

from smarthealth.models.merged import MergedMedication


def parse_date(value: str | None) -> datetime | None:
    """Parse an ISO-8601 date or datetime, always returning an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def normalize_name(name: str | None) -> str:
    return (name or "").lower().strip()


def latest_date(dates: list[str | None]) -> str | None:
    """Return the most recent parseable date string, or None."""
    best: tuple[datetime, str] | None = None
    for raw in dates:
        parsed = parse_date(raw)
        if parsed is None:
            continue
        if best is None or parsed > best[0]:
            best = (parsed, raw)
    return best[1] if best else None


def months_since(date_str: str, as_of: datetime) -> int | None:
    parsed = parse_date(date_str)
    if parsed is None:
        return None
    return (as_of.year - parsed.year) * 12 + (as_of.month - parsed.month)


def is_active_medication(med: MergedMedication, statuses: tuple[str, ...]) -> bool:
    return normalize_name(med.status) in statuses


def sort_key_date(value: str | None) -> datetime:
    return parse_date(value) or datetime.min.replace(tzinfo=UTC)


def trend_direction(first: float, last: float, threshold_percent: float) -> tuple[str, float | None]:
    """Classify a series by its first and last value.

    Returns the direction and the percent change. A zero baseline has no
    percent change, so any non-zero delta from it counts as movement.
    """
    delta = last - first
    if first == 0:
        if delta == 0:
            return "stable", 0.0
        return ("rising" if delta > 0 else "falling"), None
    change = delta / abs(first) * 100
    if abs(change) < threshold_percent:
        return "stable", change
    return ("rising" if change > 0 else "falling"), change
