"""Lab trend direction.

Groups numeric, dated lab results by LOINC code (falling back to the test
name), sorts each group by observation time and compares the latest reading
with the earliest. A series that starts at zero has no percent change and is
classified by the sign of its delta alone. Groups with fewer than two
readings produce no trend.
"""

from smarthealth.models.insights import LabTrend, TrendReading
from smarthealth.models.merged import MergedLabResult
from smarthealth.models.source import ClinicalCode
from smarthealth.rules.common import normalize_name, parse_date, to_number, trend_direction
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy


def _loinc(lab: MergedLabResult) -> ClinicalCode | None:
    for code in lab.codes:
        if code.code and "loinc" in (code.system or "").lower():
            return code
    return None


def _group_key(lab: MergedLabResult) -> str:
    loinc = _loinc(lab)
    if loinc is not None:
        return f"loinc:{loinc.code}"
    return f"name:{normalize_name(lab.name)}"


def _primary_code(lab: MergedLabResult) -> ClinicalCode:
    return _loinc(lab) or (lab.codes[0] if lab.codes else ClinicalCode(display=lab.name))


def _span_text(span_days: float) -> str:
    if span_days >= 30:
        return f"{round(span_days / 30)} months"
    return f"{round(span_days)} days"


def _message(name: str, direction: str, change: float | None, first: float, last: float, unit: str, span_days: float) -> str:
    span = _span_text(span_days)
    suffix = f" {unit}" if unit else ""
    if change is None and direction != "stable":
        verb = "risen" if direction == "rising" else "decreased"
        return f"{name} has {verb} from {first:g} to {last:g}{suffix} over the past {span}."
    pct = f"{abs(change):.1f}"
    if direction == "rising":
        return f"{name} has risen {pct}% (from {first:g} to {last:g}{suffix}) over the past {span}."
    if direction == "falling":
        return f"{name} has decreased {pct}% (from {first:g} to {last:g}{suffix}) over the past {span}."
    return f"{name} has been stable around {last:g}{suffix} over the past {span}."


def analyze_lab_trends(
    labs: list[MergedLabResult],
    policy: RulePolicy = DEFAULT_POLICY,
) -> list[LabTrend]:
    """Return one trend per analyte with 2+ readings, largest change first."""
    groups: dict[str, list[tuple]] = {}
    for lab in labs:
        value = to_number(lab.value)
        when = parse_date(lab.effective_date)
        if value is None or when is None:
            continue
        groups.setdefault(_group_key(lab), []).append((when, value, lab))

    trends: list[LabTrend] = []
    for readings in groups.values():
        if len(readings) < 2:
            continue

        readings = sorted(readings, key=lambda r: r[0])
        first_at, first_value, first = readings[0]
        last_at, last_value, last = readings[-1]
        unit = last.unit or first.unit or ""

        direction, change = trend_direction(first_value, last_value, policy.stable_threshold_percent)

        span_days = (last_at - first_at).total_seconds() / 86400

        trends.append(LabTrend(
            lab_name=last.name,
            code=_primary_code(last),
            direction=direction,
            change_percent=None if change is None else round(change, 1),
            reading_count=len(readings),
            first_reading=TrendReading(value=first_value, date=first.effective_date),
            last_reading=TrendReading(value=last_value, date=last.effective_date),
            span_days=round(span_days),
            unit=unit,
            message=_message(last.name, direction, change, first_value, last_value, unit, span_days),
        ))

    trends.sort(key=lambda t: t.magnitude, reverse=True)
    return trends
