"""Lab abnormal flags.

Compares each lab value with its reference range (or a standard adult
fallback range by test name) and flags results outside it. Values beyond
``high * critical_factor`` or below ``low / critical_factor`` are critical.
"""

from smarthealth.models.insights import LabAbnormalFlag
from smarthealth.models.merged import MergedLabResult, ReferenceRange
from smarthealth.rules.common import normalize_name, to_number
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy


def _range_for(lab: MergedLabResult, policy: RulePolicy) -> ReferenceRange | None:
    ref = lab.reference_range
    if ref is not None and (ref.low is not None or ref.high is not None):
        return ref
    fallback = policy.fallback_ranges.get(normalize_name(lab.name))
    if fallback is not None:
        return ReferenceRange(low=fallback.low, high=fallback.high)
    return None


def _range_text(low: float | None, high: float | None, unit: str) -> str:
    suffix = f" {unit}" if unit else ""
    if low is not None and high is not None:
        return f"(normal range: {low:g}-{high:g}{suffix})"
    if low is not None:
        return f"(normal: at least {low:g}{suffix})"
    return f"(normal: at most {high:g}{suffix})"


def _message(name: str, value: float, unit: str, status: str, ref: ReferenceRange) -> str:
    reading = f"{value:g} {unit}".strip()
    range_text = _range_text(ref.low, ref.high, unit)
    if status == "critical-high":
        return f"{name} is critically high at {reading} {range_text}. Discuss with your provider urgently."
    if status == "critical-low":
        return f"{name} is critically low at {reading} {range_text}. Discuss with your provider urgently."
    if status == "high":
        return f"{name} is above normal at {reading} {range_text}."
    return f"{name} is below normal at {reading} {range_text}."


def _status(value: float, ref: ReferenceRange, factor: float) -> str | None:
    if ref.high is not None and value > ref.high:
        return "critical-high" if value >= ref.high * factor else "high"
    if ref.low is not None and value < ref.low:
        return "critical-low" if value <= ref.low / factor else "low"
    return None


def analyze_lab_abnormal_flags(
    labs: list[MergedLabResult],
    policy: RulePolicy = DEFAULT_POLICY,
) -> list[LabAbnormalFlag]:
    """Flag every numeric lab result that falls outside its reference range.

    Results without a numeric value or without any known range are skipped.
    Critical flags come first; otherwise input order is kept.
    """
    flags: list[LabAbnormalFlag] = []

    for lab in labs:
        value = to_number(lab.value)
        if value is None:
            continue
        ref = _range_for(lab, policy)
        if ref is None:
            continue

        status = _status(value, ref, policy.critical_factor)
        if status is None:
            continue

        unit = lab.unit or ""
        flags.append(LabAbnormalFlag(
            lab_id=lab.id,
            lab_name=lab.name,
            value=value,
            unit=unit,
            reference_range=ReferenceRange(
                low=ref.low,
                high=ref.high,
                text=lab.reference_range.text if lab.reference_range else None,
            ),
            status=status,
            severity="critical" if status.startswith("critical") else "mild",
            message=_message(lab.name, value, unit, status, ref),
            source=lab.source,
        ))

    flags.sort(key=lambda f: 0 if f.severity == "critical" else 1)
    return flags
