"""Vital sign / medication correlation.

Pairs the trend of each vital type with active medications known to affect it
(antihypertensives and blood pressure, weight-gain medications and weight,
beta-blockers and stimulants and heart rate). The vital and the medication
frequently come from different health systems.

A correlation needs all three of: a trend (two or more dated readings of the
same vital), an active medication that started close to that trend, and a
known physiologic link between them. A medication started after the latest
reading, or more than the policy window before the first one, cannot explain
the trend.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from smarthealth.models.insights import VitalCorrelation
from smarthealth.models.merged import MergedMedication, MergedVital
from smarthealth.rules.common import is_active_medication, normalize_name, parse_date, sort_key_date, trend_direction
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy

SYSTOLIC_LOINC = "8480-6"
DIASTOLIC_LOINC = "8462-4"


def _component(vital: MergedVital, label: str, loinc: str) -> float | None:
    for comp in vital.components:
        if label in comp.name.lower() or any(code.code == loinc for code in comp.codes):
            return comp.value
    return None


def systolic(vital: MergedVital) -> float | None:
    return _component(vital, "systolic", SYSTOLIC_LOINC)


def diastolic(vital: MergedVital) -> float | None:
    return _component(vital, "diastolic", DIASTOLIC_LOINC)


def _num(value: float | None) -> str:
    return "unknown" if value is None else f"{value:g}"


@dataclass(frozen=True)
class VitalTrend:
    readings: tuple[MergedVital, ...]
    direction: str  # "rising", "falling", "stable"
    first_value: float
    last_value: float

    @property
    def first(self) -> MergedVital:
        return self.readings[0]

    @property
    def latest(self) -> MergedVital:
        return self.readings[-1]

    def describe(self) -> str:
        count = len(self.readings)
        if self.direction == "stable":
            return f"Stable around {self.last_value:g} across {count} readings."
        verb = "up" if self.direction == "rising" else "down"
        return f"Trending {verb} from {self.first_value:g} to {self.last_value:g} across {count} readings."


@dataclass(frozen=True)
class CorrelationRule:
    id: str
    vital_types: tuple[str, ...]
    med_patterns: tuple[re.Pattern, ...]
    correlation_type: str
    significance: str
    message: Callable[[VitalTrend, MergedMedication, RulePolicy], str]
    detail: Callable[[VitalTrend, MergedMedication, RulePolicy], str]
    reading: Callable[[MergedVital], float | None] = lambda v: v.value


def _bp_controlled(vital: MergedVital, policy: RulePolicy) -> bool | None:
    sys_value, dia_value = systolic(vital), diastolic(vital)
    if sys_value is None or dia_value is None:
        return None
    return sys_value < policy.bp_systolic_target and dia_value < policy.bp_diastolic_target


def _bp_message(trend: VitalTrend, med: MergedMedication, policy: RulePolicy) -> str:
    vital = trend.latest
    controlled = _bp_controlled(vital, policy)
    if controlled is None:
        return f"You are taking {med.name} for blood pressure management. Regular BP monitoring is important."
    reading = f"{_num(systolic(vital))}/{_num(diastolic(vital))}"
    if controlled:
        return f"Your blood pressure ({reading}) appears well-controlled while taking {med.name}."
    if trend.direction == "rising":
        return (
            f"Your blood pressure ({reading}) has been rising despite taking {med.name}. "
            "Discuss this with your provider."
        )
    return (
        f"Your blood pressure ({reading}) may still be elevated despite taking {med.name}. "
        "Discuss this with your provider."
    )


def _bp_detail(trend: VitalTrend, med: MergedMedication, policy: RulePolicy) -> str:
    vital = trend.latest
    target = f"Target: <{policy.bp_systolic_target:g}/{policy.bp_diastolic_target:g} mmHg."
    base = f"BP readings from {vital.source.system_name}, {med.name} from {med.source.system_name}. {target}"
    if _bp_controlled(vital, policy) is False:
        base = f"{base} Current reading exceeds target."
    return f"{base} {trend.describe()}"


def _weight_message(trend: VitalTrend, med: MergedMedication, policy: RulePolicy) -> str:
    if trend.direction == "rising":
        return (
            f"Your weight has gone up since around the time you started {med.name}, which is commonly "
            "associated with weight gain. This may be worth discussing with your provider."
        )
    return (
        f"{med.name} is commonly associated with weight changes. If you've noticed weight gain, "
        "this may be a contributing factor worth discussing with your provider."
    )


def _hr_beta_message(trend: VitalTrend, med: MergedMedication, policy: RulePolicy) -> str:
    hr = trend.latest.value
    if hr is not None and hr < policy.heart_rate_low:
        return (
            f"Your heart rate ({hr:g} bpm) is on the lower side, which is expected with {med.name} "
            "(a beta-blocker). If you feel dizzy or faint, contact your provider."
        )
    if hr is not None and hr > policy.heart_rate_high:
        return f"Your heart rate ({hr:g} bpm) is elevated despite taking {med.name}. This may need attention."
    return f"{med.name} (beta-blocker) is expected to lower your heart rate. Your current rate is {_num(hr)} bpm."


def _hr_stimulant_message(trend: VitalTrend, med: MergedMedication, policy: RulePolicy) -> str:
    hr = trend.latest.value
    if hr is not None and hr > policy.heart_rate_high:
        return (
            f"Your heart rate ({hr:g} bpm) is elevated. {med.name} can increase heart rate. "
            "Discuss with your provider if this persists."
        )
    return f"{med.name} can affect heart rate. Your current rate is {_num(hr)} bpm."


def _p(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.I)


CORRELATION_RULES: list[CorrelationRule] = [
    CorrelationRule(
        id="bp-antihypertensive",
        vital_types=("blood-pressure",),
        med_patterns=(
            _p(r"lisinopril|enalapril|ramipril|benazepril"),  # ACE inhibitors
            _p(r"losartan|valsartan|irbesartan|olmesartan"),  # ARBs
            _p(r"amlodipine|nifedipine|diltiazem|verapamil"),  # calcium channel blockers
            _p(r"hydrochlorothiazide|chlorthalidone|furosemide"),  # diuretics
            _p(r"metoprolol|atenolol|carvedilol|propranolol"),  # beta-blockers
        ),
        correlation_type="effectiveness",
        significance="high",
        message=_bp_message,
        detail=_bp_detail,
        reading=systolic,
    ),
    CorrelationRule(
        id="weight-gain-med",
        vital_types=("body-weight", "bmi"),
        med_patterns=(
            _p(r"prednisone|prednisolone|dexamethasone|methylprednisolone"),
            _p(r"sertraline|paroxetine|mirtazapine|amitriptyline|olanzapine|quetiapine|risperidone"),
            _p(r"insulin|glipizide|glyburide|pioglitazone"),
            _p(r"gabapentin|pregabalin"),
            _p(r"propranolol|metoprolol|atenolol"),
        ),
        correlation_type="side-effect",
        significance="medium",
        message=_weight_message,
        detail=lambda t, m, p: (
            f"Weight data from {t.latest.source.system_name}, {m.name} from {m.source.system_name}. "
            f"Weight changes are a known side effect of this medication class. {t.describe()}"
        ),
    ),
    CorrelationRule(
        id="hr-beta-blocker",
        vital_types=("heart-rate",),
        med_patterns=(_p(r"metoprolol|atenolol|propranolol|carvedilol|bisoprolol|nadolol"),),
        correlation_type="expected-effect",
        significance="medium",
        message=_hr_beta_message,
        detail=lambda t, m, p: (
            f"HR from {t.latest.source.system_name}, {m.name} from {m.source.system_name}. "
            f"Beta-blockers typically reduce resting heart rate by 10-20%. {t.describe()}"
        ),
    ),
    CorrelationRule(
        id="hr-stimulant",
        vital_types=("heart-rate",),
        med_patterns=(
            _p(r"methylphenidate|ritalin|adderall|amphetamine|dextroamphetamine|lisdexamfetamine|vyvanse"),
            _p(r"pseudoephedrine|phenylephrine"),
            _p(r"albuterol|levalbuterol"),
        ),
        correlation_type="side-effect",
        significance="medium",
        message=_hr_stimulant_message,
        detail=lambda t, m, p: (
            f"HR from {t.latest.source.system_name}, {m.name} from {m.source.system_name}. "
            f"Stimulant medications may increase heart rate. {t.describe()}"
        ),
    ),
]

_SIGNIFICANCE_ORDER = {"high": 0, "medium": 1, "low": 2}


def _series_by_type(vitals: list[MergedVital]) -> dict[str, list[MergedVital]]:
    series: dict[str, list[MergedVital]] = {}
    for vital in vitals:
        if parse_date(vital.effective_date) is None:
            continue
        series.setdefault(vital.vital_type, []).append(vital)
    for readings in series.values():
        readings.sort(key=lambda v: sort_key_date(v.effective_date))
    return series


def vital_trend(
    readings: list[MergedVital],
    reading: Callable[[MergedVital], float | None],
    policy: RulePolicy = DEFAULT_POLICY,
) -> VitalTrend | None:
    """Trend of dated readings in time order, or None with fewer than two values."""
    valued = tuple(v for v in readings if reading(v) is not None)
    if len(valued) < 2:
        return None
    first_value, last_value = reading(valued[0]), reading(valued[-1])
    direction, _ = trend_direction(first_value, last_value, policy.vital_trend_threshold_percent)
    return VitalTrend(readings=valued, direction=direction, first_value=first_value, last_value=last_value)


def _near_trend(med: MergedMedication, trend: VitalTrend, policy: RulePolicy) -> bool:
    started = parse_date(med.date_written)
    if started is None:
        return False
    if started > parse_date(trend.latest.effective_date):
        return False
    if policy.correlation_window_days is None:
        return True
    earliest = parse_date(trend.first.effective_date) - timedelta(days=policy.correlation_window_days)
    return started >= earliest


def detect_vital_med_correlations(
    vitals: list[MergedVital],
    medications: list[MergedMedication],
    policy: RulePolicy = DEFAULT_POLICY,
) -> list[VitalCorrelation]:
    """Correlate each vital trend with active medications that started near it."""
    series = _series_by_type(vitals)
    active = [m for m in medications if is_active_medication(m, policy.active_medication_statuses)]

    found: list[dict] = []
    seen: set[tuple] = set()
    for rule in CORRELATION_RULES:
        for vital_type in rule.vital_types:
            trend = vital_trend(series.get(vital_type, []), rule.reading, policy)
            if trend is None:
                continue
            for med in active:
                name = normalize_name(med.name)
                if not any(p.search(name) for p in rule.med_patterns):
                    continue
                if not _near_trend(med, trend, policy):
                    continue
                key = (rule.id, vital_type, med.id or name)
                if key in seen:
                    continue
                seen.add(key)
                found.append({
                    "vital_name": trend.latest.name,
                    "medication_name": med.name,
                    "correlation_type": rule.correlation_type,
                    "trend": trend.direction,
                    "significance": rule.significance,
                    "message": rule.message(trend, med, policy),
                    "detail": rule.detail(trend, med, policy),
                })

    found.sort(key=lambda c: _SIGNIFICANCE_ORDER.get(c["significance"], 3))
    return [VitalCorrelation(id=f"vc-{n}", **fields) for n, fields in enumerate(found, start=1)]
