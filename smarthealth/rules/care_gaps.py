"""Care gap detection.

Checks the record against preventive-care guidelines (USPSTF, CDC/ACIP, ADA,
AHA/ACC) keyed on age, sex and active conditions. A gap is reported when the
most recent matching immunization, encounter, lab or vital is missing or
older than the policy interval for that rule.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from smarthealth.models.insights import CareGap
from smarthealth.models.merged import (
    MergedCondition,
    MergedEncounter,
    MergedImmunization,
    MergedLabResult,
    MergedVital,
)
from smarthealth.models.patient import PatientDemographics
from smarthealth.rules.common import latest_date, months_since, normalize_name, parse_date
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy


@dataclass(frozen=True)
class CareGapInput:
    patient: PatientDemographics
    conditions: list[MergedCondition]
    immunizations: list[MergedImmunization]
    encounters: list[MergedEncounter]
    lab_results: list[MergedLabResult]
    vitals: list[MergedVital]
    as_of: datetime


@dataclass(frozen=True)
class CareGapRule:
    id: str
    recommendation: str
    guideline: str
    guideline_source: str
    priority: str
    applies: Callable[[CareGapInput], bool]
    last_performed: Callable[[CareGapInput], str | None]
    reason: Callable[[CareGapInput], str]


_DIABETES = re.compile(r"diabetes|diabetic|type 2 dm|type 1 dm|t2dm|t1dm", re.I)
_HYPERTENSION = re.compile(r"hypertension|high blood pressure|htn", re.I)
_ACTIVE_CONDITION = ("active", "recurrence", "relapse")


def patient_age(patient: PatientDemographics, as_of: datetime) -> int | None:
    if patient.age is not None:
        return patient.age
    born = parse_date(patient.birth_date)
    if born is None:
        return None
    years = as_of.year - born.year
    if (as_of.month, as_of.day) < (born.month, born.day):
        years -= 1
    return years


def _age_at_least(years: int) -> Callable[[CareGapInput], bool]:
    def check(data: CareGapInput) -> bool:
        age = patient_age(data.patient, data.as_of)
        return age is not None and age >= years
    return check


def _age_between(low: int, high: int) -> Callable[[CareGapInput], bool]:
    """Inclusive age range."""
    def check(data: CareGapInput) -> bool:
        age = patient_age(data.patient, data.as_of)
        return age is not None and low <= age <= high
    return check


def _active_condition(conditions: list[MergedCondition], pattern: re.Pattern) -> MergedCondition | None:
    for condition in conditions:
        if normalize_name(condition.clinical_status) in _ACTIVE_CONDITION and pattern.search(condition.name):
            return condition
    return None


def _latest_lab(labs: list[MergedLabResult], pattern: re.Pattern) -> str | None:
    return latest_date([lab.effective_date for lab in labs if pattern.search(lab.name)])


def _latest_immunization(immunizations: list[MergedImmunization], pattern: re.Pattern) -> str | None:
    return latest_date([
        imm.occurrence_date
        for imm in immunizations
        if normalize_name(imm.status) == "completed" and pattern.search(imm.vaccine_name)
    ])


def _latest_encounter(encounters: list[MergedEncounter], pattern: re.Pattern) -> str | None:
    return latest_date([
        enc.period_start
        for enc in encounters
        if pattern.search(enc.type or "") or pattern.search(enc.reason or "")
    ])


def _latest_bp(vitals: list[MergedVital]) -> str | None:
    return latest_date([v.effective_date for v in vitals if v.vital_type == "blood-pressure"])


def _colorectal_last(data: CareGapInput) -> str | None:
    return latest_date([
        _latest_encounter(data.encounters, re.compile(r"colonoscopy|colorectal", re.I)),
        _latest_lab(data.lab_results, re.compile(r"\bfit\b|fobt|cologuard|colonoscopy", re.I)),
    ])


def _diabetes_reason(data: CareGapInput) -> str:
    condition = _active_condition(data.conditions, _DIABETES)
    name = condition.name if condition else "diabetes"
    return f"Your record lists {name}. Regular A1c monitoring helps track blood sugar control."


CARE_GAP_RULES: list[CareGapRule] = [
    CareGapRule(
        id="colonoscopy-screening",
        recommendation="Colorectal Cancer Screening",
        guideline="Colonoscopy every 10 years from age 45 to 75",
        guideline_source="USPSTF 2021",
        priority="medium",
        applies=_age_between(45, 75),
        last_performed=_colorectal_last,
        reason=lambda _: "Colorectal cancer screening is recommended for adults aged 45-75.",
    ),
    CareGapRule(
        id="mammogram-screening",
        recommendation="Breast Cancer Screening (Mammogram)",
        guideline="Mammogram every 2 years from age 40 to 74",
        guideline_source="USPSTF 2024",
        priority="medium",
        applies=lambda d: _age_between(40, 74)(d) and normalize_name(d.patient.gender) == "female",
        last_performed=lambda d: _latest_encounter(d.encounters, re.compile(r"mammogram|mammography|breast", re.I)),
        reason=lambda _: "Biennial screening mammography is recommended for women aged 40-74.",
    ),
    CareGapRule(
        id="shingrix-vaccine",
        recommendation="Shingles Vaccine (Shingrix)",
        guideline="Two-dose Shingrix series for adults 50 and older",
        guideline_source="CDC/ACIP 2023",
        priority="low",
        applies=_age_at_least(50),
        last_performed=lambda d: _latest_immunization(d.immunizations, re.compile(r"shingrix|zoster|shingles", re.I)),
        reason=lambda _: "Shingles risk increases with age, and the Shingrix vaccine is highly effective at prevention.",
    ),
    CareGapRule(
        id="diabetic-a1c",
        recommendation="Hemoglobin A1c Monitoring",
        guideline="A1c every 3-6 months for patients with diabetes",
        guideline_source="ADA Standards of Care 2024",
        priority="high",
        applies=lambda d: _active_condition(d.conditions, _DIABETES) is not None,
        last_performed=lambda d: _latest_lab(d.lab_results, re.compile(r"a1c|hba1c|glycated", re.I)),
        reason=_diabetes_reason,
    ),
    CareGapRule(
        id="annual-bp-check",
        recommendation="Blood Pressure Check",
        guideline="Annual blood pressure screening for all adults",
        guideline_source="USPSTF 2021",
        priority="low",
        applies=_age_at_least(18),
        last_performed=lambda d: _latest_bp(d.vitals),
        reason=lambda _: "High blood pressure often has no symptoms but is a major risk factor for heart disease and stroke.",
    ),
    CareGapRule(
        id="lipid-panel",
        recommendation="Cholesterol Screening (Lipid Panel)",
        guideline="Lipid panel every 5 years for adults 35 and older",
        guideline_source="USPSTF 2023",
        priority="low",
        applies=_age_at_least(35),
        last_performed=lambda d: _latest_lab(d.lab_results, re.compile(r"cholesterol|lipid|ldl|hdl|triglyceride", re.I)),
        reason=lambda _: "Regular cholesterol screening helps assess cardiovascular disease risk.",
    ),
    CareGapRule(
        id="flu-vaccine",
        recommendation="Annual Influenza Vaccine",
        guideline="Annual flu vaccination for all adults",
        guideline_source="CDC/ACIP 2024",
        priority="low",
        applies=_age_at_least(18),
        last_performed=lambda d: _latest_immunization(d.immunizations, re.compile(r"influenza|\bflu\b", re.I)),
        reason=lambda _: "Annual flu vaccination reduces the risk of flu illness, hospitalization, and death.",
    ),
    CareGapRule(
        id="covid-booster",
        recommendation="COVID-19 Vaccine (Updated Booster)",
        guideline="Updated COVID-19 booster annually",
        guideline_source="CDC/ACIP 2024",
        priority="low",
        applies=_age_at_least(18),
        last_performed=lambda d: _latest_immunization(
            d.immunizations, re.compile(r"covid|sars-cov|moderna|pfizer|biontech", re.I)
        ),
        reason=lambda _: "Updated COVID-19 boosters provide protection against current variants.",
    ),
    CareGapRule(
        id="hypertension-bp-followup",
        recommendation="Blood Pressure Monitoring (Hypertension)",
        guideline="BP check every 3-6 months for patients with hypertension",
        guideline_source="AHA/ACC 2023",
        priority="high",
        applies=lambda d: _active_condition(d.conditions, _HYPERTENSION) is not None,
        last_performed=lambda d: _latest_bp(d.vitals),
        reason=lambda _: (
            "With hypertension, regular BP monitoring helps confirm your treatment plan is working."
        ),
    ),
]

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def _is_overdue(last_done: str | None, interval_months: int | None, as_of: datetime) -> bool:
    if last_done is None:
        return True
    if interval_months is None:
        return False
    elapsed = months_since(last_done, as_of)
    return elapsed is None or elapsed > interval_months


def detect_care_gaps(
    patient: PatientDemographics,
    conditions: list[MergedCondition],
    immunizations: list[MergedImmunization],
    encounters: list[MergedEncounter],
    lab_results: list[MergedLabResult],
    vitals: list[MergedVital],
    policy: RulePolicy = DEFAULT_POLICY,
    as_of: datetime | None = None,
) -> list[CareGap]:
    """Return overdue or missing preventive actions, highest priority first."""
    data = CareGapInput(
        patient=patient,
        conditions=conditions,
        immunizations=immunizations,
        encounters=encounters,
        lab_results=lab_results,
        vitals=vitals,
        as_of=as_of or datetime.now(UTC),
    )

    gaps: list[CareGap] = []
    for rule in CARE_GAP_RULES:
        if not rule.applies(data):
            continue
        last_done = rule.last_performed(data)
        if not _is_overdue(last_done, policy.interval_for(rule.id), data.as_of):
            continue
        gaps.append(CareGap(
            id=rule.id,
            recommendation=rule.recommendation,
            reason=rule.reason(data),
            last_performed=last_done,
            is_overdue=True,
            guideline=rule.guideline,
            # An overdue low-priority item is still worth raising
            priority="medium" if rule.priority == "low" else rule.priority,
            guideline_source=rule.guideline_source,
        ))

    gaps.sort(key=lambda g: _PRIORITY_ORDER.get(g.priority, 3))
    return gaps
