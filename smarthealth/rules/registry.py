"""The single list of Tier 1 rule evaluators.

Each entry adapts one rule module to a common ``(RuleInput) -> list`` call
and names the ``Tier1Results`` field its findings land in. Adding a rule
means adding one entry here.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from smarthealth.models.merged import MergedRecordView
from smarthealth.models.patient import PatientDemographics
from smarthealth.rules.care_gaps import detect_care_gaps
from smarthealth.rules.drug_interactions import detect_drug_interactions
from smarthealth.rules.lab_flags import analyze_lab_abnormal_flags
from smarthealth.rules.lab_trends import analyze_lab_trends
from smarthealth.rules.policy import RulePolicy
from smarthealth.rules.source_conflicts import generate_source_conflict_alerts
from smarthealth.rules.vital_correlations import detect_vital_med_correlations


@dataclass(frozen=True)
class RuleInput:
    patient: PatientDemographics
    view: MergedRecordView
    policy: RulePolicy
    as_of: datetime


@dataclass(frozen=True)
class RuleEvaluator:
    name: str
    result_field: str
    evaluate: Callable[[RuleInput], list]


RULE_EVALUATORS: list[RuleEvaluator] = [
    RuleEvaluator(
        name="lab_abnormal_flags",
        result_field="lab_flags",
        evaluate=lambda r: analyze_lab_abnormal_flags(r.view.lab_results, r.policy),
    ),
    RuleEvaluator(
        name="lab_trends",
        result_field="lab_trends",
        evaluate=lambda r: analyze_lab_trends(r.view.lab_results, r.policy),
    ),
    RuleEvaluator(
        name="care_gaps",
        result_field="care_gaps",
        evaluate=lambda r: detect_care_gaps(
            r.patient,
            r.view.conditions,
            r.view.immunizations,
            r.view.encounters,
            r.view.lab_results,
            r.view.vitals,
            r.policy,
            r.as_of,
        ),
    ),
    RuleEvaluator(
        name="drug_interactions",
        result_field="drug_interactions",
        evaluate=lambda r: detect_drug_interactions(r.view.medications, r.policy),
    ),
    RuleEvaluator(
        name="source_conflicts",
        result_field="source_conflict_alerts",
        evaluate=lambda r: generate_source_conflict_alerts(r.view.conflicts),
    ),
    RuleEvaluator(
        name="vital_correlations",
        result_field="vital_correlations",
        evaluate=lambda r: detect_vital_med_correlations(r.view.vitals, r.view.medications, r.policy),
    ),
]
