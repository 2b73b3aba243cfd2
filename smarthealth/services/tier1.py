import logging
from datetime import UTC, datetime

from smarthealth.models.insights import HealthInsight, Tier1Results
from smarthealth.models.merged import Conflict, MergedRecordView
from smarthealth.models.patient import PatientDemographics
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy
from smarthealth.rules.registry import RULE_EVALUATORS, RuleInput

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}


class AnalysisDefectError(Exception):
    """A rule evaluator raised. Rules are total over their input, so this is a bug."""

    def __init__(self, evaluator: str, cause: Exception) -> None:
        super().__init__(f"Rule evaluator {evaluator!r} failed: {cause}")
        self.evaluator = evaluator


def run_tier1_analysis(
    patient: PatientDemographics,
    view: MergedRecordView,
    policy: RulePolicy | None = None,
    as_of: datetime | None = None,
) -> Tier1Results:
    """Run every registered rule evaluator over one snapshot of the merged record."""
    analyzed_at = datetime.now(UTC)
    rule_input = RuleInput(
        patient=patient,
        view=view,
        policy=policy or DEFAULT_POLICY,
        as_of=as_of or analyzed_at,
    )

    findings: dict[str, list] = {}
    for evaluator in RULE_EVALUATORS:
        try:
            findings[evaluator.result_field] = evaluator.evaluate(rule_input)
        except Exception as exc:
            logger.exception("Tier 1 evaluator %s raised for patient %s", evaluator.name, patient.id)
            raise AnalysisDefectError(evaluator.name, exc) from exc

    logger.info(
        "Tier 1 analysis for patient %s: %s",
        patient.id,
        ", ".join(f"{field}={len(items)}" for field, items in findings.items()),
    )
    return Tier1Results(**findings, analyzed_at=analyzed_at.isoformat())


def build_tier1_insights(
    tier1: Tier1Results,
    conflicts: list[Conflict],
    policy: RulePolicy = DEFAULT_POLICY,
) -> list[HealthInsight]:
    """Turn rule findings into insight cards, most severe first."""
    insights: list[HealthInsight] = []
    n = 0

    for interaction in tier1.drug_interactions:
        n += 1
        cross_system = interaction.drug_a_sources != interaction.drug_b_sources
        body = interaction.description
        if cross_system:
            body += " These medications come from different providers, and neither may be aware of the other prescription."
        insights.append(HealthInsight(
            id=f"insight-ddi-{n}",
            title=f"Drug Interaction: {interaction.drug_a} + {interaction.drug_b}",
            body=body,
            severity=interaction.severity if interaction.severity in ("critical", "high") else "medium",
            category="drug-interaction",
            sources=[*interaction.drug_a_sources, *interaction.drug_b_sources],
        ))

    for conflict in conflicts:
        if conflict.type not in ("allergy-prescription", "allergy-gap"):
            continue
        n += 1
        insights.append(HealthInsight(
            id=f"insight-conflict-{n}",
            title="Allergy Safety Alert" if conflict.type == "allergy-prescription" else "Missing Allergy Records",
            body=conflict.description,
            severity="critical",
            category="allergy-conflict",
            sources=[conflict.source_a, conflict.source_b],
        ))

    for gap in tier1.care_gaps:
        if not gap.is_overdue:
            continue
        n += 1
        last = f"Last performed: {gap.last_performed[:10]}." if gap.last_performed else "No record found."
        insights.append(HealthInsight(
            id=f"insight-gap-{n}",
            title=f"Overdue: {gap.recommendation}",
            body=f"{gap.reason} {gap.guideline}. {last}",
            severity="high" if gap.priority == "high" else "medium",
            category="care-gap",
        ))

    for trend in tier1.lab_trends:
        change = trend.magnitude
        if trend.direction == "stable" or change <= policy.significant_trend_percent:
            continue
        n += 1
        arrow = "up" if trend.direction == "rising" else "down"
        insights.append(HealthInsight(
            id=f"insight-trend-{n}",
            title=f"{trend.lab_name}: {arrow} {trend.change_text()}",
            body=trend.message,
            severity="high" if change > policy.high_trend_percent else "medium",
            category="lab-trend",
        ))

    for correlation in tier1.vital_correlations:
        if correlation.significance != "high":
            continue
        n += 1
        insights.append(HealthInsight(
            id=f"insight-vc-{n}",
            title=f"{correlation.vital_name} + {correlation.medication_name}",
            body=correlation.message,
            severity="medium",
            category="vital-correlation",
        ))

    insights.sort(key=lambda i: SEVERITY_ORDER.get(i.severity, 5))
    return insights
