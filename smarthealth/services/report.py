"""Pre-visit report assembly.

A pure function of the merged view and whatever tier content has already
been produced. It never calls the model or touches the narrative cache;
missing or unavailable AI content simply leaves its section out.
"""

from datetime import UTC, datetime

from smarthealth.models.insights import Tier1Results
from smarthealth.models.merged import MergedRecordView, SourceCounts, SourceSummary
from smarthealth.models.narrative import GuardedAIOutput, Tier2Results, Tier3Content
from smarthealth.models.patient import PatientDemographics
from smarthealth.models.report import (
    LabSection,
    MedicationSection,
    NarrativeSection,
    PreVisitReport,
    SafetySection,
)
from smarthealth.rules.common import is_active_medication, normalize_name
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy

REPORT_DISCLAIMER = (
    "This report is for informational purposes only and does not constitute medical advice, diagnosis, "
    "or treatment. Always seek the advice of your physician or other qualified health provider. "
    "Data sourced from connected health systems may be incomplete or delayed."
)

_DOMAINS = ("medications", "lab_results", "vitals", "allergies", "conditions", "immunizations", "encounters")


def summarize_sources(view: MergedRecordView) -> list[SourceSummary]:
    """Count records per contributing health system, in first-seen order."""
    tags = {}
    counts: dict[str, dict[str, int]] = {}
    for domain in _DOMAINS:
        for record in getattr(view, domain):
            for source in record.all_sources or [record.source]:
                key = source.system_id or source.system_name
                if not key:
                    continue
                tags.setdefault(key, source)
                per_source = counts.setdefault(key, dict.fromkeys(_DOMAINS, 0))
                per_source[domain] += 1

    return [
        SourceSummary(source=tags[key], counts=SourceCounts(**per_source, total=sum(per_source.values())))
        for key, per_source in counts.items()
    ]


def _section(output: GuardedAIOutput | None) -> NarrativeSection | None:
    if output is None or not output.available:
        return None
    return NarrativeSection(text=output.rendered, disclaimer=output.disclaimer, generated_at=output.generated_at)


def _source_note(view: MergedRecordView) -> str:
    names: list[str] = []
    for med in view.medications:
        for source in med.all_sources or [med.source]:
            if source.system_name and source.system_name not in names:
                names.append(source.system_name)
    if len(names) > 1:
        return f"Medications combined from {' and '.join(names)}"
    if names:
        return f"Medications from {names[0]}"
    return "No medication sources available"


def assemble_pre_visit_report(
    patient: PatientDemographics,
    view: MergedRecordView,
    tier1: Tier1Results,
    tier2: Tier2Results | None = None,
    tier3: Tier3Content | None = None,
    policy: RulePolicy = DEFAULT_POLICY,
) -> PreVisitReport:
    active = [m for m in view.medications if is_active_medication(m, policy.active_medication_statuses)]
    other = [m for m in view.medications if not is_active_medication(m, policy.active_medication_statuses)]

    alerts = tier1.source_conflict_alerts
    critical = [a for a in alerts if a.severity == "critical"]
    high = [a for a in alerts if a.severity == "high"]
    medium = [a for a in alerts if a.severity not in ("critical", "high")]

    flagged_ids = {flag.lab_id for flag in tier1.lab_flags}
    abnormal = [
        lab for lab in view.lab_results
        if lab.id in flagged_ids or normalize_name(lab.interpretation) in ("abnormal", "high", "low", "critical-high", "critical-low")
    ]

    report = PreVisitReport(
        generated_at=datetime.now(UTC).isoformat(),
        patient=patient,
        medications=MedicationSection(
            active=active,
            other=other,
            interactions=tier1.drug_interactions,
            source_note=_source_note(view),
        ),
        safety=SafetySection(
            critical=critical,
            high=high,
            medium=medium,
            conflicts=view.conflicts,
            total_alerts=len(alerts),
        ),
        labs=LabSection(
            abnormal=abnormal,
            flags=tier1.lab_flags,
            all=view.lab_results,
            trend_summaries=[t.message for t in tier1.lab_trends if t.direction != "stable"],
        ),
        conditions=[c for c in view.conditions if normalize_name(c.clinical_status) == "active"],
        allergies=view.allergies,
        immunizations=view.immunizations,
        care_gaps=[g for g in tier1.care_gaps if g.is_overdue],
        vital_correlations=[v for v in tier1.vital_correlations if v.significance in ("high", "medium")],
        data_sources=summarize_sources(view),
        disclaimer=REPORT_DISCLAIMER,
    )

    updates: dict = {}
    if tier2 is not None:
        updates["health_snapshot"] = tier2.health_snapshot
        updates["lab_trend_narrative"] = _section(tier2.lab_trend_narrative)
        updates["medication_summary"] = _section(tier2.medication_summary)

    if tier3 is not None:
        if tier3.narrative is not None:
            updates["ai_narrative"] = _section(tier3.narrative.narrative)
            if tier3.narrative.questions.available:
                updates["ai_questions"] = tier3.narrative.questions.items
        updates["explanations"] = [e for e in tier3.explanations if e.output.available]
        updates["doctor_questions"] = [q for q in tier3.doctor_questions if q.output.available]

    if updates:
        report = report.model_copy(update=updates)
    if report.ai_narrative is not None:
        report = report.model_copy(update={"has_ai_narrative": True})
    return report
