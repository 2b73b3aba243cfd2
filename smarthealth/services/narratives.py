"""Tier 2: cached narrative summaries.

Each narrative is keyed by a fingerprint of exactly the data it is written
from. A cache hit returns the stored, already-guarded output with no model
call; a miss makes one call (shared by concurrent callers), passes the text
through the guardrail filter and stores it. Failures are returned but never
stored.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime

from smarthealth.config import SNAPSHOT_MAX_INSIGHTS
from smarthealth.models.insights import (
    DrugInteraction,
    HealthInsight,
    LabAbnormalFlag,
    LabTrend,
    Tier1Results,
)
from smarthealth.models.merged import Conflict, MergedLabResult, MergedMedication, MergedRecordView
from smarthealth.models.narrative import CachedNarrative, GuardedAIOutput, Tier2Results
from smarthealth.models.patient import PatientDemographics
from smarthealth.models.source import SourceTag
from smarthealth.rules.common import is_active_medication
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy
from smarthealth.services.guardrails import LLM_SYSTEM_GUARDRAIL, GuardrailFilter
from smarthealth.services.llm import LLMClient, LLMError, LLMReply, strip_json
from smarthealth.services.narrative_cache import NarrativeCache, fingerprint
from smarthealth.services.tier1 import build_tier1_insights

logger = logging.getLogger(__name__)

INSIGHT_SEVERITIES = ("critical", "high", "medium", "low", "info")
INSIGHT_CATEGORIES = (
    "drug-interaction",
    "allergy-conflict",
    "care-gap",
    "lab-trend",
    "vital-correlation",
    "medication",
    "general",
)


def unique_sources(sources: list[SourceTag]) -> list[SourceTag]:
    seen: set[str] = set()
    result: list[SourceTag] = []
    for source in sources:
        key = source.system_id or source.system_name
        if key and key not in seen:
            seen.add(key)
            result.append(source)
    return result


def system_prompt(task: str, sources: list[SourceTag] | None = None) -> str:
    parts = [LLM_SYSTEM_GUARDRAIL]
    names = [s.system_name for s in unique_sources(sources or []) if s.system_name]
    if names:
        parts.append(f"Data sources: {', '.join(names)}")
    parts.append(task)
    return "\n\n".join(parts)


async def ask_model(
    llm: LLMClient,
    guardrails: GuardrailFilter,
    context: str,
    *,
    system: str,
    user: str,
    tier: int = 2,
    model_tier: str = "fast",
    max_tokens: int = 600,
    temperature: float = 0.3,
) -> LLMReply | GuardedAIOutput:
    """Make one model call. Failures come back as guarded failure outputs."""
    try:
        reply = await llm.complete(
            system=system,
            user=user,
            max_tokens=max_tokens,
            temperature=temperature,
            tier=model_tier,
        )
    except LLMError as exc:
        logger.error("Model call for %s failed: %s", context, exc)
        return guardrails.unavailable(context, tier=tier, reason=type(exc).__name__)
    if reply.declined:
        return guardrails.declined(context, tier=tier, model=reply.model)
    return reply


def _patient_line(patient: PatientDemographics) -> str:
    age = f"{patient.age}-year-old" if patient.age is not None else "adult"
    return f"{patient.first_name or 'the patient'} ({age} {patient.gender or 'patient'})"


def build_lab_trend_prompt(
    patient: PatientDemographics,
    labs: list[MergedLabResult],
    trends: list[LabTrend],
    flags: list[LabAbnormalFlag],
) -> str:
    lines = [f"Summarize the following lab results for {_patient_line(patient)}.", ""]

    moving = [t for t in trends if t.direction != "stable"]
    if moving:
        lines.append("LAB TRENDS:")
        for t in moving:
            lines.append(
                f"- {t.lab_name}: {t.direction} {t.change_text()} "
                f"({t.first_reading.value:g} -> {t.last_reading.value:g}) over {t.reading_count} readings "
                f"spanning {t.span_days} days"
            )
        lines.append("")

    if flags:
        lines.append("ABNORMAL VALUES:")
        for f in flags:
            low = "?" if f.reference_range.low is None else f"{f.reference_range.low:g}"
            high = "?" if f.reference_range.high is None else f"{f.reference_range.high:g}"
            lines.append(f"- {f.lab_name}: {f.value:g} {f.unit} ({f.status}, normal range: {low}-{high} {f.unit})")
        lines.append("")

    systems = sorted({lab.source.system_name for lab in labs if lab.source.system_name})
    if systems:
        lines.append(f"Data sources: {', '.join(systems)}")
        lines.append("")

    lines.extend([
        "Write a 2-4 paragraph narrative summary of these lab trends and results. Focus on:",
        "1. The most clinically significant trends (rising/falling values)",
        "2. Any values that are outside normal ranges",
        "3. What these results might mean in plain language",
        "4. End with a gentle recommendation to discuss with their provider",
        "",
        "Use the patient's first name. Be empathetic, clear, and concise.",
    ])
    return "\n".join(lines)


def build_snapshot_prompt(
    patient: PatientDemographics,
    insights: list[HealthInsight],
    flags: list[LabAbnormalFlag],
) -> str:
    lines = [
        f"Patient: {_patient_line(patient)}",
        "",
        "I have identified the following health insights from cross-system data analysis. "
        "Review them and produce a concise health snapshot with the TOP 3-5 most important items.",
        "",
        "IDENTIFIED INSIGHTS:",
    ]
    for insight in insights[:15]:
        lines.append(f"- [{insight.severity.upper()}] {insight.title}: {insight.body}")

    if flags:
        lines.extend(["", "ABNORMAL LAB VALUES:"])
        for flag in flags[:10]:
            lines.append(f"- {flag.lab_name}: {flag.value:g} {flag.unit} ({flag.status})")

    lines.extend([
        "",
        "Respond with a JSON array where each element has this shape:",
        '{"title": "Short title (5-8 words)", "body": "2-3 sentence plain-language explanation", '
        '"severity": "critical|high|medium|low|info", '
        '"category": "drug-interaction|allergy-conflict|care-gap|lab-trend|vital-correlation|medication|general"}',
        "",
        "Prioritize safety-critical items first. Use empathetic, patient-friendly language.",
    ])
    return "\n".join(lines)


def build_medication_prompt(
    patient: PatientDemographics,
    active: list[MergedMedication],
    interactions: list[DrugInteraction],
) -> str:
    confirmed = [m for m in active if m.merge_status == "confirmed"]
    single = [m for m in active if m.merge_status == "single-source"]
    conflicting = [m for m in active if m.merge_status == "conflict"]

    by_source: dict[str, list[MergedMedication]] = {}
    for med in active:
        for source in med.all_sources or [med.source]:
            by_source.setdefault(source.system_name or "Unknown source", []).append(med)

    lines = [
        f"Summarize the medication picture for {_patient_line(patient)}.",
        "",
        "MEDICATION OVERVIEW:",
        f"- Total active medications: {len(active)}",
        f"- Confirmed across systems: {len(confirmed)}",
        f"- Only in one system: {len(single)}",
        f"- Conflicting records: {len(conflicting)}",
        "",
        "MEDICATIONS BY SOURCE:",
    ]
    for source_name, meds in by_source.items():
        lines.append(f"{source_name}:")
        for med in meds:
            dose = f" ({med.dosage_instruction})" if med.dosage_instruction else ""
            lines.append(f"  - {med.name}{dose} [{med.status}]")

    if single:
        lines.extend(["", "MEDICATIONS ONLY IN ONE SYSTEM (potential gaps):"])
        lines.extend(f"  - {m.name}: only in {m.source.system_name}" for m in single)

    if conflicting:
        lines.extend(["", "MEDICATIONS WITH CONFLICTS:"])
        lines.extend(f"  - {m.name}: {' vs '.join(s.system_name for s in m.all_sources)}" for m in conflicting)

    if interactions:
        lines.extend(["", "DRUG INTERACTIONS DETECTED:"])
        lines.extend(f"  - [{i.severity.upper()}] {i.drug_a} + {i.drug_b}: {i.effect}" for i in interactions)

    lines.extend([
        "",
        "Write a 2-3 paragraph summary that:",
        "1. Describes the overall medication picture in plain language",
        "2. Highlights any safety concerns (interactions, single-source gaps)",
        "3. Notes medications that providers may not know about (cross-system gaps)",
        "4. Ends with a recommendation to bring this summary to their next appointment",
        "",
        "Use the patient's first name. Be empathetic, clear, and concise.",
    ])
    return "\n".join(lines)


def parse_snapshot_items(text: str, sources: list[SourceTag]) -> list[HealthInsight] | None:
    try:
        data = json.loads(strip_json(text))
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, list):
        return None

    insights: list[HealthInsight] = []
    for item in data:
        if not isinstance(item, dict) or not item.get("title") or not item.get("body"):
            continue
        severity = item.get("severity")
        category = item.get("category")
        insights.append(HealthInsight(
            id=f"insight-llm-{len(insights) + 1}",
            title=str(item["title"]),
            body=str(item["body"]),
            severity=severity if severity in INSIGHT_SEVERITIES else "medium",
            category=category if category in INSIGHT_CATEGORIES else "general",
            sources=sources,
            tier=2,
        ))
        if len(insights) == 5:
            break
    return insights or None


class NarrativeGenerator:
    def __init__(
        self,
        llm: LLMClient,
        cache: NarrativeCache,
        guardrails: GuardrailFilter,
        policy: RulePolicy = DEFAULT_POLICY,
        snapshot_max_insights: int = SNAPSHOT_MAX_INSIGHTS,
    ) -> None:
        self.llm = llm
        self.cache = cache
        self.guardrails = guardrails
        self.policy = policy
        self.snapshot_max_insights = snapshot_max_insights

    def _entry(self, kind: str, key: str, output: GuardedAIOutput, sources: list[SourceTag],
               insights: list[HealthInsight] | None = None, model: str = "") -> CachedNarrative:
        return CachedNarrative(
            kind=kind,
            fingerprint=key,
            output=output,
            insights=insights or [],
            model=model,
            sources=sources,
            created_at=datetime.now(UTC).isoformat(),
        )

    async def lab_trend_narrative(
        self,
        patient: PatientDemographics,
        labs: list[MergedLabResult],
        trends: list[LabTrend],
        flags: list[LabAbnormalFlag],
    ) -> GuardedAIOutput | None:
        if not trends and not flags:
            return None

        kind = "lab-trend-narrative"
        key = fingerprint(kind, {"patient": patient, "labs": labs, "trends": trends, "flags": flags})
        sources = unique_sources([lab.source for lab in labs])

        async def generate() -> CachedNarrative:
            result = await ask_model(
                self.llm,
                self.guardrails,
                kind,
                system=system_prompt(
                    "You are summarizing lab test results and trends. Be specific about values and ranges.",
                    sources,
                ),
                user=build_lab_trend_prompt(patient, labs, trends, flags),
            )
            if isinstance(result, GuardedAIOutput):
                return self._entry(kind, key, result, sources)
            output = self.guardrails.apply(result.text, kind, sources=sources, model=result.model)
            return self._entry(kind, key, output, sources, model=result.model)

        entry = await self.cache.get_or_create(key, generate)
        return entry.output

    async def health_snapshot(
        self,
        patient: PatientDemographics,
        tier1: Tier1Results,
        conflicts: list[Conflict],
    ) -> tuple[list[HealthInsight], GuardedAIOutput | None]:
        """Prioritized dashboard insights.

        Returns the insight cards plus the guarded model output they came
        from, or ``None`` for the output when no model call was needed.
        """
        tier1_insights = build_tier1_insights(tier1, conflicts, self.policy)
        if len(tier1_insights) <= self.snapshot_max_insights:
            return tier1_insights, None

        kind = "health-snapshot"
        flags = list(tier1.lab_flags)
        key = fingerprint(kind, {"patient": patient, "insights": tier1_insights, "flags": flags})
        sources = unique_sources([s for insight in tier1_insights for s in insight.sources])
        top = tier1_insights[:self.snapshot_max_insights]

        async def generate() -> CachedNarrative:
            result = await ask_model(
                self.llm,
                self.guardrails,
                kind,
                system=system_prompt(
                    "You are creating a prioritized health dashboard snapshot. "
                    "Return ONLY a JSON array. No markdown formatting, no code fences."
                ),
                user=build_snapshot_prompt(patient, tier1_insights, flags),
                max_tokens=800,
                temperature=0.2,
            )
            if isinstance(result, GuardedAIOutput):
                return self._entry(kind, key, result, sources, insights=top)

            items = parse_snapshot_items(result.text, sources)
            if items is None:
                output = self.guardrails.fallback(kind, "unparseable-output", sources=sources, model=result.model)
                return self._entry(kind, key, output, sources, insights=top, model=result.model)

            output = self.guardrails.apply_items(
                [f"{item.title}: {item.body}" for item in items],
                kind,
                tier=2,
                sources=sources,
                model=result.model,
            )
            chosen = items if output.status == "ok" else top
            return self._entry(kind, key, output, sources, insights=chosen, model=result.model)

        entry = await self.cache.get_or_create(key, generate)
        if not entry.output.available:
            return top, entry.output
        return list(entry.insights), entry.output

    async def medication_summary(
        self,
        patient: PatientDemographics,
        medications: list[MergedMedication],
        interactions: list[DrugInteraction],
    ) -> GuardedAIOutput | None:
        if not medications:
            return None

        kind = "medication-summary"
        key = fingerprint(kind, {"patient": patient, "medications": medications, "interactions": interactions})
        sources = unique_sources([s for med in medications for s in (med.all_sources or [med.source])])
        active = [m for m in medications if is_active_medication(m, self.policy.active_medication_statuses)]

        async def generate() -> CachedNarrative:
            result = await ask_model(
                self.llm,
                self.guardrails,
                kind,
                system=system_prompt(
                    "You are summarizing a patient's medication list from multiple health systems. "
                    "Focus on cross-system safety insights.",
                    sources,
                ),
                user=build_medication_prompt(patient, active, interactions),
            )
            if isinstance(result, GuardedAIOutput):
                return self._entry(kind, key, result, sources)
            output = self.guardrails.apply(result.text, kind, sources=sources, model=result.model)
            return self._entry(kind, key, output, sources, model=result.model)

        entry = await self.cache.get_or_create(key, generate)
        return entry.output

    async def generate_all(
        self,
        patient: PatientDemographics,
        view: MergedRecordView,
        tier1: Tier1Results,
    ) -> Tier2Results:
        """Run the three Tier 2 narratives concurrently."""
        lab_narrative, (snapshot, snapshot_output), med_summary = await asyncio.gather(
            self.lab_trend_narrative(patient, view.lab_results, tier1.lab_trends, tier1.lab_flags),
            self.health_snapshot(patient, tier1, view.conflicts),
            self.medication_summary(patient, view.medications, tier1.drug_interactions),
        )

        outputs = [o for o in (lab_narrative, snapshot_output, med_summary) if o is not None]
        error = None
        if any(o.status == "unavailable" for o in outputs):
            error = "Some AI summaries are unavailable right now. Rule-based findings are still shown."

        return Tier2Results(
            lab_trend_narrative=lab_narrative,
            health_snapshot=snapshot,
            snapshot_output=snapshot_output,
            medication_summary=med_summary,
            error=error,
        )
