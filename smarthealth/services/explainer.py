"""Tier 3: on-demand explanations and doctor questions.

Generated only when a user asks. Nothing is memoized across requests, but
concurrent identical requests share one model call.
"""

import asyncio
import json
import logging
import re

from pydantic import BaseModel

from smarthealth.models.insights import HealthInsight, Tier1Results
from smarthealth.models.merged import (
    MergedCondition,
    MergedLabResult,
    MergedMedication,
    MergedRecordView,
)
from smarthealth.models.narrative import (
    DoctorQuestions,
    GuardedAIOutput,
    HealthExplanation,
    PreVisitNarrative,
    QuestionContext,
)
from smarthealth.models.patient import PatientDemographics
from smarthealth.rules.common import to_number
from smarthealth.services.guardrails import GuardrailFilter
from smarthealth.services.llm import LLMClient, strip_json
from smarthealth.services.narrative_cache import fingerprint
from smarthealth.services.narratives import ask_model, system_prompt, unique_sources
from smarthealth.services.single_flight import SingleFlight

logger = logging.getLogger(__name__)

MAX_QUESTIONS = 5

DEFAULT_VISIT_QUESTIONS = [
    "Are all my current doctors aware of every medication I'm taking?",
    "Are there any lab trends I should be concerned about?",
    "Is my current medication plan still the best approach?",
    "Are there any preventive screenings I should schedule?",
]


def _num(value: float | None) -> str:
    return "?" if value is None else f"{value:g}"


def _value(lab: MergedLabResult) -> str:
    number = to_number(lab.value)
    if number is not None:
        return f"{number:g}"
    return str(lab.value) if lab.value is not None else "unknown"


def lab_question_context(lab: MergedLabResult, related: list[HealthInsight] | None = None) -> QuestionContext:
    unit = lab.unit or ""
    detail = f"Lab: {lab.name}, Value: {_value(lab)} {unit}".rstrip()
    if lab.reference_range:
        detail += f", Normal range: {_num(lab.reference_range.low)}-{_num(lab.reference_range.high)} {unit}".rstrip()
    if lab.interpretation:
        detail += f", Interpretation: {lab.interpretation}"
    detail += f", Source: {lab.source.system_name}"
    return QuestionContext(subject=lab.name, detail=detail, related_insights=related or [])


def condition_question_context(
    condition: MergedCondition, related: list[HealthInsight] | None = None
) -> QuestionContext:
    detail = f"Condition: {condition.name}, Status: {condition.clinical_status or 'unknown'}"
    if condition.severity:
        detail += f", Severity: {condition.severity}"
    if condition.onset_date:
        detail += f", Since: {condition.onset_date}"
    detail += f", Source: {condition.source.system_name}"
    return QuestionContext(subject=condition.name, detail=detail, related_insights=related or [])


def medication_question_context(
    med: MergedMedication, related: list[HealthInsight] | None = None
) -> QuestionContext:
    detail = f"Medication: {med.name}, Status: {med.status}"
    if med.dosage_instruction:
        detail += f", Dosage: {med.dosage_instruction}"
    detail += f", Source: {med.source.system_name}"
    if len(med.all_sources) > 1:
        detail += f" (also in: {', '.join(s.system_name for s in med.all_sources)})"
    return QuestionContext(subject=med.name, detail=detail, related_insights=related or [])


def insight_question_context(
    insight: HealthInsight, related: list[HealthInsight] | None = None
) -> QuestionContext:
    return QuestionContext(
        subject=insight.title,
        detail=insight.body,
        related_insights=[insight, *(related or [])],
    )


def resource_type(resource: BaseModel) -> str:
    if isinstance(resource, MergedLabResult):
        return "lab"
    if isinstance(resource, MergedCondition):
        return "condition"
    if isinstance(resource, MergedMedication):
        return "medication"
    return "unknown"


def _subject(resource: BaseModel) -> str:
    return getattr(resource, "name", "") or getattr(resource, "substance", "") or "Health item"


def build_explain_prompt(resource: BaseModel) -> str:
    kind = resource_type(resource)
    if kind == "lab":
        lab: MergedLabResult = resource
        unit = lab.unit or ""
        lines = [
            "Explain this lab result in plain language:",
            "",
            f"Test: {lab.name}",
            f"Value: {_value(lab)} {unit}".rstrip(),
        ]
        if lab.reference_range:
            lines.append(f"Normal range: {_num(lab.reference_range.low)} - {_num(lab.reference_range.high)} {unit}".rstrip())
        if lab.interpretation:
            lines.append(f"Interpretation: {lab.interpretation}")
        lines.extend([
            "",
            "Explain:",
            "1. What this test measures and why it matters",
            "2. Whether this result appears normal or abnormal",
            "3. What common conditions are associated with abnormal values",
            "4. One general healthy habit related to it",
            "",
            "Keep it to 3-4 sentences. Use simple, everyday language.",
        ])
        return "\n".join(lines)

    if kind == "condition":
        condition: MergedCondition = resource
        lines = [
            "Explain this health condition in plain language:",
            "",
            f"Condition: {condition.name}",
            f"Status: {condition.clinical_status or 'unknown'}",
        ]
        if condition.severity:
            lines.append(f"Severity: {condition.severity}")
        if condition.onset_date:
            lines.append(f"First noted: {condition.onset_date[:10]}")
        lines.extend([
            "",
            "Explain:",
            "1. What this condition is in simple terms",
            "2. How it might affect daily life",
            "3. What management options typically exist",
            "4. One encouraging fact or next step",
            "",
            "Keep it to 3-4 sentences. Be empathetic and reassuring where appropriate.",
        ])
        return "\n".join(lines)

    if kind == "medication":
        med: MergedMedication = resource
        lines = [
            "Explain this medication in plain language:",
            "",
            f"Medication: {med.name}",
            f"Status: {med.status}",
        ]
        if med.dosage_instruction:
            lines.append(f"Dosage: {med.dosage_instruction}")
        lines.extend([
            "",
            "Explain:",
            "1. What this medication is typically used for",
            "2. How it works in simple terms",
            "3. Common side effects to be aware of",
            "4. Important things to know (timing, food interactions, etc.)",
            "",
            "Keep it to 3-4 sentences. Use everyday language.",
        ])
        return "\n".join(lines)

    return f'Explain "{_subject(resource)}" in plain language in 3-4 sentences.'


def build_questions_prompt(context: QuestionContext) -> str:
    lines = [f"A patient wants to ask their doctor about: {context.subject}", "", f"Context: {context.detail}", ""]
    if context.related_insights:
        lines.append("Related health insights:")
        for insight in context.related_insights[:5]:
            lines.append(f"- [{insight.severity}] {insight.title}: {insight.body}")
        lines.append("")
    lines.extend([
        "Generate exactly 4 specific, personalized questions this patient should ask their doctor about this topic.",
        "",
        "Requirements:",
        "1. Questions should be specific to THIS patient's data, not generic",
        "2. Include at least one question about how different records or systems might affect their care",
        "3. Questions should empower the patient to have an informed conversation",
        "4. Use plain language. The patient will read these aloud to their doctor",
        "5. Include practical questions (timing, side effects, alternatives, monitoring)",
        "",
        "Return ONLY a JSON array of 4 question strings. No markdown, no code fences, no numbering.",
    ])
    return "\n".join(lines)


def parse_questions(text: str) -> list[str]:
    """Read a JSON array of strings, falling back to question-like lines."""
    try:
        data = json.loads(strip_json(text))
        if isinstance(data, list):
            questions = [q.strip() for q in data if isinstance(q, str) and q.strip()]
            if questions:
                return questions[:MAX_QUESTIONS]
    except (json.JSONDecodeError, ValueError):
        logger.debug("Questions response is not JSON, falling back to line parsing")

    questions = []
    for line in text.splitlines():
        line = line.strip()
        if len(line) <= 10:
            continue
        line = re.sub(r"^\d+[.)]\s*", "", line)
        line = re.sub(r"^[-*•]\s*", "", line)
        line = line.strip("\"'").strip()
        if line.endswith("?"):
            questions.append(line)
    return questions[:MAX_QUESTIONS]


def build_pre_visit_prompt(patient: PatientDemographics, view: MergedRecordView, tier1: Tier1Results) -> str:
    active_meds = [m for m in view.medications if m.status.lower() == "active"]
    active_conditions = [c for c in view.conditions if (c.clinical_status or "").lower() == "active"]
    abnormal_labs = [l for l in view.lab_results if l.interpretation in ("abnormal", "high", "low")]
    serious_conflicts = [c for c in view.conflicts if c.severity == "critical"] + [
        c for c in view.conflicts if c.severity == "high"
    ]
    systems = sorted({
        s.system_name
        for s in [*(s for m in view.medications for s in m.all_sources), *(l.source for l in view.lab_results)]
        if s.system_name
    })

    age = f"{patient.age}-year-old" if patient.age is not None else "adult"
    lines = [
        f"Generate a pre-visit health summary for {patient.first_name} {patient.last_name}, "
        f"a {age} {patient.gender or 'patient'}.",
        f"Data aggregated from: {', '.join(systems) or 'connected health systems'}.",
        "",
    ]

    if active_meds:
        lines.append(f"ACTIVE MEDICATIONS ({len(active_meds)}):")
        for med in active_meds[:15]:
            dose = f" ({med.dosage_instruction})" if med.dosage_instruction else ""
            origin = ", ".join(s.system_name for s in med.all_sources)
            note = ""
            if med.merge_status == "conflict":
                note = " CONFLICT between sources"
            elif med.merge_status == "single-source":
                note = " (only at one provider)"
            lines.append(f"- {med.name}{dose} [{origin}]{note}")
        lines.append("")

    if tier1.drug_interactions:
        lines.append("DRUG INTERACTIONS DETECTED:")
        lines.extend(f"- [{d.severity.upper()}] {d.drug_a} + {d.drug_b}: {d.effect}" for d in tier1.drug_interactions)
        lines.append("")

    if active_conditions:
        lines.append("ACTIVE CONDITIONS:")
        lines.extend(f"- {c.name} (since {c.onset_date or 'unknown'})" for c in active_conditions[:10])
        lines.append("")

    if abnormal_labs:
        lines.append("ABNORMAL LAB RESULTS:")
        for lab in abnormal_labs[:10]:
            line = f"- {lab.name}: {_value(lab)} {lab.unit or ''} ({lab.interpretation})"
            if lab.reference_range:
                line += f" [range: {_num(lab.reference_range.low)}-{_num(lab.reference_range.high)} {lab.unit or ''}]"
            lines.append(line)
        lines.append("")

    moving = [t for t in tier1.lab_trends if t.direction != "stable"]
    if moving:
        lines.append("LAB TRENDS:")
        lines.extend(
            f"- {t.lab_name}: {t.direction} {t.change_text()} over {t.span_days} days" for t in moving[:8]
        )
        lines.append("")

    if serious_conflicts:
        lines.append("CROSS-SYSTEM CONFLICTS:")
        lines.extend(
            f"- [{c.severity.upper()}] {c.description} ({c.source_a.system_name} vs {c.source_b.system_name})"
            for c in serious_conflicts[:8]
        )
        lines.append("")

    if view.allergies:
        lines.append("ALLERGIES:")
        for allergy in view.allergies[:8]:
            reactions = ", ".join(m for r in allergy.reactions for m in r.manifestations)
            reaction = f" (reaction: {reactions})" if reactions else ""
            severity = f" [{allergy.criticality}]" if allergy.criticality else ""
            lines.append(f"- {allergy.substance}{reaction}{severity}")
        lines.append("")

    overdue = [g for g in tier1.care_gaps if g.is_overdue]
    if overdue:
        lines.append("OVERDUE PREVENTIVE CARE:")
        lines.extend(f"- {g.recommendation}: {g.reason}" for g in overdue[:5])
        lines.append("")

    if view.immunizations:
        lines.extend([f"VACCINATION RECORD: {len(view.immunizations)} on file", ""])

    correlations = [v for v in tier1.vital_correlations if v.significance == "high"]
    if correlations:
        lines.append("VITAL-MEDICATION CORRELATIONS:")
        lines.extend(f"- {v.message}" for v in correlations[:5])
        lines.append("")

    lines.extend([
        "---",
        "",
        "Respond with JSON of this exact structure:",
        '{"narrative": "A 2-3 paragraph health summary...", "questions": ["Question 1?", "Question 2?"]}',
        "",
        "NARRATIVE requirements:",
        "1. Write 2-3 paragraphs that summarize the patient's current health picture",
        "2. Lead with the most important safety items (drug interactions, conflicts)",
        "3. Cover the medication picture, lab trends and any care gaps",
        "4. Note which information comes from which health system",
        "5. End with encouragement and a note about discussing with the provider",
        f"6. Use {patient.first_name or 'the patient'}'s name naturally.",
        "",
        "QUESTIONS requirements:",
        "1. Generate 4-5 specific questions based on THIS patient's data",
        "2. At least one question about cross-system medication awareness",
        "3. At least one question about any abnormal lab results or trends",
        "4. If there are conflicts, include a question about reconciling records",
        "",
        "Return ONLY valid JSON. No markdown, no code fences, no extra text.",
    ])
    return "\n".join(lines)


class OnDemandExplainer:
    def __init__(self, llm: LLMClient, guardrails: GuardrailFilter) -> None:
        self.llm = llm
        self.guardrails = guardrails
        self._flight = SingleFlight()

    async def explain(self, resource: BaseModel, patient: PatientDemographics | None = None) -> HealthExplanation:
        """Plain-language explanation of one lab, condition or medication."""
        kind = resource_type(resource)
        subject = _subject(resource)
        key = fingerprint("explanation", {"type": kind, "resource": resource, "patient": patient})
        sources = [resource.source] if hasattr(resource, "source") else []

        async def generate() -> HealthExplanation:
            result = await ask_model(
                self.llm,
                self.guardrails,
                "explanation",
                system=system_prompt(
                    "You are explaining a single health concept to a patient. "
                    "Be concise, exactly 3-4 sentences. No bullet points or lists."
                ),
                user=build_explain_prompt(resource),
                tier=3,
                max_tokens=300,
            )
            if isinstance(result, GuardedAIOutput):
                output = result
            else:
                output = self.guardrails.apply(result.text, "explanation", tier=3, sources=sources, model=result.model)
            return HealthExplanation(
                subject=subject,
                resource_type=kind,
                resource_id=getattr(resource, "id", "") or "",
                output=output,
                input_hash=key,
            )

        return await self._flight.do(key, generate)

    async def _questions_for(self, context: QuestionContext) -> DoctorQuestions:
        key = fingerprint("doctor-questions", context)
        sources = unique_sources([s for insight in context.related_insights for s in insight.sources])

        async def generate() -> DoctorQuestions:
            result = await ask_model(
                self.llm,
                self.guardrails,
                "doctor-questions",
                system=system_prompt(
                    "You are helping a patient prepare questions for their doctor visit. Generate specific, "
                    "personalized questions based on their health data. Return ONLY a JSON array of strings."
                ),
                user=build_questions_prompt(context),
                tier=3,
                max_tokens=400,
                temperature=0.4,
            )
            if isinstance(result, GuardedAIOutput):
                output = result
            else:
                output = self.guardrails.apply_items(
                    parse_questions(result.text),
                    "doctor-questions",
                    sources=sources,
                    model=result.model,
                )
            return DoctorQuestions(subject=context.subject, questions=output.items, output=output, input_hash=key)

        return await self._flight.do(key, generate)

    async def doctor_questions(self, contexts: list[QuestionContext]) -> list[DoctorQuestions]:
        """One result per context, in the same order. Contexts are generated independently."""
        return list(await asyncio.gather(*(self._questions_for(c) for c in contexts)))

    async def pre_visit_narrative(
        self,
        patient: PatientDemographics,
        view: MergedRecordView,
        tier1: Tier1Results,
    ) -> PreVisitNarrative:
        """Narrative plus visit questions for the printed report, from the premium model tier."""
        key = fingerprint("pre-visit", {"patient": patient, "view": view, "findings": tier1.findings()})
        sources = unique_sources(
            [s for m in view.medications for s in m.all_sources] + [lab.source for lab in view.lab_results]
        )

        async def generate() -> PreVisitNarrative:
            result = await ask_model(
                self.llm,
                self.guardrails,
                "pre-visit-report",
                system=system_prompt(
                    "You are generating a comprehensive pre-visit health summary. This report will be printed "
                    "and taken to a doctor's appointment. Be thorough, specific, and empathetic. Prioritize "
                    'safety-critical items. Return ONLY valid JSON with "narrative" (string) and "questions" '
                    "(string array).",
                    sources,
                ),
                user=build_pre_visit_prompt(patient, view, tier1),
                tier=3,
                model_tier="high",
                max_tokens=1200,
            )
            if isinstance(result, GuardedAIOutput):
                questions = self.guardrails.unavailable("doctor-questions", tier=3)
                return PreVisitNarrative(narrative=result, questions=questions)

            narrative_text, questions = _parse_pre_visit(result.text)
            narrative = self.guardrails.apply(
                narrative_text, "pre-visit-report", tier=3, sources=sources, model=result.model
            )
            guarded_questions = self.guardrails.apply_items(
                questions or DEFAULT_VISIT_QUESTIONS,
                "doctor-questions",
                sources=sources,
                model=result.model,
            )
            return PreVisitNarrative(narrative=narrative, questions=guarded_questions)

        return await self._flight.do(key, generate)


def _parse_pre_visit(text: str) -> tuple[str, list[str]]:
    try:
        data = json.loads(strip_json(text))
    except (json.JSONDecodeError, ValueError):
        logger.warning("Pre-visit narrative is not JSON, using raw text")
        return text.strip(), []
    if not isinstance(data, dict):
        return text.strip(), []
    narrative = data.get("narrative") if isinstance(data.get("narrative"), str) else ""
    raw_questions = data.get("questions") if isinstance(data.get("questions"), list) else []
    questions = [q.strip() for q in raw_questions if isinstance(q, str) and len(q.strip()) > 5]
    return narrative, questions[:MAX_QUESTIONS]
