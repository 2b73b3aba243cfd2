"""Safety wrapping for every piece of model-generated text.

Nothing the model writes reaches a caller without passing through
``GuardrailFilter``: the text is screened against the disallowed-content
policy, a disclaimer is attached, and actionable contexts get a
provider-contact call to action. Failure outputs (declined, unavailable) are
built here too so they carry the same disclaimer and framing.
"""

import logging
import re
from datetime import UTC, datetime

from smarthealth.models.narrative import GuardedAIOutput
from smarthealth.models.source import SourceTag

logger = logging.getLogger(__name__)


DISCLAIMER_TIER_1 = (
    "This information is based on standard clinical guidelines and your health records. "
    "It is not a diagnosis or medical advice. Always consult your healthcare provider for "
    "personalized medical guidance."
)

DISCLAIMER_TIER_2_3 = (
    "This AI-generated insight is for informational purposes only and is not a substitute for "
    "professional medical advice, diagnosis, or treatment. Always seek the advice of your physician "
    "or other qualified health provider."
)

PROVIDER_CTA = "Discuss these findings with your healthcare provider at your next visit."

CONFIDENCE_FRAMES = {
    1: "Based on standard clinical guidelines",
    2: "Commonly associated patterns identified by AI analysis",
    3: "AI-generated perspective for discussion with your provider",
}

# Sent as the system prompt prefix with every model call.
LLM_SYSTEM_GUARDRAIL = """You are a helpful health information assistant embedded in a patient-facing app called SmartHealth.

CRITICAL RULES. You MUST follow these in every response:
1. NEVER diagnose conditions or prescribe treatments.
2. NEVER tell the patient to start, stop or change the dose of any medication.
3. Use hedged language: "may be associated with", "commonly linked to", "could indicate". NEVER "you have" or "this means".
4. ALWAYS encourage the patient to discuss findings with a healthcare provider. Never suggest that seeing a provider is unnecessary.
5. When referencing lab values, include the reference range for context.
6. Be empathetic and clear. Write at a 6th-grade reading level.
7. Focus on empowering the patient with knowledge, not creating anxiety.
8. If data seems contradictory between sources, note it as something to verify with a provider.
9. Attribute observations to specific data sources when possible."""


# Words that name a condition rather than a finding, for "you have ..." assertions.
_CONDITION_TERMS = (
    r"(?:disease|diabetes|cancer|tumou?r|hypertension|infection|disorder|syndrome|failure|deficiency"
    r"|an(?:a)?emia|stroke|\w+itis|\w+osis|\w+emia|\w+pathy|\w+oma)\b"
)

# Common generic-name stems, plus plain references to "your medication".
_MEDICATION_TERMS = (
    r"(?:\w*(?:pril|sartan|olol|statin|formin|dipine|farin|prazole|tidine|cillin|mycin|azole|floxacin"
    r"|cycline|gliptin|glutide|flozin|oxetine|profen|isone|asone|thiazide|semide|zepam|xaban|gatran"
    r"|insulin|aspirin)\b"
    r"|(?:your|the|this|that)\s+(?:\w+\s+){0,2}(?:medications?|medicines?|meds|pills?|prescriptions?|tablets?"
    r"|insulin)\b)"
)

DISALLOWED_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "diagnostic-assertion",
        re.compile(
            r"(?<!\bif\s)(?<!whether\s)\byou(?:\s+(?:definitely|certainly|clearly|probably|likely|now))?\s+have\s+"
            r"(?!(?:no|not|never|any|questions?|concerns?|about|asked)\b)(?:[\w'-]+\s+){0,3}?" + _CONDITION_TERMS
            + r"|\byou(?:'ve|\s+have)\s+been\s+diagnosed\s+with\b"
            r"|\bthis\s+(?:confirms|means|indicates|shows|proves)\s+(?:that\s+)?you\s+(?:have|are)\b"
            r"|\byou\s+are\s+(?:diabetic|prediabetic|hypertensive|anemic)\b"
            r"|\byour\s+diagnosis\s+is\b"
            r"|\bI\s+diagnose\b"
            r"|\byou\s+are\s+suffering\s+from\b",
            re.I,
        ),
    ),
    (
        # Questions the patient asks ("Should I stop ...") are allowed.
        "dosing-instruction",
        re.compile(
            r"\b(?:take|increase|decrease|reduce|double|adjust|lower|raise)\s+your\s+(?:\w+\s+)?(?:dose|dosage)\b"
            r"|(?<!\bI\s)\b(?:stop|start|discontinue|quit)\s+taking\b"
            r"|(?<!\bI\s)\b(?:take|use|give|inject)\b[^.!?\n]{0,40}?"
            r"\b\d+(?:\.\d+)?\s*(?:mg|mcg|g|ml|units?|tablets?|pills?|capsules?)\b"
            r"|(?<!\bI\s)\b(?:stop|start|discontinue|quit|skip|pause|resume|restart)\s+(?:using\s+)?"
            + _MEDICATION_TERMS,
            re.I,
        ),
    ),
    (
        "discouraging-care",
        re.compile(
            r"\bno\s+need\s+to\s+(?:see|call|visit|contact)\s+(?:a|your)\s+(?:doctor|provider|physician)\b"
            r"|\byou\s+(?:do\s+not|don't)\s+need\s+(?:to\s+see\s+)?(?:a|your)\s+(?:doctor|provider|physician)\b"
            r"|\binstead\s+of\s+(?:seeing|calling)\s+(?:a|your)\s+(?:doctor|provider)\b",
            re.I,
        ),
    ),
]

ACTIONABLE_CONTEXTS = frozenset({
    "drug-interaction",
    "care-gap",
    "medication-summary",
    "doctor-questions",
    "pre-visit-report",
})

CONTEXT_FALLBACKS = {
    "lab-trend-narrative": (
        "A written summary of your lab trends isn't available right now. Your individual lab results "
        "and trend flags are still shown, and your provider can help you interpret them."
    ),
    "health-snapshot": (
        "A written health snapshot isn't available right now. Your key findings are listed individually."
    ),
    "medication-summary": (
        "A written summary of your medications isn't available right now. Please review your medication "
        "list with your provider or pharmacist."
    ),
    "explanation": (
        "An explanation for this item isn't available right now. Your provider is the best person to "
        "explain what this result means for you."
    ),
    "doctor-questions": (
        "Suggested questions aren't available right now. Consider asking your provider what this "
        "finding means for you and whether anything should change."
    ),
    "pre-visit-report": (
        "A written pre-visit summary isn't available right now. The sections below list your records "
        "and findings for your appointment."
    ),
}

DEFAULT_FALLBACK = (
    "This information isn't available right now. Please discuss your health records with your provider."
)

FALLBACK_QUESTIONS = [
    "What do these results mean for my overall health?",
    "Are there any changes I should consider based on these findings?",
    "When should I follow up on these results?",
]


def build_source_attribution(sources: list[SourceTag] | None) -> str:
    names: list[str] = []
    for source in sources or []:
        if source.system_name and source.system_name not in names:
            names.append(source.system_name)
    if not names:
        return "Based on available health records."
    if len(names) == 1:
        return f"Based on data from {names[0]}."
    return f"Based on cross-system data from {' and '.join(names)}."


def model_label(tier: int, model: str | None) -> str:
    if tier == 1:
        return "Rule-based analysis (no AI model)"
    return f"AI-generated insight ({model or 'unknown model'})"


class GuardrailFilter:
    def __init__(self, actionable_contexts: frozenset[str] = ACTIONABLE_CONTEXTS) -> None:
        self.actionable_contexts = actionable_contexts

    def screen(self, text: str) -> str | None:
        """Return the name of the first disallowed-content rule the text violates."""
        for name, pattern in DISALLOWED_PATTERNS:
            if pattern.search(text):
                return name
        return None

    def disclaimer_for(self, tier: int) -> str:
        return DISCLAIMER_TIER_1 if tier == 1 else DISCLAIMER_TIER_2_3

    def fallback_for(self, context: str) -> str:
        return CONTEXT_FALLBACKS.get(context, DEFAULT_FALLBACK)

    def _wrap(
        self,
        text: str,
        context: str,
        *,
        status: str,
        was_modified: bool,
        tier: int,
        sources: list[SourceTag] | None,
        model: str | None,
        actionable: bool | None,
        items: list[str] | None = None,
    ) -> GuardedAIOutput:
        disclaimer = self.disclaimer_for(tier)
        is_actionable = actionable if actionable is not None else context in self.actionable_contexts
        cta = PROVIDER_CTA if is_actionable else None

        parts = [text]
        if items:
            parts.append("\n".join(f"- {item}" for item in items))
        if cta:
            parts.append(cta)
        parts.append(disclaimer)

        return GuardedAIOutput(
            text=text,
            disclaimer=disclaimer,
            call_to_action=cta,
            rendered="\n\n".join(p for p in parts if p),
            was_modified=was_modified,
            status=status,
            tier=tier,
            context=context,
            model_label=model_label(tier, model),
            source_attribution=build_source_attribution(sources),
            confidence_frame=CONFIDENCE_FRAMES.get(tier, CONFIDENCE_FRAMES[2]),
            items=items or [],
            generated_at=datetime.now(UTC).isoformat(),
        )

    def apply(
        self,
        raw_text: str,
        context: str,
        *,
        tier: int = 2,
        sources: list[SourceTag] | None = None,
        model: str | None = None,
        actionable: bool | None = None,
    ) -> GuardedAIOutput:
        """Screen model text and wrap it for display.

        A violation replaces the whole text with the context's safe fallback;
        the original text is never returned.
        """
        text = (raw_text or "").strip()
        violation = self.screen(text) if text else "empty-output"
        if violation is not None:
            return self.fallback(context, violation, tier=tier, sources=sources, model=model, actionable=actionable)
        return self._wrap(
            text,
            context,
            status="ok",
            was_modified=False,
            tier=tier,
            sources=sources,
            model=model,
            actionable=actionable,
        )

    def apply_items(
        self,
        raw_items: list[str],
        context: str,
        *,
        intro: str = "",
        tier: int = 3,
        sources: list[SourceTag] | None = None,
        model: str | None = None,
        actionable: bool | None = None,
    ) -> GuardedAIOutput:
        """Screen a list of short items (questions) together.

        Any violating item replaces the whole list with generic fallback
        questions.
        """
        items = [item.strip() for item in raw_items if item and item.strip()]
        violation = None if items else "empty-output"
        for item in items:
            violation = violation or self.screen(item)
        if intro and violation is None:
            violation = self.screen(intro)

        if violation is not None:
            logger.warning("Guardrail replaced %s items (rule=%s)", context, violation)
            return self._wrap(
                self.fallback_for(context) if intro else "",
                context,
                status="fallback",
                was_modified=True,
                tier=tier,
                sources=sources,
                model=model,
                actionable=actionable,
                items=list(FALLBACK_QUESTIONS),
            )
        return self._wrap(
            intro,
            context,
            status="ok",
            was_modified=False,
            tier=tier,
            sources=sources,
            model=model,
            actionable=actionable,
            items=items,
        )

    def fallback(
        self,
        context: str,
        rule: str,
        *,
        tier: int = 2,
        sources: list[SourceTag] | None = None,
        model: str | None = None,
        actionable: bool | None = None,
    ) -> GuardedAIOutput:
        """Replace unusable model output with the context's safe text."""
        logger.warning("Guardrail replaced %s output (rule=%s)", context, rule)
        return self._wrap(
            self.fallback_for(context),
            context,
            status="fallback",
            was_modified=True,
            tier=tier,
            sources=sources,
            model=model,
            actionable=actionable,
        )

    def declined(self, context: str, *, tier: int = 2, model: str | None = None) -> GuardedAIOutput:
        """The model refused. Shown like a fallback, never cached."""
        logger.info("Model declined %s request", context)
        return self._wrap(
            self.fallback_for(context),
            context,
            status="declined",
            was_modified=True,
            tier=tier,
            sources=None,
            model=model,
            actionable=None,
        )

    def unavailable(self, context: str, *, tier: int = 2, reason: str = "") -> GuardedAIOutput:
        """The model could not be reached. Never cached, so a retry can succeed."""
        if reason:
            logger.info("AI output unavailable for %s: %s", context, reason)
        return self._wrap(
            self.fallback_for(context),
            context,
            status="unavailable",
            was_modified=False,
            tier=tier,
            sources=None,
            model=None,
            actionable=None,
        )
