"""Tier 2 / Tier 3 outputs. Model text only ever appears inside a GuardedAIOutput."""

from pydantic import BaseModel, ConfigDict

from smarthealth.models.insights import HealthInsight
from smarthealth.models.source import SourceTag


class GuardedAIOutput(BaseModel):
    """Model-generated text after the guardrail pass.

    ``text`` is the screened body, ``rendered`` is what a reader sees: body,
    call to action (when present) and disclaimer.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    disclaimer: str
    call_to_action: str | None = None
    rendered: str = ""
    was_modified: bool = False
    status: str = "ok"  # "ok", "fallback", "declined", "unavailable"
    tier: int = 2
    context: str = ""
    model_label: str = ""
    source_attribution: str = ""
    confidence_frame: str = ""
    items: list[str] = []
    generated_at: str = ""

    @property
    def available(self) -> bool:
        return self.status in ("ok", "fallback")


class CachedNarrative(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    fingerprint: str
    output: GuardedAIOutput
    insights: list[HealthInsight] = []
    model: str = ""
    sources: list[SourceTag] = []
    created_at: str = ""


class Tier2Results(BaseModel):
    lab_trend_narrative: GuardedAIOutput | None = None
    health_snapshot: list[HealthInsight] = []
    snapshot_output: GuardedAIOutput | None = None
    medication_summary: GuardedAIOutput | None = None
    error: str | None = None


class HealthExplanation(BaseModel):
    subject: str
    resource_type: str
    resource_id: str = ""
    output: GuardedAIOutput
    input_hash: str = ""


class QuestionContext(BaseModel):
    """What a patient wants to ask about, plus related findings for the prompt."""

    subject: str
    detail: str = ""
    related_insights: list[HealthInsight] = []


class DoctorQuestions(BaseModel):
    subject: str
    questions: list[str] = []
    output: GuardedAIOutput
    input_hash: str = ""


class PreVisitNarrative(BaseModel):
    narrative: GuardedAIOutput
    questions: GuardedAIOutput


class Tier3Content(BaseModel):
    """Whatever on-demand content the user asked for before building a report."""

    narrative: PreVisitNarrative | None = None
    explanations: list[HealthExplanation] = []
    doctor_questions: list[DoctorQuestions] = []
