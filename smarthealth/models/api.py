"""Request and response bodies for the analysis endpoints."""

from pydantic import BaseModel

from smarthealth.models.insights import Tier1Results
from smarthealth.models.merged import MergedRecordView
from smarthealth.models.narrative import QuestionContext, Tier2Results
from smarthealth.models.patient import PatientDemographics


class AnalysisRequest(BaseModel):
    patient: PatientDemographics
    view: MergedRecordView = MergedRecordView()


class ReportRequest(AnalysisRequest):
    include_narrative: bool = False


class Tier2Response(BaseModel):
    tier1: Tier1Results
    tier2: Tier2Results


class HealthItem(BaseModel):
    """Anything explainable that is not a lab, condition or medication."""

    id: str = ""
    name: str = ""


class ExplainRequest(BaseModel):
    resource_type: str  # "lab", "condition", "medication", anything else is generic
    resource: dict
    patient: PatientDemographics | None = None


class QuestionsRequest(BaseModel):
    contexts: list[QuestionContext]


class StatusResponse(BaseModel):
    provider: str
    ai_available: bool
    cached_narratives: int
    cache_hits: int = 0
    cache_misses: int = 0


class CacheClearResponse(BaseModel):
    cleared: int
