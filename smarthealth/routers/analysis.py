import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from smarthealth.models.api import (
    AnalysisRequest,
    CacheClearResponse,
    ExplainRequest,
    HealthItem,
    QuestionsRequest,
    ReportRequest,
    StatusResponse,
    Tier2Response,
)
from smarthealth.models.insights import Tier1Results
from smarthealth.models.merged import MergedCondition, MergedLabResult, MergedMedication
from smarthealth.models.narrative import DoctorQuestions, HealthExplanation
from smarthealth.models.report import PreVisitReport
from smarthealth.services.analysis import AnalysisSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analysis", tags=["analysis"])

_RESOURCE_MODELS = {
    "lab": MergedLabResult,
    "condition": MergedCondition,
    "medication": MergedMedication,
}


def _session(request: Request) -> AnalysisSession:
    return request.app.state.session


@router.post("/tier1", response_model=Tier1Results)
async def tier1(body: AnalysisRequest, request: Request):
    """Rule-based findings. No model call."""
    return _session(request).tier1(body.patient, body.view)


@router.post("/tier2", response_model=Tier2Response)
async def tier2(body: AnalysisRequest, request: Request):
    """Cached narratives, generated on first request for a given record."""
    tier1_results, tier2_results = await _session(request).tier2(body.patient, body.view)
    return Tier2Response(tier1=tier1_results, tier2=tier2_results)


@router.post("/explain", response_model=HealthExplanation)
async def explain(body: ExplainRequest, request: Request):
    model = _RESOURCE_MODELS.get(body.resource_type.lower(), HealthItem)
    try:
        resource = model.model_validate(body.resource)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False))
    return await _session(request).explainer.explain(resource, body.patient)


@router.post("/questions", response_model=list[DoctorQuestions])
async def questions(body: QuestionsRequest, request: Request):
    if not body.contexts:
        raise HTTPException(status_code=400, detail="At least one question context is required")
    return await _session(request).explainer.doctor_questions(body.contexts)


@router.post("/report", response_model=PreVisitReport)
async def report(body: ReportRequest, request: Request):
    return await _session(request).report(body.patient, body.view, body.include_narrative)


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(request: Request):
    cleared = _session(request).cache.clear()
    return CacheClearResponse(cleared=cleared)


@router.get("/status", response_model=StatusResponse)
async def status(request: Request):
    return StatusResponse(**_session(request).status())
