from pydantic import BaseModel

from smarthealth.models.insights import (
    CareGap,
    DrugInteraction,
    HealthInsight,
    LabAbnormalFlag,
    SourceConflictAlert,
    VitalCorrelation,
)
from smarthealth.models.merged import (
    Conflict,
    MergedAllergy,
    MergedCondition,
    MergedImmunization,
    MergedLabResult,
    MergedMedication,
    SourceSummary,
)
from smarthealth.models.narrative import DoctorQuestions, HealthExplanation
from smarthealth.models.patient import PatientDemographics


class MedicationSection(BaseModel):
    active: list[MergedMedication] = []
    other: list[MergedMedication] = []
    interactions: list[DrugInteraction] = []
    source_note: str = ""


class SafetySection(BaseModel):
    critical: list[SourceConflictAlert] = []
    high: list[SourceConflictAlert] = []
    medium: list[SourceConflictAlert] = []
    conflicts: list[Conflict] = []
    total_alerts: int = 0


class LabSection(BaseModel):
    abnormal: list[MergedLabResult] = []
    flags: list[LabAbnormalFlag] = []
    all: list[MergedLabResult] = []
    trend_summaries: list[str] = []


class NarrativeSection(BaseModel):
    """Rendered (guardrailed) model text, included only when it was produced."""

    text: str
    disclaimer: str
    generated_at: str = ""


class PreVisitReport(BaseModel):
    generated_at: str
    patient: PatientDemographics

    medications: MedicationSection
    safety: SafetySection
    labs: LabSection
    conditions: list[MergedCondition] = []
    allergies: list[MergedAllergy] = []
    immunizations: list[MergedImmunization] = []
    care_gaps: list[CareGap] = []
    vital_correlations: list[VitalCorrelation] = []
    data_sources: list[SourceSummary] = []

    # Tier 2 / Tier 3 sections; None or empty when not generated
    health_snapshot: list[HealthInsight] = []
    lab_trend_narrative: NarrativeSection | None = None
    medication_summary: NarrativeSection | None = None
    ai_narrative: NarrativeSection | None = None
    ai_questions: list[str] = []
    explanations: list[HealthExplanation] = []
    doctor_questions: list[DoctorQuestions] = []
    has_ai_narrative: bool = False

    disclaimer: str
