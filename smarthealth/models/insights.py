"""Tier 1 rule findings and the UI-ready insight wrapper."""

from pydantic import BaseModel, ConfigDict

from smarthealth.models.merged import ReferenceRange
from smarthealth.models.source import ClinicalCode, SourceTag


class LabAbnormalFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    lab_id: str
    lab_name: str
    value: float
    unit: str = ""
    reference_range: ReferenceRange
    status: str  # "high", "low", "critical-high", "critical-low"
    severity: str  # "mild", "critical"
    message: str
    source: SourceTag = SourceTag()


class TrendReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float
    date: str


class LabTrend(BaseModel):
    model_config = ConfigDict(frozen=True)

    lab_name: str
    code: ClinicalCode
    direction: str  # "rising", "falling", "stable"
    change_percent: float | None  # None when the series starts at zero
    reading_count: int
    first_reading: TrendReading
    last_reading: TrendReading
    span_days: int
    unit: str = ""
    message: str

    @property
    def magnitude(self) -> float:
        """Absolute percent change; movement off a zero baseline ranks above any percentage."""
        return float("inf") if self.change_percent is None else abs(self.change_percent)

    def change_text(self) -> str:
        if self.change_percent is None:
            return f"from {self.first_reading.value:g}"
        return f"{abs(self.change_percent):g}%"


class CareGap(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    recommendation: str
    reason: str
    last_performed: str | None = None
    is_overdue: bool = True
    guideline: str
    priority: str  # "high", "medium", "low"
    guideline_source: str


class DrugInteraction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    drug_a: str
    drug_b: str
    severity: str  # "critical", "high", "moderate", "low"
    description: str
    effect: str
    data_source: str
    drug_a_sources: tuple[SourceTag, ...] = ()
    drug_b_sources: tuple[SourceTag, ...] = ()


class SourceValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    system_name: str
    display: str = ""
    value: str | None = None


class SourceConflictAlert(BaseModel):
    model_config = ConfigDict(frozen=True)

    conflict_id: str
    conflict_type: str
    severity: str  # "critical", "high", "medium"
    title: str
    explanation: str
    action_item: str
    sources: tuple[SourceTag, ...] = ()
    source_values: tuple[SourceValue, ...] = ()


class VitalCorrelation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vital_name: str
    medication_name: str
    correlation_type: str  # "effectiveness", "side-effect", "expected-effect"
    trend: str  # "rising", "falling", "stable"
    message: str
    detail: str
    significance: str  # "high", "medium", "low"


class Tier1Results(BaseModel):
    """Bundle of one Tier 1 run. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    lab_flags: tuple[LabAbnormalFlag, ...] = ()
    lab_trends: tuple[LabTrend, ...] = ()
    care_gaps: tuple[CareGap, ...] = ()
    drug_interactions: tuple[DrugInteraction, ...] = ()
    source_conflict_alerts: tuple[SourceConflictAlert, ...] = ()
    vital_correlations: tuple[VitalCorrelation, ...] = ()
    analyzed_at: str = ""

    def findings(self) -> dict:
        """Everything except the timestamp, for structural comparison."""
        return self.model_dump(exclude={"analyzed_at"})


class HealthInsight(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    body: str
    severity: str  # "critical", "high", "medium", "low", "info"
    # "drug-interaction", "allergy-conflict", "care-gap", "lab-trend",
    # "vital-correlation", "medication", "general"
    category: str = "general"
    sources: list[SourceTag] = []
    tier: int = 1
