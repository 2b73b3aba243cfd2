"""Merged clinical records as handed over by upstream source reconciliation.

Every record carries its primary ``source`` plus merge metadata: all the
systems that reported it, whether the systems agreed, and the ids of the
original records. These models are read-only inputs to the analysis engine.
"""

from pydantic import BaseModel, ConfigDict

from smarthealth.models.source import ClinicalCode, SourceTag


class MergeMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    all_sources: list[SourceTag] = []
    merge_status: str = "single-source"  # "single-source", "confirmed", "conflict"
    merged_from_ids: list[str] = []


class Dosage(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float | None = None
    unit: str | None = None
    frequency: str | None = None


class MergedMedication(MergeMetadata):
    id: str = ""
    status: str = ""
    intent: str = ""
    name: str = ""
    codes: list[ClinicalCode] = []
    dosage_instruction: str | None = None
    dosage: Dosage | None = None
    prescriber: str | None = None
    date_written: str | None = None
    source: SourceTag = SourceTag()


class ReferenceRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    low: float | None = None
    high: float | None = None
    text: str | None = None


class MergedLabResult(MergeMetadata):
    id: str = ""
    status: str = ""
    name: str = ""
    codes: list[ClinicalCode] = []
    value: float | str | None = None
    unit: str | None = None
    reference_range: ReferenceRange | None = None
    interpretation: str | None = None  # "normal", "high", "low", "critical-high", "critical-low", "abnormal"
    category: str | None = None
    effective_date: str | None = None
    source: SourceTag = SourceTag()


class VitalComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    codes: list[ClinicalCode] = []
    value: float | None = None
    unit: str | None = None


class MergedVital(MergeMetadata):
    id: str = ""
    status: str = ""
    name: str = ""
    # "blood-pressure", "heart-rate", "body-weight", "bmi", "body-temperature",
    # "respiratory-rate", "oxygen-saturation", "body-height", "other"
    vital_type: str = "other"
    codes: list[ClinicalCode] = []
    value: float | None = None
    unit: str | None = None
    components: list[VitalComponent] = []
    effective_date: str | None = None
    source: SourceTag = SourceTag()


class AllergyReaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str | None = None
    manifestations: list[str] = []
    severity: str | None = None


class MergedAllergy(MergeMetadata):
    id: str = ""
    clinical_status: str | None = None
    verification_status: str | None = None
    type: str | None = None
    category: list[str] = []
    criticality: str | None = None
    substance: str = ""
    codes: list[ClinicalCode] = []
    reactions: list[AllergyReaction] = []
    recorded_date: str | None = None
    source: SourceTag = SourceTag()


class MergedCondition(MergeMetadata):
    id: str = ""
    clinical_status: str | None = None
    verification_status: str | None = None
    category: str | None = None
    name: str = ""
    codes: list[ClinicalCode] = []
    severity: str | None = None
    onset_date: str | None = None
    abatement_date: str | None = None
    recorded_date: str | None = None
    source: SourceTag = SourceTag()


class MergedImmunization(MergeMetadata):
    id: str = ""
    status: str = ""
    vaccine_name: str = ""
    codes: list[ClinicalCode] = []
    occurrence_date: str | None = None
    primary_source: bool | None = None
    lot_number: str | None = None
    site: str | None = None
    source: SourceTag = SourceTag()


class MergedEncounter(MergeMetadata):
    id: str = ""
    status: str = ""
    encounter_class: str | None = None
    type: str | None = None
    codes: list[ClinicalCode] = []
    reason: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    location: str | None = None
    provider: str | None = None
    source: SourceTag = SourceTag()


class ConflictResource(BaseModel):
    """One source's side of a conflict, with the value that source reported."""

    model_config = ConfigDict(frozen=True)

    resource_type: str = ""  # "Medication", "LabResult", "Allergy", "Condition", ...
    resource_id: str = ""
    display: str = ""
    value: str | None = None
    source: SourceTag = SourceTag()


class Conflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    # "dose-mismatch", "allergy-prescription", "missing-crossref",
    # "contradictory-condition", "allergy-gap"
    type: str = ""
    severity: str = "medium"  # "critical", "high", "medium"
    description: str = ""
    resources: list[ConflictResource] = []
    source_a: SourceTag = SourceTag()
    source_b: SourceTag = SourceTag()


class MergedRecordView(BaseModel):
    """One immutable snapshot of a patient's reconciled record."""

    model_config = ConfigDict(frozen=True)

    medications: list[MergedMedication] = []
    lab_results: list[MergedLabResult] = []
    vitals: list[MergedVital] = []
    allergies: list[MergedAllergy] = []
    conditions: list[MergedCondition] = []
    immunizations: list[MergedImmunization] = []
    encounters: list[MergedEncounter] = []
    conflicts: list[Conflict] = []


class SourceCounts(BaseModel):
    medications: int = 0
    lab_results: int = 0
    vitals: int = 0
    allergies: int = 0
    conditions: int = 0
    immunizations: int = 0
    encounters: int = 0
    total: int = 0


class SourceSummary(BaseModel):
    """Per-system record counts, shown as the report's data-source section."""

    source: SourceTag
    counts: SourceCounts = SourceCounts()
