"""Provenance types shared by every merged clinical record."""

from pydantic import BaseModel, ConfigDict


class SourceTag(BaseModel):
    """Which health system reported a record, and when it was fetched."""

    model_config = ConfigDict(frozen=True)

    system_name: str = ""
    system_id: str = ""
    fetched_at: str = ""


class ClinicalCode(BaseModel):
    """A single coding from a FHIR CodeableConcept (LOINC, RxNorm, SNOMED...)."""

    model_config = ConfigDict(frozen=True)

    system: str | None = None
    code: str | None = None
    display: str | None = None
