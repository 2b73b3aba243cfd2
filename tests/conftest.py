import os
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# No external API keys for tests
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["LLM_PROVIDER"] = "auto"

from smarthealth.main import app
from smarthealth.models.merged import (
    Conflict,
    ConflictResource,
    Dosage,
    MergedAllergy,
    MergedCondition,
    MergedEncounter,
    MergedImmunization,
    MergedLabResult,
    MergedMedication,
    MergedRecordView,
    MergedVital,
    ReferenceRange,
    VitalComponent,
)
from smarthealth.models.patient import PatientDemographics
from smarthealth.models.source import ClinicalCode, SourceTag
from smarthealth.services.analysis import AnalysisSession
from smarthealth.services.llm import LLMReply

AS_OF = datetime(2026, 1, 15, tzinfo=UTC)

EPIC = SourceTag(system_name="Epic MyChart", system_id="epic", fetched_at="2026-01-10T00:00:00Z")
COMMUNITY = SourceTag(system_name="Community Medical Center", system_id="cmc", fetched_at="2026-01-10T00:00:00Z")


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def patient():
    return PatientDemographics(
        id="pat-1",
        full_name="Alex Rivera",
        first_name="Alex",
        last_name="Rivera",
        gender="male",
        birth_date="1970-06-01",
        age=55,
        mrn="MRN-001",
    )


@pytest.fixture
def view():
    """A two-system record with something for every rule to find."""
    a1c = ClinicalCode(system="http://loinc.org", code="4548-4", display="Hemoglobin A1c")
    return MergedRecordView(
        medications=[
            MergedMedication(
                id="med-warfarin",
                status="active",
                name="Warfarin 5mg",
                dosage_instruction="5mg daily",
                dosage=Dosage(value=5, unit="mg", frequency="daily"),
                date_written="2024-03-01",
                source=EPIC,
                all_sources=[EPIC],
            ),
            MergedMedication(
                id="med-ibuprofen",
                status="active",
                name="Ibuprofen 400mg",
                date_written="2025-11-20",
                source=COMMUNITY,
                all_sources=[COMMUNITY],
            ),
            MergedMedication(
                id="med-lisinopril",
                status="active",
                name="Lisinopril 10mg",
                date_written="2025-01-10",
                source=EPIC,
                all_sources=[EPIC, COMMUNITY],
                merge_status="confirmed",
            ),
            MergedMedication(
                id="med-amoxicillin",
                status="completed",
                name="Amoxicillin 500mg",
                source=COMMUNITY,
                all_sources=[COMMUNITY],
            ),
        ],
        lab_results=[
            MergedLabResult(
                id="lab-a1c-1",
                name="Hemoglobin A1c",
                codes=[a1c],
                value=6.8,
                unit="%",
                reference_range=ReferenceRange(low=4.0, high=5.6),
                interpretation="high",
                effective_date="2025-03-01",
                source=EPIC,
            ),
            MergedLabResult(
                id="lab-a1c-2",
                name="HbA1c",
                codes=[a1c],
                value=7.6,
                unit="%",
                reference_range=ReferenceRange(low=4.0, high=5.6),
                interpretation="high",
                effective_date="2025-12-01",
                source=COMMUNITY,
            ),
            MergedLabResult(
                id="lab-ldl",
                name="LDL Cholesterol",
                value="95",
                unit="mg/dL",
                effective_date="2024-06-01",
                source=EPIC,
            ),
        ],
        vitals=[
            MergedVital(
                id="bp-0",
                name="Blood Pressure",
                vital_type="blood-pressure",
                components=[
                    VitalComponent(name="Systolic", value=138, unit="mmHg"),
                    VitalComponent(name="Diastolic", value=88, unit="mmHg"),
                ],
                effective_date="2025-06-01",
                source=COMMUNITY,
            ),
            MergedVital(
                id="bp-1",
                name="Blood Pressure",
                vital_type="blood-pressure",
                components=[
                    VitalComponent(name="Systolic", value=150, unit="mmHg"),
                    VitalComponent(name="Diastolic", value=95, unit="mmHg"),
                ],
                effective_date="2025-12-01",
                source=COMMUNITY,
            ),
        ],
        allergies=[
            MergedAllergy(id="alg-1", substance="Penicillin", criticality="high", source=EPIC, all_sources=[EPIC]),
        ],
        conditions=[
            MergedCondition(
                id="cond-dm",
                clinical_status="active",
                name="Type 2 diabetes mellitus",
                onset_date="2019-04-01",
                source=EPIC,
            ),
            MergedCondition(
                id="cond-htn",
                clinical_status="active",
                name="Essential hypertension",
                onset_date="2018-02-01",
                source=EPIC,
            ),
        ],
        immunizations=[
            MergedImmunization(
                id="imm-flu",
                status="completed",
                vaccine_name="Influenza, seasonal",
                occurrence_date="2025-10-01",
                source=COMMUNITY,
            ),
        ],
        encounters=[
            MergedEncounter(id="enc-1", status="finished", type="Office visit", period_start="2025-12-01", source=EPIC),
        ],
        conflicts=[
            Conflict(
                id="conf-dose",
                type="dose-mismatch",
                severity="high",
                description="Lisinopril dose differs between systems",
                resources=[
                    ConflictResource(resource_type="Medication", display="Lisinopril", value="10mg", source=EPIC),
                    ConflictResource(resource_type="Medication", display="Lisinopril", value="20mg", source=COMMUNITY),
                ],
                source_a=EPIC,
                source_b=COMMUNITY,
            ),
        ],
    )


def _make_llm(text: str = "A calm, hedged summary.", *, model: str = "test-model", declined: bool = False,
              side_effect=None) -> MagicMock:
    llm = MagicMock()
    llm.provider = "anthropic"
    llm.available.return_value = True
    llm.complete = AsyncMock(
        return_value=LLMReply(text=text, model=model, declined=declined),
        side_effect=side_effect,
    )
    return llm


@pytest.fixture
def make_llm():
    """Factory for a stand-in LLMClient whose ``complete`` is an AsyncMock."""
    return _make_llm


@pytest.fixture
def fake_llm():
    return _make_llm()


@pytest.fixture
def session(fake_llm):
    return AnalysisSession(llm=fake_llm)


@pytest.fixture
def client():
    """Synchronous TestClient; entering the context runs the lifespan."""
    with TestClient(app) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def async_client(fake_llm):
    """Async httpx client with a session backed by the fake model."""
    app.state.session = AnalysisSession(llm=fake_llm)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
