from datetime import UTC, datetime

from smarthealth.models.merged import (
    MergedCondition,
    MergedEncounter,
    MergedImmunization,
    MergedLabResult,
    MergedVital,
)
from smarthealth.models.patient import PatientDemographics
from smarthealth.rules.care_gaps import detect_care_gaps, patient_age
from smarthealth.rules.policy import RulePolicy

AS_OF = datetime(2026, 1, 15, tzinfo=UTC)


def _gaps(patient, conditions=(), immunizations=(), encounters=(), labs=(), vitals=(), policy=None):
    kwargs = {"policy": policy} if policy else {}
    return detect_care_gaps(
        patient,
        list(conditions),
        list(immunizations),
        list(encounters),
        list(labs),
        list(vitals),
        as_of=AS_OF,
        **kwargs,
    )


def _ids(gaps):
    return {g.id for g in gaps}


class TestPatientAge:
    def test_explicit_age_wins(self):
        assert patient_age(PatientDemographics(age=40, birth_date="1950-01-01"), AS_OF) == 40

    def test_age_from_birth_date(self):
        assert patient_age(PatientDemographics(birth_date="1970-06-01"), AS_OF) == 55
        assert patient_age(PatientDemographics(birth_date="1970-01-15"), AS_OF) == 56

    def test_unknown_age(self):
        assert patient_age(PatientDemographics(), AS_OF) is None


class TestCareGaps:
    def test_colonoscopy_gap_when_never_done(self):
        gaps = _gaps(PatientDemographics(age=55, gender="male"))
        colonoscopy = next(g for g in gaps if g.id == "colonoscopy-screening")
        assert colonoscopy.last_performed is None
        assert colonoscopy.is_overdue is True
        assert colonoscopy.guideline_source == "USPSTF 2021"

    def test_recent_colonoscopy_closes_gap(self):
        encounter = MergedEncounter(id="enc-c", type="Colonoscopy", period_start="2024-01-15")
        gaps = _gaps(PatientDemographics(age=55, gender="male"), encounters=[encounter])
        assert "colonoscopy-screening" not in _ids(gaps)

    def test_colonoscopy_not_applicable_under_45(self):
        gaps = _gaps(PatientDemographics(age=30, gender="male"))
        assert "colonoscopy-screening" not in _ids(gaps)

    def test_screening_age_upper_bounds(self):
        assert "colonoscopy-screening" in _ids(_gaps(PatientDemographics(age=75, gender="male")))
        assert "colonoscopy-screening" not in _ids(_gaps(PatientDemographics(age=76, gender="male")))
        assert "mammogram-screening" in _ids(_gaps(PatientDemographics(age=74, gender="female")))
        assert "mammogram-screening" not in _ids(_gaps(PatientDemographics(age=80, gender="female")))

    def test_mammogram_only_for_women(self):
        assert "mammogram-screening" in _ids(_gaps(PatientDemographics(age=50, gender="female")))
        assert "mammogram-screening" not in _ids(_gaps(PatientDemographics(age=50, gender="male")))

    def test_unknown_age_skips_age_rules(self):
        assert _gaps(PatientDemographics()) == []

    def test_shingrix_once_is_enough(self):
        shot = MergedImmunization(
            id="imm-z", status="completed", vaccine_name="Zoster recombinant", occurrence_date="2015-05-01"
        )
        gaps = _gaps(PatientDemographics(age=60), immunizations=[shot])
        assert "shingrix-vaccine" not in _ids(gaps)

    def test_not_done_immunization_does_not_count(self):
        shot = MergedImmunization(
            id="imm-flu", status="not-done", vaccine_name="Influenza", occurrence_date="2025-11-01"
        )
        gaps = _gaps(PatientDemographics(age=30), immunizations=[shot])
        assert "flu-vaccine" in _ids(gaps)

    def test_diabetic_a1c_overdue(self):
        diabetes = MergedCondition(id="c1", clinical_status="active", name="Type 2 diabetes mellitus")
        old_a1c = MergedLabResult(id="l1", name="Hemoglobin A1c", value=7.0, effective_date="2025-03-01")
        gaps = _gaps(PatientDemographics(age=30), conditions=[diabetes], labs=[old_a1c])
        gap = next(g for g in gaps if g.id == "diabetic-a1c")
        assert gap.priority == "high"
        assert gap.last_performed == "2025-03-01"
        assert "Type 2 diabetes mellitus" in gap.reason

    def test_diabetic_a1c_current(self):
        diabetes = MergedCondition(id="c1", clinical_status="active", name="Diabetes")
        recent = MergedLabResult(id="l1", name="HbA1c", value=7.0, effective_date="2025-12-01")
        gaps = _gaps(PatientDemographics(age=30), conditions=[diabetes], labs=[recent])
        assert "diabetic-a1c" not in _ids(gaps)

    def test_resolved_condition_does_not_apply(self):
        diabetes = MergedCondition(id="c1", clinical_status="resolved", name="Gestational diabetes")
        gaps = _gaps(PatientDemographics(age=30), conditions=[diabetes])
        assert "diabetic-a1c" not in _ids(gaps)

    def test_hypertension_followup_uses_bp_vitals(self):
        htn = MergedCondition(id="c2", clinical_status="active", name="Essential hypertension")
        bp = MergedVital(id="v1", vital_type="blood-pressure", effective_date="2025-10-01")
        assert "hypertension-bp-followup" not in _ids(
            _gaps(PatientDemographics(age=30), conditions=[htn], vitals=[bp])
        )
        assert "hypertension-bp-followup" in _ids(_gaps(PatientDemographics(age=30), conditions=[htn]))

    def test_overdue_low_priority_promoted_and_sorted(self):
        diabetes = MergedCondition(id="c1", clinical_status="active", name="Diabetes")
        gaps = _gaps(PatientDemographics(age=55, gender="male"), conditions=[diabetes])
        priorities = [g.priority for g in gaps]
        assert "low" not in priorities
        assert priorities[0] == "high"
        assert priorities == sorted(priorities, key=["high", "medium"].index)

    def test_policy_interval_override(self):
        lipid = MergedLabResult(id="l1", name="LDL Cholesterol", value=90, effective_date="2024-06-01")
        patient = PatientDemographics(age=40)
        assert "lipid-panel" not in _ids(_gaps(patient, labs=[lipid]))
        strict = RulePolicy(care_gap_intervals_months={"lipid-panel": 12})
        assert "lipid-panel" in _ids(_gaps(patient, labs=[lipid], policy=strict))
