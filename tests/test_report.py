from smarthealth.models.merged import MergedRecordView
from smarthealth.models.narrative import PreVisitNarrative, Tier2Results, Tier3Content
from smarthealth.services.guardrails import GuardrailFilter
from smarthealth.services.report import REPORT_DISCLAIMER, assemble_pre_visit_report, summarize_sources
from smarthealth.services.tier1 import run_tier1_analysis


class TestSummarizeSources:
    def test_counts_per_system(self, view):
        summaries = {s.source.system_id: s for s in summarize_sources(view)}

        assert set(summaries) == {"epic", "cmc"}
        epic = summaries["epic"].counts
        cmc = summaries["cmc"].counts
        # Lisinopril is reported by both systems
        assert epic.medications == 2
        assert cmc.medications == 3
        assert epic.lab_results == 2
        assert cmc.vitals == 2
        assert epic.total == sum([
            epic.medications, epic.lab_results, epic.vitals, epic.allergies,
            epic.conditions, epic.immunizations, epic.encounters,
        ])

    def test_empty_view(self):
        assert summarize_sources(MergedRecordView()) == []


class TestAssembleReport:
    def test_tier1_only_has_no_ai_sections(self, patient, view, as_of):
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)

        report = assemble_pre_visit_report(patient, view, tier1)

        assert report.has_ai_narrative is False
        assert report.ai_narrative is None
        assert report.lab_trend_narrative is None
        assert report.medication_summary is None
        assert report.health_snapshot == []
        assert report.ai_questions == []
        assert report.disclaimer == REPORT_DISCLAIMER

    def test_sections_from_tier1(self, patient, view, as_of):
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)

        report = assemble_pre_visit_report(patient, view, tier1)

        assert [m.id for m in report.medications.active] == ["med-warfarin", "med-ibuprofen", "med-lisinopril"]
        assert [m.id for m in report.medications.other] == ["med-amoxicillin"]
        assert len(report.medications.interactions) == 1
        assert report.medications.source_note == "Medications combined from Epic MyChart and Community Medical Center"
        assert [a.conflict_id for a in report.safety.high] == ["conf-dose"]
        assert report.safety.total_alerts == 1
        assert {lab.id for lab in report.labs.abnormal} == {"lab-a1c-1", "lab-a1c-2"}
        assert len(report.labs.all) == 3
        assert len(report.labs.trend_summaries) == 1
        assert len(report.conditions) == 2
        assert all(g.is_overdue for g in report.care_gaps)
        assert len(report.data_sources) == 2

    def test_available_tier2_sections_included(self, patient, view, as_of):
        guard = GuardrailFilter()
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)
        tier2 = Tier2Results(
            lab_trend_narrative=guard.apply("Your A1c may be rising.", "lab-trend-narrative", model="m"),
            medication_summary=guard.unavailable("medication-summary"),
        )

        report = assemble_pre_visit_report(patient, view, tier1, tier2)

        assert report.lab_trend_narrative is not None
        assert report.lab_trend_narrative.text.startswith("Your A1c may be rising.")
        assert report.medication_summary is None
        assert report.has_ai_narrative is False

    def test_tier3_narrative_sets_flag(self, patient, view, as_of):
        guard = GuardrailFilter()
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)
        narrative = PreVisitNarrative(
            narrative=guard.apply("Alex, here is your summary.", "pre-visit-report", tier=3),
            questions=guard.apply_items(["What should I ask about my A1c?"], "doctor-questions"),
        )

        report = assemble_pre_visit_report(patient, view, tier1, tier3=Tier3Content(narrative=narrative))

        assert report.has_ai_narrative is True
        assert report.ai_questions == ["What should I ask about my A1c?"]
        assert "Alex, here is your summary." in report.ai_narrative.text

    def test_unavailable_tier3_left_out(self, patient, view, as_of):
        guard = GuardrailFilter()
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)
        narrative = PreVisitNarrative(
            narrative=guard.unavailable("pre-visit-report", tier=3),
            questions=guard.unavailable("doctor-questions", tier=3),
        )

        report = assemble_pre_visit_report(patient, view, tier1, tier3=Tier3Content(narrative=narrative))

        assert report.has_ai_narrative is False
        assert report.ai_narrative is None
        assert report.ai_questions == []

    def test_pure(self, patient, view, as_of):
        tier1 = run_tier1_analysis(patient, view, as_of=as_of)
        first = assemble_pre_visit_report(patient, view, tier1)
        second = assemble_pre_visit_report(patient, view, tier1)
        assert first.model_dump(exclude={"generated_at"}) == second.model_dump(exclude={"generated_at"})


class TestAnalysisSession:
    async def test_report_without_narrative_makes_no_model_call(self, session, fake_llm, patient, view):
        report = await session.report(patient, view, include_narrative=False)
        assert report.has_ai_narrative is False
        fake_llm.complete.assert_not_awaited()

    async def test_report_with_narrative(self, session, fake_llm, patient, view):
        report = await session.report(patient, view, include_narrative=True)
        assert report.has_ai_narrative is True
        assert report.lab_trend_narrative is not None
        # lab trend, snapshot, medication summary, pre-visit narrative
        assert fake_llm.complete.await_count == 4

    async def test_tier2_is_cached(self, session, fake_llm, patient, view):
        await session.tier2(patient, view)
        calls = fake_llm.complete.await_count
        await session.tier2(patient, view)

        assert fake_llm.complete.await_count == calls
        status = session.status()
        assert status["cached_narratives"] == 3
        assert status["cache_hits"] == 3
        assert status["ai_available"] is True
