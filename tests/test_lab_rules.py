from smarthealth.models.merged import MergedLabResult, ReferenceRange
from smarthealth.models.source import ClinicalCode
from smarthealth.rules.lab_flags import analyze_lab_abnormal_flags
from smarthealth.rules.lab_trends import analyze_lab_trends
from smarthealth.rules.policy import RulePolicy

GLUCOSE = ClinicalCode(system="http://loinc.org", code="2345-7", display="Glucose")


def _lab(value, *, name="Glucose", low=70, high=100, date="2025-01-01", codes=None, lab_id="lab-1"):
    ref = ReferenceRange(low=low, high=high) if low is not None or high is not None else None
    return MergedLabResult(
        id=lab_id,
        name=name,
        value=value,
        unit="mg/dL",
        reference_range=ref,
        effective_date=date,
        codes=codes if codes is not None else [GLUCOSE],
    )


class TestLabAbnormalFlags:
    def test_normal_value_not_flagged(self):
        assert analyze_lab_abnormal_flags([_lab(85)]) == []

    def test_mild_high(self):
        flags = analyze_lab_abnormal_flags([_lab(120)])
        assert len(flags) == 1
        assert flags[0].status == "high"
        assert flags[0].severity == "mild"
        assert "above normal" in flags[0].message
        assert "70-100" in flags[0].message

    def test_critical_high_at_factor(self):
        flags = analyze_lab_abnormal_flags([_lab(150)])
        assert flags[0].status == "critical-high"
        assert flags[0].severity == "critical"
        assert "urgently" in flags[0].message

    def test_mild_and_critical_low(self):
        mild = analyze_lab_abnormal_flags([_lab(60)])
        critical = analyze_lab_abnormal_flags([_lab(40)])
        assert mild[0].status == "low"
        assert critical[0].status == "critical-low"

    def test_string_value_is_parsed(self):
        flags = analyze_lab_abnormal_flags([_lab("130")])
        assert flags[0].value == 130

    def test_non_numeric_value_skipped(self):
        assert analyze_lab_abnormal_flags([_lab("positive"), _lab(None)]) == []

    def test_fallback_range_by_name(self):
        lab = _lab(6.5, name="Hemoglobin A1c", low=None, high=None, codes=[])
        flags = analyze_lab_abnormal_flags([lab])
        assert flags[0].reference_range.high == 5.6
        assert flags[0].status == "high"

    def test_unknown_lab_without_range_skipped(self):
        lab = _lab(999, name="Mystery Marker", low=None, high=None, codes=[])
        assert analyze_lab_abnormal_flags([lab]) == []

    def test_critical_flags_first(self):
        flags = analyze_lab_abnormal_flags([
            _lab(120, lab_id="mild"),
            _lab(200, lab_id="critical"),
        ])
        assert [f.lab_id for f in flags] == ["critical", "mild"]

    def test_policy_factor_is_respected(self):
        policy = RulePolicy(critical_factor=3.0)
        flags = analyze_lab_abnormal_flags([_lab(200)], policy)
        assert flags[0].status == "high"


class TestLabTrends:
    def test_single_reading_has_no_trend(self):
        assert analyze_lab_trends([_lab(100)]) == []

    def test_rising_trend(self):
        trends = analyze_lab_trends([
            _lab(130, date="2025-06-01", lab_id="b"),
            _lab(100, date="2025-01-01", lab_id="a"),
        ])
        assert len(trends) == 1
        trend = trends[0]
        assert trend.direction == "rising"
        assert trend.change_percent == 30.0
        assert trend.first_reading.value == 100
        assert trend.last_reading.value == 130
        assert trend.reading_count == 2
        assert "risen 30.0%" in trend.message

    def test_falling_trend(self):
        trends = analyze_lab_trends([
            _lab(100, date="2025-01-01"),
            _lab(80, date="2025-03-01"),
        ])
        assert trends[0].direction == "falling"
        assert trends[0].change_percent == -20.0

    def test_rise_from_zero_baseline(self):
        trends = analyze_lab_trends([
            _lab(0, date="2025-01-01"),
            _lab(2.5, date="2025-03-01"),
        ])
        trend = trends[0]
        assert trend.direction == "rising"
        assert trend.change_percent is None
        assert trend.change_text() == "from 0"
        assert "has risen from 0 to 2.5" in trend.message

    def test_zero_baseline_ranks_first(self):
        trends = analyze_lab_trends([
            _lab(0, date="2025-01-01", lab_id="t1", name="Troponin", codes=[]),
            _lab(0.4, date="2025-03-01", lab_id="t2", name="Troponin", codes=[]),
            _lab(100, date="2025-01-01", lab_id="g1", name="Glucose", codes=[]),
            _lab(180, date="2025-03-01", lab_id="g2", name="Glucose", codes=[]),
        ])
        assert [t.lab_name for t in trends] == ["Troponin", "Glucose"]

    def test_unchanged_zero_is_stable(self):
        trends = analyze_lab_trends([
            _lab(0, date="2025-01-01"),
            _lab(0, date="2025-03-01"),
        ])
        assert trends[0].direction == "stable"
        assert trends[0].change_percent == 0.0

    def test_small_change_is_stable(self):
        trends = analyze_lab_trends([
            _lab(100, date="2025-01-01"),
            _lab(103, date="2025-03-01"),
        ])
        assert trends[0].direction == "stable"

    def test_groups_by_loinc_across_names(self):
        trends = analyze_lab_trends([
            _lab(100, name="Glucose", date="2025-01-01"),
            _lab(120, name="Glucose, fasting", date="2025-02-01"),
        ])
        assert len(trends) == 1
        assert trends[0].code.code == "2345-7"

    def test_groups_by_name_without_codes(self):
        trends = analyze_lab_trends([
            _lab(100, name="Ferritin", codes=[], date="2025-01-01"),
            _lab(150, name="ferritin ", codes=[], date="2025-05-01"),
        ])
        assert len(trends) == 1

    def test_undated_readings_ignored(self):
        trends = analyze_lab_trends([
            _lab(100, date="2025-01-01"),
            _lab(200, date=None),
        ])
        assert trends == []

    def test_largest_change_first(self):
        other = ClinicalCode(system="http://loinc.org", code="2160-0", display="Creatinine")
        trends = analyze_lab_trends([
            _lab(100, date="2025-01-01"),
            _lab(110, date="2025-02-01"),
            _lab(1.0, name="Creatinine", codes=[other], date="2025-01-01"),
            _lab(2.0, name="Creatinine", codes=[other], date="2025-02-01"),
        ])
        assert [t.lab_name for t in trends] == ["Creatinine", "Glucose"]
