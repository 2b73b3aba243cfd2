"""Thresholds and lookup tables for the Tier 1 rules.

Everything numeric the rules compare against lives here so a deployment can
inject its own table instead of editing rule code. Defaults come from
``smarthealth.config`` and standard adult reference tables.
"""

from pydantic import BaseModel

from smarthealth.config import (
    CORRELATION_WINDOW_DAYS,
    LAB_CRITICAL_FACTOR,
    TREND_STABLE_THRESHOLD_PERCENT,
)


class FallbackRange(BaseModel):
    low: float
    high: float
    unit: str = ""


# Standard adult reference ranges, used only when the lab result carries none.
DEFAULT_FALLBACK_RANGES: dict[str, FallbackRange] = {
    # Metabolic
    "hemoglobin a1c": FallbackRange(low=4.0, high=5.6, unit="%"),
    "glucose": FallbackRange(low=70, high=100, unit="mg/dL"),
    "fasting glucose": FallbackRange(low=70, high=100, unit="mg/dL"),
    "bun": FallbackRange(low=7, high=20, unit="mg/dL"),
    "creatinine": FallbackRange(low=0.6, high=1.2, unit="mg/dL"),
    "egfr": FallbackRange(low=60, high=120, unit="mL/min/1.73m2"),
    "sodium": FallbackRange(low=136, high=145, unit="mmol/L"),
    "potassium": FallbackRange(low=3.5, high=5.0, unit="mmol/L"),
    "chloride": FallbackRange(low=96, high=106, unit="mmol/L"),
    "co2": FallbackRange(low=23, high=29, unit="mmol/L"),
    "calcium": FallbackRange(low=8.5, high=10.5, unit="mg/dL"),
    # Lipids
    "total cholesterol": FallbackRange(low=0, high=200, unit="mg/dL"),
    "ldl cholesterol": FallbackRange(low=0, high=100, unit="mg/dL"),
    "hdl cholesterol": FallbackRange(low=40, high=200, unit="mg/dL"),
    "triglycerides": FallbackRange(low=0, high=150, unit="mg/dL"),
    # CBC
    "hemoglobin": FallbackRange(low=12.0, high=17.5, unit="g/dL"),
    "hematocrit": FallbackRange(low=36, high=50, unit="%"),
    "wbc": FallbackRange(low=4.5, high=11.0, unit="x10^3/uL"),
    "white blood cell count": FallbackRange(low=4.5, high=11.0, unit="x10^3/uL"),
    "platelets": FallbackRange(low=150, high=400, unit="x10^3/uL"),
    "rbc": FallbackRange(low=4.0, high=5.5, unit="x10^6/uL"),
    # Liver
    "alt": FallbackRange(low=7, high=56, unit="U/L"),
    "ast": FallbackRange(low=10, high=40, unit="U/L"),
    "alkaline phosphatase": FallbackRange(low=44, high=147, unit="U/L"),
    "bilirubin": FallbackRange(low=0.1, high=1.2, unit="mg/dL"),
    "total bilirubin": FallbackRange(low=0.1, high=1.2, unit="mg/dL"),
    "albumin": FallbackRange(low=3.5, high=5.5, unit="g/dL"),
    # Thyroid
    "tsh": FallbackRange(low=0.4, high=4.0, unit="mIU/L"),
    "free t4": FallbackRange(low=0.8, high=1.8, unit="ng/dL"),
    # Other
    "vitamin d": FallbackRange(low=30, high=100, unit="ng/mL"),
    "ferritin": FallbackRange(low=12, high=300, unit="ng/mL"),
    "iron": FallbackRange(low=60, high=170, unit="mcg/dL"),
    "uric acid": FallbackRange(low=3.0, high=7.0, unit="mg/dL"),
}

# Months between occurrences before a preventive action is overdue.
# None means "once is enough" (overdue only when never recorded).
DEFAULT_CARE_GAP_INTERVALS: dict[str, int | None] = {
    "colonoscopy-screening": 120,
    "mammogram-screening": 24,
    "shingrix-vaccine": None,
    "diabetic-a1c": 6,
    "annual-bp-check": 12,
    "lipid-panel": 60,
    "flu-vaccine": 12,
    "covid-booster": 12,
    "hypertension-bp-followup": 6,
}


class RulePolicy(BaseModel):
    # Lab abnormality: value beyond boundary * factor (or below low / factor) is critical
    critical_factor: float = LAB_CRITICAL_FACTOR
    fallback_ranges: dict[str, FallbackRange] = DEFAULT_FALLBACK_RANGES

    # Lab trend: |change %| below this is stable
    stable_threshold_percent: float = TREND_STABLE_THRESHOLD_PERCENT

    care_gap_intervals_months: dict[str, int | None] = DEFAULT_CARE_GAP_INTERVALS

    active_medication_statuses: tuple[str, ...] = ("active", "on-hold")

    # Vital/medication correlation. A medication must start no later than the
    # latest reading and no more than this many days before the first one.
    correlation_window_days: int | None = CORRELATION_WINDOW_DAYS or None
    vital_trend_threshold_percent: float = TREND_STABLE_THRESHOLD_PERCENT
    bp_systolic_target: float = 140
    bp_diastolic_target: float = 90
    heart_rate_low: float = 60
    heart_rate_high: float = 100

    # Insight promotion thresholds for lab trends
    significant_trend_percent: float = 10
    high_trend_percent: float = 25

    def interval_for(self, rule_id: str) -> int | None:
        return self.care_gap_intervals_months.get(rule_id)


DEFAULT_POLICY = RulePolicy()
