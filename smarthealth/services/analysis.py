import logging

from smarthealth.models.insights import Tier1Results
from smarthealth.models.merged import MergedRecordView
from smarthealth.models.narrative import Tier2Results, Tier3Content
from smarthealth.models.patient import PatientDemographics
from smarthealth.models.report import PreVisitReport
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy
from smarthealth.services.explainer import OnDemandExplainer
from smarthealth.services.guardrails import GuardrailFilter
from smarthealth.services.llm import LLMClient, get_llm_client
from smarthealth.services.narrative_cache import NarrativeCache
from smarthealth.services.narratives import NarrativeGenerator
from smarthealth.services.report import assemble_pre_visit_report
from smarthealth.services.tier1 import run_tier1_analysis

logger = logging.getLogger(__name__)


class AnalysisSession:
    """Process-lifetime wiring of the three tiers.

    Holds the one narrative cache and one explainer so that single-flight and
    caching apply across every request the process serves.
    """

    def __init__(self, llm: LLMClient | None = None, policy: RulePolicy = DEFAULT_POLICY) -> None:
        self.llm = llm or get_llm_client()
        self.policy = policy
        self.guardrails = GuardrailFilter()
        self.cache = NarrativeCache()
        self.narratives = NarrativeGenerator(self.llm, self.cache, self.guardrails, policy)
        self.explainer = OnDemandExplainer(self.llm, self.guardrails)

    def tier1(self, patient: PatientDemographics, view: MergedRecordView) -> Tier1Results:
        return run_tier1_analysis(patient, view, self.policy)

    async def tier2(self, patient: PatientDemographics, view: MergedRecordView,
                    tier1: Tier1Results | None = None) -> tuple[Tier1Results, Tier2Results]:
        tier1 = tier1 or self.tier1(patient, view)
        return tier1, await self.narratives.generate_all(patient, view, tier1)

    async def report(
        self,
        patient: PatientDemographics,
        view: MergedRecordView,
        include_narrative: bool = False,
    ) -> PreVisitReport:
        tier1 = self.tier1(patient, view)
        tier2 = None
        tier3 = None
        if include_narrative:
            tier1, tier2 = await self.tier2(patient, view, tier1)
            tier3 = Tier3Content(narrative=await self.explainer.pre_visit_narrative(patient, view, tier1))
        return assemble_pre_visit_report(patient, view, tier1, tier2, tier3, self.policy)

    def status(self) -> dict:
        return {
            "provider": self.llm.provider,
            "ai_available": self.llm.available(),
            "cached_narratives": len(self.cache),
            "cache_hits": self.cache.hits,
            "cache_misses": self.cache.misses,
        }
