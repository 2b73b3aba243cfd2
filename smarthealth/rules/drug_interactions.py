"""Drug-drug interaction lookup.

Every pair of currently active medications is checked against a table of
clinically significant interactions. The pair often spans health systems,
where neither prescriber sees the other's prescription.
"""

import re
from dataclasses import dataclass

from smarthealth.models.insights import DrugInteraction
from smarthealth.models.merged import MergedMedication
from smarthealth.rules.common import is_active_medication, normalize_name
from smarthealth.rules.policy import DEFAULT_POLICY, RulePolicy

DATA_SOURCE = "SmartHealth Clinical Rules"


@dataclass(frozen=True)
class InteractionEntry:
    drug_a: re.Pattern
    drug_b: re.Pattern
    severity: str
    effect: str
    description: str


def _p(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.I)


# Sources: FDA Drug Safety communications, clinical pharmacology references.
INTERACTION_TABLE: list[InteractionEntry] = [
    InteractionEntry(
        _p(r"warfarin|coumadin"),
        _p(r"aspirin|ibuprofen|naproxen|nsaid|advil|motrin|aleve"),
        "critical",
        "Increased bleeding risk",
        "Warfarin combined with NSAIDs or aspirin significantly increases the risk of gastrointestinal "
        "and other bleeding. This combination should be used with extreme caution.",
    ),
    InteractionEntry(
        _p(r"warfarin|coumadin"),
        _p(r"fluconazole|metronidazole|flagyl"),
        "critical",
        "Warfarin levels dangerously increased",
        "These antifungal and antimicrobial agents inhibit warfarin metabolism, potentially causing "
        "dangerous elevations in INR and bleeding risk.",
    ),
    InteractionEntry(
        _p(r"methotrexate"),
        _p(r"trimethoprim|bactrim|septra|sulfamethoxazole"),
        "critical",
        "Methotrexate toxicity risk",
        "Trimethoprim-sulfamethoxazole decreases methotrexate clearance, risking severe bone marrow "
        "suppression and organ toxicity.",
    ),
    InteractionEntry(
        _p(r"lithium"),
        _p(r"ibuprofen|naproxen|nsaid|diclofenac|meloxicam|ketorolac"),
        "critical",
        "Lithium toxicity risk",
        "NSAIDs reduce lithium clearance, potentially causing lithium toxicity (tremor, confusion, "
        "seizures). Close monitoring required.",
    ),
    InteractionEntry(
        _p(r"metformin"),
        _p(r"contrast|iodine"),
        "high",
        "Lactic acidosis risk",
        "Metformin should be held before and after iodinated contrast procedures to reduce lactic "
        "acidosis risk.",
    ),
    InteractionEntry(
        _p(r"ace inhibitor|lisinopril|enalapril|ramipril|benazepril"),
        _p(r"potassium|k-dur|klor-con|spironolactone"),
        "high",
        "Hyperkalemia risk",
        "ACE inhibitors with potassium supplements or potassium-sparing diuretics can cause "
        "dangerously high potassium levels.",
    ),
    InteractionEntry(
        _p(r"ssri|sertraline|fluoxetine|paroxetine|citalopram|escitalopram"),
        _p(r"tramadol|fentanyl|meperidine|maoi|selegiline|linezolid"),
        "high",
        "Serotonin syndrome risk",
        "Combining serotonergic medications increases the risk of serotonin syndrome, a potentially "
        "life-threatening condition with agitation, hyperthermia and muscle rigidity.",
    ),
    InteractionEntry(
        _p(r"statin|atorvastatin|simvastatin|rosuvastatin|lovastatin"),
        _p(r"clarithromycin|erythromycin|itraconazole|ketoconazole"),
        "high",
        "Increased statin levels (rhabdomyolysis risk)",
        "These inhibitors increase statin blood levels, raising the risk of muscle breakdown "
        "(rhabdomyolysis). Statin dose adjustment or an alternative antibiotic may be needed.",
    ),
    InteractionEntry(
        _p(r"digoxin"),
        _p(r"amiodarone|verapamil|quinidine"),
        "high",
        "Digoxin toxicity risk",
        "These medications increase digoxin levels, potentially causing toxicity (nausea, vision "
        "changes, arrhythmias). Digoxin dose reduction is typically needed.",
    ),
    InteractionEntry(
        _p(r"clopidogrel|plavix"),
        _p(r"omeprazole|esomeprazole"),
        "high",
        "Reduced clopidogrel effectiveness",
        "Omeprazole and esomeprazole inhibit the enzyme that activates clopidogrel, reducing its "
        "antiplatelet effect. Pantoprazole is often considered instead.",
    ),
    InteractionEntry(
        _p(r"allopurinol"),
        _p(r"azathioprine|mercaptopurine"),
        "high",
        "Severe immunosuppression",
        "Allopurinol inhibits the breakdown of azathioprine and 6-MP, potentially causing "
        "life-threatening bone marrow suppression.",
    ),
    InteractionEntry(
        _p(r"thiazide|hydrochlorothiazide|chlorthalidone"),
        _p(r"lithium"),
        "high",
        "Lithium toxicity",
        "Thiazide diuretics decrease lithium clearance, increasing the risk of lithium toxicity. "
        "Requires close monitoring.",
    ),
    InteractionEntry(
        _p(r"metformin"),
        _p(r"prednisone|prednisolone|dexamethasone|methylprednisolone"),
        "moderate",
        "Reduced blood sugar control",
        "Corticosteroids raise blood sugar, counteracting metformin's glucose-lowering effect. "
        "Blood sugar monitoring should be increased.",
    ),
    InteractionEntry(
        _p(r"levothyroxine|synthroid"),
        _p(r"calcium|iron|antacid|omeprazole|sucralfate"),
        "moderate",
        "Reduced thyroid medication absorption",
        "These medications can reduce levothyroxine absorption when taken at the same time of day.",
    ),
    InteractionEntry(
        _p(r"beta.?blocker|metoprolol|atenolol|propranolol|carvedilol"),
        _p(r"verapamil|diltiazem"),
        "moderate",
        "Excessive heart rate lowering",
        "Both drugs slow heart rate. Together, they can cause a dangerously slow pulse "
        "(bradycardia) or heart block.",
    ),
    InteractionEntry(
        _p(r"amlodipine|nifedipine"),
        _p(r"simvastatin"),
        "moderate",
        "Increased simvastatin levels",
        "Amlodipine increases simvastatin blood levels, which raises the risk of muscle side effects.",
    ),
    InteractionEntry(
        _p(r"ciprofloxacin|levofloxacin"),
        _p(r"antacid|calcium|iron|magnesium|zinc"),
        "moderate",
        "Reduced antibiotic absorption",
        "Metal-containing products bind fluoroquinolone antibiotics in the gut and reduce absorption.",
    ),
    InteractionEntry(
        _p(r"insulin"),
        _p(r"beta.?blocker|metoprolol|atenolol|propranolol"),
        "moderate",
        "Masked hypoglycemia symptoms",
        "Beta-blockers can mask the symptoms of low blood sugar (tremor, rapid heartbeat), making "
        "hypoglycemia harder to detect.",
    ),
    InteractionEntry(
        _p(r"ssri|sertraline|fluoxetine|paroxetine|citalopram"),
        _p(r"nsaid|ibuprofen|naproxen|aspirin"),
        "moderate",
        "Increased GI bleeding risk",
        "SSRIs reduce platelet function, and NSAIDs irritate the GI tract. Together, they increase "
        "the risk of gastrointestinal bleeding.",
    ),
]

_SEVERITY_ORDER = {"critical": 0, "high": 1, "moderate": 2, "low": 3}


def _match(entry: InteractionEntry, a: MergedMedication, b: MergedMedication):
    """Return the pair oriented to the table entry, or None."""
    name_a, name_b = normalize_name(a.name), normalize_name(b.name)
    if entry.drug_a.search(name_a) and entry.drug_b.search(name_b):
        return a, b
    if entry.drug_a.search(name_b) and entry.drug_b.search(name_a):
        return b, a
    return None


def _sources(med: MergedMedication) -> list:
    return list(med.all_sources) or [med.source]


def detect_drug_interactions(
    medications: list[MergedMedication],
    policy: RulePolicy = DEFAULT_POLICY,
) -> list[DrugInteraction]:
    """Pairwise interaction scan, most severe first.

    The same unordered pair is reported at most once per effect regardless
    of which order the medications appear in.
    """
    active = [m for m in medications if is_active_medication(m, policy.active_medication_statuses)]

    found: dict[tuple, tuple[InteractionEntry, MergedMedication, MergedMedication]] = {}
    for i, first in enumerate(active):
        for second in active[i + 1:]:
            for entry in INTERACTION_TABLE:
                pair = _match(entry, first, second)
                if pair is None:
                    continue
                names = tuple(sorted((normalize_name(first.name), normalize_name(second.name))))
                key = (names, entry.effect)
                if key not in found:
                    found[key] = (entry, *pair)

    ordered = sorted(
        found.items(),
        key=lambda item: (_SEVERITY_ORDER.get(item[1][0].severity, 4), item[0]),
    )

    interactions: list[DrugInteraction] = []
    for n, (_, (entry, med_a, med_b)) in enumerate(ordered, start=1):
        interactions.append(DrugInteraction(
            id=f"ddi-{n}",
            drug_a=med_a.name,
            drug_b=med_b.name,
            severity=entry.severity,
            description=entry.description,
            effect=entry.effect,
            data_source=DATA_SOURCE,
            drug_a_sources=_sources(med_a),
            drug_b_sources=_sources(med_b),
        ))
    return interactions
