"""Patient-facing alerts for reconciliation conflicts.

The merge layer detects the conflicts; this module only renders each one
through a per-type template. It never invents a conflict and never drops one.
"""

from dataclasses import dataclass
from typing import Callable

from smarthealth.models.insights import SourceConflictAlert, SourceValue
from smarthealth.models.merged import Conflict, ConflictResource


def _first_display(c: Conflict, default: str) -> str:
    return c.resources[0].display if c.resources and c.resources[0].display else default


def _find(c: Conflict, resource_type: str) -> ConflictResource | None:
    for res in c.resources:
        if res.resource_type == resource_type:
            return res
    return None


def _values_text(c: Conflict) -> str:
    parts = [f"{r.source.system_name or 'one record'} lists {r.value}" for r in c.resources if r.value]
    if not parts:
        return ""
    return " " + "; ".join(parts) + "."


@dataclass(frozen=True)
class ConflictTemplate:
    title: Callable[[Conflict], str]
    explanation: Callable[[Conflict], str]
    action: Callable[[Conflict], str]


def _dose_explanation(c: Conflict) -> str:
    drug = _first_display(c, "A medication")
    systems = f"{c.source_a.system_name} and {c.source_b.system_name}"
    return (
        f"{drug} appears with different dosage instructions in {systems}.{_values_text(c)} "
        "This could mean your doctors prescribed different amounts, or one record may be outdated."
    )


def _allergy_title(c: Conflict) -> str:
    allergy = _find(c, "Allergy")
    med = _find(c, "Medication")
    return (
        f"Allergy Alert: {allergy.display if allergy else 'Allergy'} "
        f"vs {med.display if med else 'Medication'}"
    )


def _allergy_explanation(c: Conflict) -> str:
    allergy = _find(c, "Allergy")
    med = _find(c, "Medication")
    allergy_system = allergy.source.system_name if allergy and allergy.source.system_name else "One provider"
    med_system = med.source.system_name if med and med.source.system_name else "another provider"
    substance = allergy.display if allergy else "a substance"
    drug = med.display if med else "a medication"
    return (
        f"{allergy_system} has an allergy to {substance} on file, but {med_system} prescribed {drug} "
        "which may be related. This could be a safety concern that needs prompt attention."
    )


def _crossref_explanation(c: Conflict) -> str:
    item = c.resources[0] if c.resources else None
    present = item.source.system_name if item and item.source.system_name else c.source_a.system_name
    other = c.source_b.system_name if present == c.source_a.system_name else c.source_a.system_name
    display = item.display if item and item.display else "This record"
    return (
        f"{display} appears in {present} but is not in {other}. "
        f"This means {other} may not know about it when making treatment decisions."
    )


CONFLICT_TEMPLATES: dict[str, ConflictTemplate] = {
    "dose-mismatch": ConflictTemplate(
        title=lambda c: f"Different Doses: {_first_display(c, 'A medication')}",
        explanation=_dose_explanation,
        action=lambda _: "Bring this to your next appointment and ask your provider to confirm the correct dose.",
    ),
    "allergy-prescription": ConflictTemplate(
        title=_allergy_title,
        explanation=_allergy_explanation,
        action=lambda _: "Contact your provider or pharmacist as soon as possible to verify this is safe for you.",
    ),
    "missing-crossref": ConflictTemplate(
        title=lambda c: f"Missing From Other System: {_first_display(c, 'A record')}",
        explanation=_crossref_explanation,
        action=lambda _: "Mention this to your provider so it can be added to all your records.",
    ),
    "contradictory-condition": ConflictTemplate(
        title=lambda c: f"Condition Status Conflict: {_first_display(c, 'A condition')}",
        explanation=lambda c: (
            f"{_first_display(c, 'A condition')} is recorded as active by {c.source_a.system_name} "
            f"but may have a different status in {c.source_b.system_name}.{_values_text(c)} "
            "Your providers may have different assessments of this condition."
        ),
        action=lambda _: "Ask your provider to review and update the status of this condition.",
    ),
    "allergy-gap": ConflictTemplate(
        title=lambda _: "Missing Allergy Records",
        explanation=lambda c: (
            f"{c.source_a.system_name} has allergy information on file, but {c.source_b.system_name} "
            f"has no allergy records. Providers using {c.source_b.system_name} may not know about "
            "your allergies."
        ),
        action=lambda _: (
            "At your next visit, ask the provider to update your allergy list. This is important for your safety."
        ),
    ),
}

GENERIC_TEMPLATE = ConflictTemplate(
    title=lambda c: f"Records Disagree: {_first_display(c, 'A record')}",
    explanation=lambda c: (
        f"{c.source_a.system_name or 'One system'} and {c.source_b.system_name or 'another system'} "
        f"have different information about {_first_display(c, 'part of your record')}.{_values_text(c)}"
        + (f" {c.description}" if c.description else "")
    ),
    action=lambda _: "Ask your provider which record is correct so it can be updated everywhere.",
)


def generate_source_conflict_alerts(conflicts: list[Conflict]) -> list[SourceConflictAlert]:
    """One alert per conflict, in input order."""
    alerts: list[SourceConflictAlert] = []
    for conflict in conflicts:
        template = CONFLICT_TEMPLATES.get(conflict.type, GENERIC_TEMPLATE)
        alerts.append(SourceConflictAlert(
            conflict_id=conflict.id,
            conflict_type=conflict.type,
            severity=conflict.severity,
            title=template.title(conflict),
            explanation=template.explanation(conflict),
            action_item=template.action(conflict),
            sources=[conflict.source_a, conflict.source_b],
            source_values=[
                SourceValue(system_name=r.source.system_name, display=r.display, value=r.value)
                for r in conflict.resources
            ],
        ))
    return alerts
