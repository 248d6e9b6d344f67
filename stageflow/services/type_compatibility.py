from __future__ import annotations

from typing import Optional

from stageflow.schemas import TypeCompatibility

# Source type -> target types it can be converted into.
COMPATIBLE_TARGETS: dict[str, frozenset[str]] = {
    "string": frozenset({"datetime", "enum"}),
    "number": frozenset({"string"}),
    "boolean": frozenset({"string"}),
    "datetime": frozenset({"string"}),
    "date": frozenset({"date", "datetime", "string"}),
}


def _normalize(type_name: Optional[str]) -> str:
    return (type_name or "").strip().lower()


def classify(source_type: Optional[str], target_type: Optional[str]) -> TypeCompatibility:
    """Classify how safely values of ``source_type`` land in a ``target_type`` field.

    The result is advisory: an incompatible pair still maps once it is acknowledged.
    """

    source = _normalize(source_type)
    target = _normalize(target_type)
    if not source or not target:
        return TypeCompatibility.INCOMPATIBLE
    if source == target:
        return TypeCompatibility.EXACT
    if target in COMPATIBLE_TARGETS.get(source, frozenset()):
        return TypeCompatibility.COMPATIBLE
    return TypeCompatibility.INCOMPATIBLE


def is_mappable(source_type: Optional[str], target_type: Optional[str]) -> bool:
    return classify(source_type, target_type) != TypeCompatibility.INCOMPATIBLE
