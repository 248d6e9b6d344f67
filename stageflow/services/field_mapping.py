from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Mapping, Optional

from stageflow.schemas import (
    FieldMapping,
    FieldOverride,
    FieldValidationRule,
    SourceField,
    Stage,
    TargetEntity,
    TargetField,
    TransformRule,
    TransformType,
    TypeCompatibility,
)
from stageflow.services.errors import MappingError
from stageflow.services.type_compatibility import classify

logger = logging.getLogger(__name__)

_NAME_NOISE = re.compile(r"[\s_\-]+")


def normalize_field_name(name: str) -> str:
    return _NAME_NOISE.sub("", (name or "").strip()).lower()


class FieldMappingEngine:
    """Maintains the source -> target field mappings of a single stage.

    Every target field is fed by at most one source field. Compatible type pairs
    get a ``convert`` transform unless another rule is given; incompatible pairs
    are accepted but reported until the operator acknowledges them. Overrides are
    keyed by source field name, stage-level defaults by target field name.
    """

    def __init__(
        self,
        source_fields: Iterable[SourceField],
        target_fields: Iterable[TargetField],
        mappings: Iterable[FieldMapping] = (),
        overrides: Optional[Mapping[str, FieldOverride]] = None,
        cross_stage_targets: Iterable[str] = (),
        target_defaults: Optional[Mapping[str, Any]] = None,
    ):
        self._source_fields = {field.name: field for field in source_fields}
        self._target_fields = {field.name: field for field in target_fields}
        self._mappings: list[FieldMapping] = [mapping.model_copy() for mapping in mappings]
        self._overrides = dict(overrides or {})
        self._cross_stage_targets = set(cross_stage_targets)
        self._target_defaults = dict(target_defaults or {})

    @classmethod
    def for_stage(
        cls,
        stage: Stage,
        source_fields: Iterable[SourceField],
        target_entity: Optional[TargetEntity],
    ) -> "FieldMappingEngine":
        return cls(
            source_fields,
            target_entity.fields if target_entity else (),
            mappings=stage.field_mappings,
            overrides=stage.field_overrides,
            cross_stage_targets=stage.cross_stage_mapping.keys(),
            target_defaults=stage.target_defaults,
        )

    @property
    def mappings(self) -> list[FieldMapping]:
        return list(self._mappings)

    def effective_source_type(self, source_field: str) -> Optional[str]:
        override = self._overrides.get(source_field)
        if override and override.data_type:
            return override.data_type
        field = self._source_fields.get(source_field)
        return field.type if field else None

    def mapping_for_target(self, target_field: str) -> Optional[FieldMapping]:
        for mapping in self._mappings:
            if mapping.target_field == target_field:
                return mapping
        return None

    def add_mapping(
        self,
        source_field: str,
        target_field: str,
        acknowledged: bool = False,
        transform: Optional[TransformRule] = None,
        default_value: Any = None,
        required: bool = False,
        validation: Iterable[FieldValidationRule] = (),
    ) -> FieldMapping:
        if source_field not in self._source_fields:
            raise MappingError(f"Source field '{source_field}' does not exist.")
        target = self._target_fields.get(target_field)
        if target is None:
            raise MappingError(f"Target field '{target_field}' does not exist.")
        override = self._overrides.get(source_field)
        if override and override.skip_field:
            raise MappingError(f"Source field '{source_field}' is skipped and cannot be mapped.")
        if target_field in self._cross_stage_targets:
            raise MappingError(f"Target field '{target_field}' is already fed by a cross-stage mapping.")
        if self.mapping_for_target(target_field) is not None:
            raise MappingError(
                f"Target field '{target_field}' is already mapped. Replace the existing mapping instead."
            )
        self._check_transform(transform)

        source_type = self.effective_source_type(source_field)
        compatibility = classify(source_type, target.type)
        if transform is None and compatibility == TypeCompatibility.COMPATIBLE:
            transform = TransformRule(type=TransformType.CONVERT)
        mapping = FieldMapping(
            source_field=source_field,
            target_field=target_field,
            source_type=source_type,
            target_type=target.type,
            compatibility=compatibility,
            transform=transform,
            default_value=default_value,
            required=required or target.required,
            validation=list(validation),
            acknowledged=acknowledged,
        )
        self._mappings.append(mapping)
        if compatibility == TypeCompatibility.INCOMPATIBLE and not acknowledged:
            logger.info(
                "Mapping %s (%s) -> %s (%s) is incompatible and needs acknowledgement",
                source_field,
                source_type,
                target_field,
                target.type,
            )
        return mapping

    def replace_mapping(self, source_field: str, target_field: str, acknowledged: bool = False, **rules) -> FieldMapping:
        existing = self.mapping_for_target(target_field)
        if existing is not None:
            self._mappings.remove(existing)
        try:
            return self.add_mapping(source_field, target_field, acknowledged=acknowledged, **rules)
        except MappingError:
            if existing is not None:
                self._mappings.append(existing)
            raise

    def configure_mapping(self, mapping_id: str, **changes: Any) -> FieldMapping:
        """Replace the transform, default, required flag or validation rules of a mapping."""

        if "transform" in changes:
            self._check_transform(changes["transform"])
        for index, mapping in enumerate(self._mappings):
            if mapping.id == mapping_id:
                updated = mapping.model_copy(update=changes)
                self._mappings[index] = updated
                return updated
        raise MappingError(f"Mapping '{mapping_id}' does not exist.")

    def remove_mapping(self, mapping_id: str) -> FieldMapping:
        for mapping in self._mappings:
            if mapping.id == mapping_id:
                self._mappings.remove(mapping)
                return mapping
        raise MappingError(f"Mapping '{mapping_id}' does not exist.")

    def acknowledge(self, mapping_id: str) -> FieldMapping:
        for index, mapping in enumerate(self._mappings):
            if mapping.id == mapping_id:
                updated = mapping.model_copy(update={"acknowledged": True})
                self._mappings[index] = updated
                return updated
        raise MappingError(f"Mapping '{mapping_id}' does not exist.")

    def required_missing(self) -> list[str]:
        mapped = {mapping.target_field for mapping in self._mappings}
        missing: list[str] = []
        for name, field in self._target_fields.items():
            if not field.required or name in mapped or name in self._cross_stage_targets:
                continue
            if self._target_defaults.get(name) is not None:
                continue
            missing.append(name)
        return missing

    def _check_transform(self, transform: Optional[TransformRule]) -> None:
        if transform is None or transform.type != TransformType.CONCATENATE:
            return
        unknown = [name for name in transform.source_fields if name not in self._source_fields]
        if unknown:
            raise MappingError(f"Concatenate transform refers to unknown source fields: {', '.join(unknown)}.")

    def unacknowledged_incompatible(self) -> list[FieldMapping]:
        return unacknowledged_incompatible_mappings(self._mappings)

    def auto_map(self) -> list[FieldMapping]:
        """Map unmapped target fields to same-named source fields whose types fit."""

        candidates: dict[str, str] = {}
        for name in self._source_fields:
            override = self._overrides.get(name)
            if override and override.skip_field:
                continue
            alias = override.rename_field if override and override.rename_field else name
            candidates.setdefault(normalize_field_name(alias), name)

        created: list[FieldMapping] = []
        for target_name, target in self._target_fields.items():
            if target_name in self._cross_stage_targets or self.mapping_for_target(target_name):
                continue
            source_name = candidates.get(normalize_field_name(target_name))
            if source_name is None:
                continue
            if classify(self.effective_source_type(source_name), target.type) == TypeCompatibility.INCOMPATIBLE:
                continue
            created.append(self.add_mapping(source_name, target_name))
        return created


def _mapping_compatibility(mapping: FieldMapping) -> Optional[TypeCompatibility]:
    if mapping.compatibility is not None:
        return mapping.compatibility
    if mapping.source_type and mapping.target_type:
        return classify(mapping.source_type, mapping.target_type)
    return None


def unacknowledged_incompatible_mappings(mappings: Iterable[FieldMapping]) -> list[FieldMapping]:
    return [
        mapping
        for mapping in mappings
        if _mapping_compatibility(mapping) == TypeCompatibility.INCOMPATIBLE and not mapping.acknowledged
    ]
