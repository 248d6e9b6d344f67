from __future__ import annotations

import logging
from typing import Optional

from stageflow.schemas import (
    ConfigurationStatus,
    ConnectionTestResult,
    FieldMapping,
    FieldMappingCreate,
    FieldMappingUpdate,
    ImportConfiguration,
    ImportConfigurationUpdate,
    IssueSeverity,
    JoinedTableDefinition,
    Relationship,
    SourceField,
    SourceSchema,
    Stage,
    StageCreate,
    StageUpdate,
    ValidationIssue,
)
from stageflow.services.errors import ConfigurationEditError, MappingError, RecordNotFoundError
from stageflow.services.field_mapping import FieldMappingEngine
from stageflow.services.schema_catalog import SchemaCatalog
from stageflow.services.target_entities import get_target_entity

logger = logging.getLogger(__name__)


def touch(config: ImportConfiguration) -> None:
    config.status = ConfigurationStatus.DRAFT


def _cascade_warning(code: str, message: str, stage_ids: list[str]) -> ValidationIssue:
    return ValidationIssue(severity=IssueSeverity.WARNING, code=code, message=message, stage_ids=stage_ids)


def _require_stage(config: ImportConfiguration, stage_id: str) -> Stage:
    stage = config.get_stage(stage_id)
    if stage is None:
        raise RecordNotFoundError(f"Stage '{stage_id}' not found")
    return stage


def _replace_stage(config: ImportConfiguration, updated: Stage) -> None:
    config.stages = [updated if stage.id == updated.id else stage for stage in config.stages]


def update_configuration(config: ImportConfiguration, payload: ImportConfigurationUpdate) -> ImportConfiguration:
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and payload.name is not None:
        config.name = payload.name
    if "description" in changes:
        config.description = payload.description
    if "is_active" in changes and payload.is_active is not None:
        config.is_active = payload.is_active
    if payload.connection_config is not None:
        update_connection_config(config, payload.connection_config)
    touch(config)
    return config


def update_connection_config(config: ImportConfiguration, connection_config) -> None:
    if connection_config == config.connection_config:
        return
    if connection_config.source_type != config.source_type:
        # A different kind of source invalidates the cached catalog.
        config.source_schema = None
        config.source_type = connection_config.source_type
    config.connection_config = connection_config
    config.connection_test_passed = False
    touch(config)


def record_connection_test(config: ImportConfiguration, result: ConnectionTestResult) -> None:
    config.connection_test_passed = result.success


def record_schema(config: ImportConfiguration, schema: SourceSchema) -> None:
    config.source_schema = schema
    logger.info("Recorded source schema with tables: %s", ", ".join(SchemaCatalog(schema).table_names()))
    touch(config)


def next_order(config: ImportConfiguration) -> int:
    return max((stage.order for stage in config.stages), default=0) + 1


def add_stage(config: ImportConfiguration, payload: StageCreate) -> Stage:
    values = {
        "order": payload.order or next_order(config),
        "name": payload.name,
        "description": payload.description,
        "source_table": payload.source_table,
        "target_entity": payload.target_entity,
        "field_overrides": payload.field_overrides,
        "target_defaults": payload.target_defaults,
        "depends_on_stages": payload.depends_on_stages,
        "cross_stage_mapping": payload.cross_stage_mapping,
        "is_enabled": payload.is_enabled,
    }
    if payload.id:
        values["id"] = payload.id
    stage = Stage(**values)
    if config.get_stage(stage.id) is not None:
        raise ConfigurationEditError(f"Stage id '{stage.id}' already exists.")
    config.stages.append(stage)
    touch(config)
    return stage


def update_stage(config: ImportConfiguration, stage_id: str, payload: StageUpdate) -> Stage:
    stage = _require_stage(config, stage_id)
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key == "description"
    }
    data = stage.model_dump()
    data.update(changes)

    rebinding = (
        "source_table" in changes and (changes["source_table"] or "").strip() != stage.source_table
    ) or ("target_entity" in changes and changes["target_entity"] != stage.target_entity)
    if rebinding and stage.field_mappings:
        logger.info("Clearing %s field mappings of stage %s after rebinding", len(stage.field_mappings), stage_id)
        data["field_mappings"] = []

    updated = Stage.model_validate(data)
    _replace_stage(config, updated)
    touch(config)
    return updated


def delete_stage(config: ImportConfiguration, stage_id: str) -> list[ValidationIssue]:
    """Remove a stage and everything that points at it.

    Relationships touching the stage, dependency edges on it and cross-stage
    mappings drawing from it are removed too; one warning is returned per removal.
    """

    removed = _require_stage(config, stage_id)
    warnings: list[ValidationIssue] = []
    config.stages = [stage for stage in config.stages if stage.id != stage_id]

    kept_relationships: list[Relationship] = []
    for relationship in config.relationships:
        if stage_id in (relationship.from_stage_id, relationship.to_stage_id):
            warnings.append(
                _cascade_warning(
                    "relationship_removed",
                    f"Relationship '{relationship.id}' was removed with stage '{removed.name}'.",
                    [relationship.from_stage_id, relationship.to_stage_id],
                )
            )
        else:
            kept_relationships.append(relationship)
    config.relationships = kept_relationships

    updated_stages: list[Stage] = []
    for stage in config.stages:
        changes: dict[str, object] = {}
        if stage_id in stage.depends_on_stages:
            changes["depends_on_stages"] = [item for item in stage.depends_on_stages if item != stage_id]
            warnings.append(
                _cascade_warning(
                    "dependency_removed",
                    f"Stage '{stage.name}' no longer depends on removed stage '{removed.name}'.",
                    [stage.id],
                )
            )
        dangling = [target for target, ref in stage.cross_stage_mapping.items() if ref.stage_id == stage_id]
        if dangling:
            changes["cross_stage_mapping"] = {
                target: ref for target, ref in stage.cross_stage_mapping.items() if target not in dangling
            }
            warnings.append(
                _cascade_warning(
                    "cross_stage_mapping_removed",
                    f"Stage '{stage.name}' lost cross-stage mappings for {', '.join(sorted(dangling))} "
                    f"drawn from removed stage '{removed.name}'.",
                    [stage.id],
                )
            )
        updated_stages.append(stage.model_copy(update=changes) if changes else stage)
    config.stages = updated_stages

    if warnings:
        logger.info("Deleting stage %s cascaded %s removals", stage_id, len(warnings))
    touch(config)
    return warnings


def add_relationship(config: ImportConfiguration, relationship: Relationship) -> Relationship:
    for stage_id in (relationship.from_stage_id, relationship.to_stage_id):
        if config.get_stage(stage_id) is None:
            raise ConfigurationEditError(f"Relationship refers to unknown stage '{stage_id}'.")
    if any(existing.id == relationship.id for existing in config.relationships):
        raise ConfigurationEditError(f"Relationship id '{relationship.id}' already exists.")
    config.relationships.append(relationship)
    touch(config)
    return relationship


def delete_relationship(config: ImportConfiguration, relationship_id: str) -> Relationship:
    for relationship in config.relationships:
        if relationship.id == relationship_id:
            config.relationships = [item for item in config.relationships if item.id != relationship_id]
            touch(config)
            return relationship
    raise RecordNotFoundError(f"Relationship '{relationship_id}' not found")


def add_joined_table(config: ImportConfiguration, definition: JoinedTableDefinition) -> JoinedTableDefinition:
    for existing in config.joined_tables:
        if existing.id == definition.id:
            raise ConfigurationEditError(f"Joined table id '{definition.id}' already exists.")
        if existing.name == definition.name:
            raise ConfigurationEditError(f"A joined table named '{definition.name}' already exists.")
    if SchemaCatalog(config.source_schema).is_physical(definition.name):
        raise ConfigurationEditError(f"'{definition.name}' is already the name of a source table.")
    config.joined_tables.append(definition)
    touch(config)
    return definition


def delete_joined_table(config: ImportConfiguration, joined_table_id: str) -> list[ValidationIssue]:
    definition = config.get_joined_table(joined_table_id)
    if definition is None:
        raise RecordNotFoundError(f"Joined table '{joined_table_id}' not found")

    config.joined_tables = [item for item in config.joined_tables if item.id != definition.id]
    warnings: list[ValidationIssue] = []
    updated_stages: list[Stage] = []
    for stage in config.stages:
        if stage.source_table == definition.name:
            warnings.append(
                _cascade_warning(
                    "stage_unbound",
                    f"Stage '{stage.name}' was bound to removed joined table '{definition.name}'.",
                    [stage.id],
                )
            )
            stage = stage.model_copy(update={"source_table": "", "field_mappings": []})
        updated_stages.append(stage)
    config.stages = updated_stages
    touch(config)
    return warnings


def _stage_mapping_engine(config: ImportConfiguration, stage: Stage) -> FieldMappingEngine:
    entity = get_target_entity(stage.target_entity)
    if entity is None:
        raise MappingError(f"Target entity '{stage.target_entity}' is not available for import.")
    if config.source_schema is None:
        raise MappingError("Discover the source schema before mapping fields.")
    fields: Optional[list[SourceField]] = SchemaCatalog(config.source_schema).resolve_fields(
        stage.source_table, config.joined_tables
    )
    if fields is None:
        raise MappingError(f"Source table '{stage.source_table}' is not part of the discovered schema.")
    return FieldMappingEngine.for_stage(stage, fields, entity)


def add_field_mapping(config: ImportConfiguration, stage_id: str, payload: FieldMappingCreate) -> FieldMapping:
    stage = _require_stage(config, stage_id)
    engine = _stage_mapping_engine(config, stage)
    rules = {
        "transform": payload.transform,
        "default_value": payload.default_value,
        "required": payload.required,
        "validation": payload.validation,
    }
    add = engine.replace_mapping if payload.replace else engine.add_mapping
    mapping = add(payload.source_field, payload.target_field, acknowledged=payload.acknowledged, **rules)
    _replace_stage(config, stage.model_copy(update={"field_mappings": engine.mappings}))
    touch(config)
    return mapping


def auto_map_stage(config: ImportConfiguration, stage_id: str) -> list[FieldMapping]:
    stage = _require_stage(config, stage_id)
    engine = _stage_mapping_engine(config, stage)
    created = engine.auto_map()
    if created:
        _replace_stage(config, stage.model_copy(update={"field_mappings": engine.mappings}))
        touch(config)
    return created


def _require_mapping(stage: Stage, mapping_id: str) -> FieldMapping:
    for mapping in stage.field_mappings:
        if mapping.id == mapping_id:
            return mapping
    raise RecordNotFoundError(f"Mapping '{mapping_id}' not found")


def configure_field_mapping(
    config: ImportConfiguration, stage_id: str, mapping_id: str, payload: FieldMappingUpdate
) -> FieldMapping:
    stage = _require_stage(config, stage_id)
    _require_mapping(stage, mapping_id)
    engine = _stage_mapping_engine(config, stage)
    changes = {name: getattr(payload, name) for name in payload.model_fields_set}
    if changes.get("required", False) is None:
        del changes["required"]
    if changes.get("validation", []) is None:
        changes["validation"] = []
    mapping = engine.configure_mapping(mapping_id, **changes)
    _replace_stage(config, stage.model_copy(update={"field_mappings": engine.mappings}))
    touch(config)
    return mapping


def acknowledge_field_mapping(config: ImportConfiguration, stage_id: str, mapping_id: str) -> FieldMapping:
    stage = _require_stage(config, stage_id)
    _require_mapping(stage, mapping_id)
    engine = FieldMappingEngine.for_stage(stage, (), None)
    mapping = engine.acknowledge(mapping_id)
    _replace_stage(config, stage.model_copy(update={"field_mappings": engine.mappings}))
    touch(config)
    return mapping


def remove_field_mapping(config: ImportConfiguration, stage_id: str, mapping_id: str) -> FieldMapping:
    stage = _require_stage(config, stage_id)
    _require_mapping(stage, mapping_id)
    engine = FieldMappingEngine.for_stage(stage, (), None)
    removed = engine.remove_mapping(mapping_id)
    _replace_stage(config, stage.model_copy(update={"field_mappings": engine.mappings}))
    touch(config)
    return removed
