from __future__ import annotations

import uuid
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from stageflow import models
from stageflow.schemas import (
    ImportConfiguration,
    ImportConfigurationCreate,
    JoinedTableDefinition,
    Relationship,
    Stage,
)
from stageflow.services.errors import ConfigurationEditError

RowT = TypeVar("RowT")
ItemT = TypeVar("ItemT")


def to_record(config: ImportConfiguration) -> dict[str, Any]:
    """Serialize a configuration into a plain JSON-compatible record."""

    return config.model_dump(mode="json")


def from_record(record: Mapping[str, Any]) -> ImportConfiguration:
    return ImportConfiguration.model_validate(dict(record))


def get_configuration_record(db: Session, configuration_id: UUID) -> Optional[models.ImportConfiguration]:
    return db.get(models.ImportConfiguration, configuration_id)


def list_configuration_records(db: Session) -> list[models.ImportConfiguration]:
    return db.query(models.ImportConfiguration).order_by(models.ImportConfiguration.created_at).all()


def new_configuration(payload: ImportConfigurationCreate) -> ImportConfiguration:
    """Build a fresh configuration, refusing child ids that would collide on storage."""

    for label, items in (
        ("stage", payload.stages),
        ("relationship", payload.relationships),
        ("joined table", payload.joined_tables),
    ):
        duplicates = _duplicate_ids(item.id for item in items)
        if duplicates:
            raise ConfigurationEditError(f"Duplicate {label} ids: {', '.join(duplicates)}.")
    return ImportConfiguration(**payload.model_dump(), id=uuid.uuid4())


def _duplicate_ids(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for value in ids:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates


def load_configuration(record: models.ImportConfiguration) -> ImportConfiguration:
    return ImportConfiguration(
        id=record.id,
        name=record.name,
        description=record.description,
        source_type=record.source_type,
        connection_config=record.connection_config,
        source_schema=record.source_schema,
        status=record.status,
        is_active=record.is_active,
        connection_test_passed=record.connection_test_passed,
        stages=[_stage_from_row(row) for row in record.stages],
        relationships=[_relationship_from_row(row) for row in record.relationships],
        joined_tables=[_joined_table_from_row(row) for row in record.joined_tables],
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def store_configuration(
    db: Session,
    config: ImportConfiguration,
    record: Optional[models.ImportConfiguration] = None,
) -> models.ImportConfiguration:
    """Write ``config`` onto ``record`` (or a new row) and flush the session."""

    if record is None:
        record = models.ImportConfiguration(id=config.id or uuid.uuid4())
        db.add(record)

    record.name = config.name
    record.description = config.description
    record.source_type = config.source_type.value
    record.connection_config = config.connection_config.model_dump(mode="json")
    record.source_schema = config.source_schema.model_dump(mode="json") if config.source_schema else None
    record.status = config.status.value
    record.is_active = config.is_active
    record.connection_test_passed = config.connection_test_passed

    record.stages = _sync_rows(
        record.stages,
        lambda row: row.stage_key,
        config.stages,
        lambda stage: stage.id,
        models.ImportStage,
        _apply_stage,
    )
    record.relationships = _sync_rows(
        record.relationships,
        lambda row: row.relationship_key,
        config.relationships,
        lambda relationship: relationship.id,
        models.ImportStageRelationship,
        _apply_relationship,
    )
    record.joined_tables = _sync_rows(
        record.joined_tables,
        lambda row: row.joined_table_key,
        config.joined_tables,
        lambda definition: definition.id,
        models.ImportJoinedTable,
        _apply_joined_table,
    )
    db.flush()
    return record


def _sync_rows(
    existing: Iterable[RowT],
    row_key: Callable[[RowT], str],
    items: Iterable[ItemT],
    item_key: Callable[[ItemT], str],
    factory: Callable[[], RowT],
    apply: Callable[[RowT, ItemT, int], None],
) -> list[RowT]:
    # Rows are reused by key so unique constraints never see a delete and insert of the same key.
    by_key = {row_key(row): row for row in existing}
    rows: list[RowT] = []
    for position, item in enumerate(items):
        row = by_key.pop(item_key(item), None)
        if row is None:
            row = factory()
        apply(row, item, position)
        rows.append(row)
    return rows


def _apply_stage(row: models.ImportStage, stage: Stage, position: int) -> None:
    payload = stage.model_dump(mode="json")
    row.stage_key = stage.id
    row.position = position
    row.stage_order = stage.order
    row.name = stage.name
    row.description = stage.description
    row.source_table = stage.source_table
    row.target_entity = stage.target_entity
    row.field_mappings = payload["field_mappings"]
    row.field_overrides = payload["field_overrides"]
    row.target_defaults = payload["target_defaults"]
    row.depends_on_stages = payload["depends_on_stages"]
    row.cross_stage_mapping = payload["cross_stage_mapping"]
    row.is_enabled = stage.is_enabled


def _stage_from_row(row: models.ImportStage) -> Stage:
    return Stage(
        id=row.stage_key,
        order=row.stage_order,
        name=row.name,
        description=row.description,
        source_table=row.source_table,
        target_entity=row.target_entity,
        field_mappings=row.field_mappings or [],
        field_overrides=row.field_overrides or {},
        target_defaults=row.target_defaults or {},
        depends_on_stages=row.depends_on_stages or [],
        cross_stage_mapping=row.cross_stage_mapping or {},
        is_enabled=row.is_enabled,
    )


def _apply_relationship(row: models.ImportStageRelationship, relationship: Relationship, position: int) -> None:
    row.relationship_key = relationship.id
    row.position = position
    row.from_stage_key = relationship.from_stage_id
    row.to_stage_key = relationship.to_stage_id
    row.source_field = relationship.source_field
    row.target_field = relationship.target_field
    row.relation_type = relationship.relation_type.value
    row.join_type = relationship.join_type.value
    row.conditions = [condition.model_dump(mode="json") for condition in relationship.conditions]


def _relationship_from_row(row: models.ImportStageRelationship) -> Relationship:
    return Relationship(
        id=row.relationship_key,
        from_stage_id=row.from_stage_key,
        to_stage_id=row.to_stage_key,
        source_field=row.source_field,
        target_field=row.target_field,
        relation_type=row.relation_type,
        join_type=row.join_type,
        conditions=row.conditions or [],
    )


def _apply_joined_table(row: models.ImportJoinedTable, definition: JoinedTableDefinition, position: int) -> None:
    payload = definition.model_dump(mode="json")
    row.joined_table_key = definition.id
    row.position = position
    row.name = definition.name
    row.description = definition.description
    row.primary_table = definition.primary_table
    row.joins = payload["joins"]
    row.selected_fields = payload["selected_fields"]
    row.where_conditions = payload["where_conditions"]


def _joined_table_from_row(row: models.ImportJoinedTable) -> JoinedTableDefinition:
    return JoinedTableDefinition(
        id=row.joined_table_key,
        name=row.name,
        description=row.description,
        primary_table=row.primary_table,
        joins=row.joins or [],
        selected_fields=row.selected_fields or [],
        where_conditions=row.where_conditions or [],
    )
