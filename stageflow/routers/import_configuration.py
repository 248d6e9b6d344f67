from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stageflow import models
from stageflow.database import get_db
from stageflow.schemas import (
    ConnectionConfig,
    ConnectionTestResult,
    ExecutionPlan,
    FieldMapping,
    FieldMappingCreate,
    FieldMappingUpdate,
    ImportConfiguration,
    ImportConfigurationCreate,
    ImportConfigurationSummary,
    ImportConfigurationUpdate,
    JoinedTableDefinition,
    Relationship,
    SourceSchema,
    Stage,
    StageCreate,
    StageUpdate,
    ValidationIssue,
    ValidationReport,
)
from stageflow.services import configuration_editor as editor
from stageflow.services.configuration_store import (
    get_configuration_record,
    list_configuration_records,
    load_configuration,
    new_configuration,
    store_configuration,
)
from stageflow.services.errors import (
    CompileError,
    ConfigurationEditError,
    ConfigurationInvalidError,
    MappingError,
    RecordNotFoundError,
    SourceConnectionError,
)
from stageflow.services.plan_compiler import compile_configuration
from stageflow.services.schema_catalog import SchemaCatalog, check_source_connection
from stageflow.services.stage_graph import apply_validation, mark_saved, validate_configuration

router = APIRouter(prefix="/import", tags=["Import Configurations"])


def _get_record_or_404(configuration_id: UUID, db: Session) -> models.ImportConfiguration:
    record = get_configuration_record(db, configuration_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Import configuration not found")
    return record


def _get_configuration_or_404(
    configuration_id: UUID, db: Session
) -> tuple[models.ImportConfiguration, ImportConfiguration]:
    record = _get_record_or_404(configuration_id, db)
    return record, load_configuration(record)


def _persist(
    db: Session, config: ImportConfiguration, record: models.ImportConfiguration | None = None
) -> ImportConfiguration:
    try:
        record = store_configuration(db, config, record)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Configuration repeats an id that must be unique.",
        ) from exc
    db.refresh(record)
    return load_configuration(record)


@router.post("/test-connection", response_model=ConnectionTestResult)
def test_import_connection(payload: ConnectionConfig) -> ConnectionTestResult:
    return check_source_connection(payload)


@router.get("/configurations", response_model=list[ImportConfigurationSummary])
def list_import_configurations(db: Session = Depends(get_db)) -> list[ImportConfigurationSummary]:
    return list_configuration_records(db)


@router.post(
    "/configurations",
    response_model=ImportConfiguration,
    status_code=status.HTTP_201_CREATED,
)
def create_import_configuration(
    payload: ImportConfigurationCreate, db: Session = Depends(get_db)
) -> ImportConfiguration:
    try:
        config = new_configuration(payload)
    except (ConfigurationEditError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _persist(db, config)


@router.get("/configurations/{configuration_id}", response_model=ImportConfiguration)
def get_import_configuration(configuration_id: UUID, db: Session = Depends(get_db)) -> ImportConfiguration:
    _, config = _get_configuration_or_404(configuration_id, db)
    return config


@router.put("/configurations/{configuration_id}", response_model=ImportConfiguration)
def update_import_configuration(
    configuration_id: UUID,
    payload: ImportConfigurationUpdate,
    db: Session = Depends(get_db),
) -> ImportConfiguration:
    record, config = _get_configuration_or_404(configuration_id, db)
    editor.update_configuration(config, payload)
    return _persist(db, config, record)


@router.delete("/configurations/{configuration_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_import_configuration(configuration_id: UUID, db: Session = Depends(get_db)) -> None:
    record = _get_record_or_404(configuration_id, db)
    db.delete(record)
    db.commit()


@router.post("/configurations/{configuration_id}/test-connection", response_model=ConnectionTestResult)
def test_configuration_connection(
    configuration_id: UUID, db: Session = Depends(get_db)
) -> ConnectionTestResult:
    record, config = _get_configuration_or_404(configuration_id, db)
    result = check_source_connection(config.connection_config)
    editor.record_connection_test(config, result)
    _persist(db, config, record)
    return result


@router.post("/configurations/{configuration_id}/discover-schema", response_model=SourceSchema)
def discover_configuration_schema(configuration_id: UUID, db: Session = Depends(get_db)) -> SourceSchema:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        schema = SchemaCatalog.discover(config.connection_config).schema
    except SourceConnectionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    editor.record_schema(config, schema)
    _persist(db, config, record)
    return schema


@router.post(
    "/configurations/{configuration_id}/stages",
    response_model=Stage,
    status_code=status.HTTP_201_CREATED,
)
def create_stage(
    configuration_id: UUID,
    payload: StageCreate,
    db: Session = Depends(get_db),
) -> Stage:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        stage = editor.add_stage(config, payload)
    except (ConfigurationEditError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return stage


@router.put("/configurations/{configuration_id}/stages/{stage_id}", response_model=Stage)
def update_stage(
    configuration_id: UUID,
    stage_id: str,
    payload: StageUpdate,
    db: Session = Depends(get_db),
) -> Stage:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        stage = editor.update_stage(config, stage_id, payload)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return stage


@router.delete(
    "/configurations/{configuration_id}/stages/{stage_id}",
    response_model=list[ValidationIssue],
)
def delete_stage(
    configuration_id: UUID,
    stage_id: str,
    db: Session = Depends(get_db),
) -> list[ValidationIssue]:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        warnings = editor.delete_stage(config, stage_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _persist(db, config, record)
    return warnings


@router.post(
    "/configurations/{configuration_id}/relationships",
    response_model=Relationship,
    status_code=status.HTTP_201_CREATED,
)
def create_relationship(
    configuration_id: UUID,
    payload: Relationship,
    db: Session = Depends(get_db),
) -> Relationship:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        relationship = editor.add_relationship(config, payload)
    except ConfigurationEditError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return relationship


@router.delete(
    "/configurations/{configuration_id}/relationships/{relationship_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_relationship(
    configuration_id: UUID,
    relationship_id: str,
    db: Session = Depends(get_db),
) -> None:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        editor.delete_relationship(config, relationship_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _persist(db, config, record)


@router.post(
    "/configurations/{configuration_id}/joined-tables",
    response_model=JoinedTableDefinition,
    status_code=status.HTTP_201_CREATED,
)
def create_joined_table(
    configuration_id: UUID,
    payload: JoinedTableDefinition,
    db: Session = Depends(get_db),
) -> JoinedTableDefinition:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        definition = editor.add_joined_table(config, payload)
    except ConfigurationEditError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return definition


@router.delete(
    "/configurations/{configuration_id}/joined-tables/{joined_table_id}",
    response_model=list[ValidationIssue],
)
def delete_joined_table(
    configuration_id: UUID,
    joined_table_id: str,
    db: Session = Depends(get_db),
) -> list[ValidationIssue]:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        warnings = editor.delete_joined_table(config, joined_table_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _persist(db, config, record)
    return warnings


@router.post(
    "/configurations/{configuration_id}/stages/{stage_id}/mappings",
    response_model=FieldMapping,
    status_code=status.HTTP_201_CREATED,
)
def create_field_mapping(
    configuration_id: UUID,
    stage_id: str,
    payload: FieldMappingCreate,
    db: Session = Depends(get_db),
) -> FieldMapping:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        mapping = editor.add_field_mapping(config, stage_id, payload)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MappingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return mapping


@router.post(
    "/configurations/{configuration_id}/stages/{stage_id}/mappings/auto",
    response_model=list[FieldMapping],
)
def auto_map_stage_fields(
    configuration_id: UUID,
    stage_id: str,
    db: Session = Depends(get_db),
) -> list[FieldMapping]:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        created = editor.auto_map_stage(config, stage_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MappingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if created:
        _persist(db, config, record)
    return created


@router.put(
    "/configurations/{configuration_id}/stages/{stage_id}/mappings/{mapping_id}",
    response_model=FieldMapping,
)
def update_field_mapping(
    configuration_id: UUID,
    stage_id: str,
    mapping_id: str,
    payload: FieldMappingUpdate,
    db: Session = Depends(get_db),
) -> FieldMapping:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        mapping = editor.configure_field_mapping(config, stage_id, mapping_id, payload)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except MappingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    _persist(db, config, record)
    return mapping


@router.post(
    "/configurations/{configuration_id}/stages/{stage_id}/mappings/{mapping_id}/acknowledge",
    response_model=FieldMapping,
)
def acknowledge_field_mapping(
    configuration_id: UUID,
    stage_id: str,
    mapping_id: str,
    db: Session = Depends(get_db),
) -> FieldMapping:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        mapping = editor.acknowledge_field_mapping(config, stage_id, mapping_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _persist(db, config, record)
    return mapping


@router.delete(
    "/configurations/{configuration_id}/stages/{stage_id}/mappings/{mapping_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_field_mapping(
    configuration_id: UUID,
    stage_id: str,
    mapping_id: str,
    db: Session = Depends(get_db),
) -> None:
    record, config = _get_configuration_or_404(configuration_id, db)
    try:
        editor.remove_field_mapping(config, stage_id, mapping_id)
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    _persist(db, config, record)


@router.post("/configurations/{configuration_id}/validate", response_model=ValidationReport)
def validate_import_configuration(
    configuration_id: UUID, db: Session = Depends(get_db)
) -> ValidationReport:
    record, config = _get_configuration_or_404(configuration_id, db)
    report = validate_configuration(config, config.source_schema)
    apply_validation(config, report)
    _persist(db, config, record)
    return report


@router.post("/configurations/{configuration_id}/save", response_model=ImportConfiguration)
def save_import_configuration(configuration_id: UUID, db: Session = Depends(get_db)) -> ImportConfiguration:
    record, config = _get_configuration_or_404(configuration_id, db)
    report = validate_configuration(config, config.source_schema)
    try:
        mark_saved(config, report)
    except ConfigurationInvalidError as exc:
        _persist(db, config, record)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "report": exc.report.model_dump(mode="json")},
        ) from exc
    return _persist(db, config, record)


@router.get("/configurations/{configuration_id}/plan", response_model=ExecutionPlan)
def get_execution_plan(configuration_id: UUID, db: Session = Depends(get_db)) -> ExecutionPlan:
    _, config = _get_configuration_or_404(configuration_id, db)
    try:
        return compile_configuration(config)
    except CompileError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "problems": exc.problems},
        ) from exc
