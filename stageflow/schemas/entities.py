import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)


def _new_id() -> str:
    return str(uuid4())


class SourceType(str, Enum):
    DATABASE_POSTGRESQL = "database_postgresql"
    DATABASE_MYSQL = "database_mysql"
    DATABASE_SQLITE = "database_sqlite"
    FILE_CSV = "file_csv"
    FILE_EXCEL = "file_excel"
    FILE_JSON = "file_json"
    API_REST = "api_rest"

    @property
    def family(self) -> str:
        return self.value.split("_", 1)[0]


class ApiAuthType(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api-key"
    QUERY_PARAM = "query-param"


class ConnectionConfig(BaseModel):
    source_type: SourceType
    # Database sources
    host: Optional[str] = Field(None, max_length=255)
    port: Optional[int] = Field(None, ge=1, le=65535)
    database: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, max_length=255)
    password: Optional[str] = None
    ssl: bool = False
    # File sources
    file_path: Optional[str] = None
    has_headers: bool = True
    delimiter: Optional[str] = Field(None, min_length=1, max_length=1)
    encoding: Optional[str] = None
    # REST sources
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    api_password: Optional[str] = None
    api_key_header: Optional[str] = None
    api_key_param: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    auth_type: ApiAuthType = ApiAuthType.NONE
    method: str = Field("GET", max_length=10)
    limit_param: Optional[str] = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.strip().upper() or "GET"


class SourceField(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    is_primary_key: bool = False
    nullable: bool = True
    max_length: Optional[int] = None
    is_foreign_key: bool = False
    referenced_table: Optional[str] = None
    referenced_field: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return str(value or "string").strip().lower()


class SourceTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    schema_name: Optional[str] = None
    fields: list[SourceField] = Field(default_factory=list)
    estimated_record_count: Optional[int] = None

    def field(self, name: str) -> Optional[SourceField]:
        for candidate in self.fields:
            if candidate.name == name:
                return candidate
        return None

    def field_names(self) -> list[str]:
        return [item.name for item in self.fields]


class SourceSchema(BaseModel):
    tables: list[SourceTable] = Field(default_factory=list)

    def get_table(self, name: str) -> Optional[SourceTable]:
        for table in self.tables:
            if table.name == name:
                return table
        return None


class JoinOperator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    LIKE = "LIKE"
    IN = "IN"


class JoinType(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"


def _normalize_operator(value: Any) -> Any:
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned.upper() in {"LIKE", "IN"}:
            return cleaned.upper()
        if cleaned == "==":
            return "="
        if cleaned == "<>":
            return "!="
        return cleaned
    return value


class JoinCondition(BaseModel):
    source_field: str = Field(..., min_length=1)
    target_field: str = Field(..., min_length=1)
    operator: JoinOperator = JoinOperator.EQ

    @field_validator("operator", mode="before")
    @classmethod
    def _translate_operator(cls, value):
        return _normalize_operator(value)


class TableJoin(BaseModel):
    table_name: str = Field(..., min_length=1)
    join_type: JoinType = JoinType.INNER
    conditions: list[JoinCondition] = Field(default_factory=list)
    alias: Optional[str] = Field(None, max_length=200)

    @field_validator("join_type", mode="before")
    @classmethod
    def _lower_join_type(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def label(self) -> str:
        return self.alias or self.table_name


class WhereCondition(BaseModel):
    field: str = Field(..., min_length=1)
    operator: JoinOperator = JoinOperator.EQ
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _translate_operator(cls, value):
        return _normalize_operator(value)


class JoinedTableDefinition(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    primary_table: str = Field(..., min_length=1)
    joins: list[TableJoin] = Field(..., min_length=1)
    selected_fields: list[str] = Field(default_factory=list)
    where_conditions: list[WhereCondition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _primary_not_joined(self):
        joined_names = {join.table_name for join in self.joins}
        if self.primary_table in joined_names:
            raise ValueError("The primary table cannot also appear in its own joins.")
        labels = [join.label for join in self.joins]
        if len(labels) != len(set(labels)):
            raise ValueError("Each joined table needs a distinct alias.")
        return self

    def referenced_tables(self) -> list[str]:
        return [self.primary_table, *[join.table_name for join in self.joins]]


class TypeCompatibility(str, Enum):
    EXACT = "exact"
    COMPATIBLE = "compatible"
    INCOMPATIBLE = "incompatible"


class TransformType(str, Enum):
    CONVERT = "convert"
    STATIC = "static"
    FUNCTION = "function"
    LOOKUP = "lookup"
    CONCATENATE = "concatenate"
    SPLIT = "split"
    FORMAT = "format"


class TransformRule(BaseModel):
    """How the executor derives the target value from the source row."""

    type: TransformType
    value: Any = None
    function: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    lookup_table: Optional[dict[str, Any]] = None
    lookup_default: Any = None
    source_fields: list[str] = Field(default_factory=list)
    separator: Optional[str] = None
    format: Optional[str] = None
    split_delimiter: Optional[str] = None
    split_index: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def _check_parameters(self):
        if self.type == TransformType.FUNCTION and not (self.function or "").strip():
            raise ValueError("A function transform needs a function name.")
        if self.type == TransformType.LOOKUP and not self.lookup_table:
            raise ValueError("A lookup transform needs a lookup table.")
        if self.type == TransformType.CONCATENATE and not self.source_fields:
            raise ValueError("A concatenate transform needs source fields.")
        if self.type == TransformType.SPLIT and not self.split_delimiter:
            raise ValueError("A split transform needs a delimiter.")
        if self.type == TransformType.FORMAT and not self.format:
            raise ValueError("A format transform needs a format string.")
        return self


class FieldRuleType(str, Enum):
    REQUIRED = "required"
    MIN_LENGTH = "min_length"
    MAX_LENGTH = "max_length"
    PATTERN = "pattern"
    RANGE = "range"
    ENUM = "enum"
    CUSTOM = "custom"


class FieldValidationRule(BaseModel):
    type: FieldRuleType
    message: Optional[str] = None
    value: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum_values: list[Any] = Field(default_factory=list)
    custom_function: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _snake_case_type(cls, value):
        if isinstance(value, str):
            return re.sub(r"(?<!^)(?=[A-Z])", "_", value.strip()).lower()
        return value

    @model_validator(mode="after")
    def _check_parameters(self):
        if self.type in (FieldRuleType.MIN_LENGTH, FieldRuleType.MAX_LENGTH):
            if not isinstance(self.value, int) or isinstance(self.value, bool) or self.value < 0:
                raise ValueError(f"A {self.type.value} rule needs a non-negative integer value.")
        if self.type == FieldRuleType.PATTERN:
            if not self.pattern:
                raise ValueError("A pattern rule needs a pattern.")
            try:
                re.compile(self.pattern)
            except re.error as exc:
                raise ValueError(f"Invalid pattern '{self.pattern}': {exc}") from exc
        if self.type == FieldRuleType.RANGE:
            if self.min is None and self.max is None:
                raise ValueError("A range rule needs a min or a max.")
            if self.min is not None and self.max is not None and self.min > self.max:
                raise ValueError("A range rule's min cannot exceed its max.")
        if self.type == FieldRuleType.ENUM and not self.enum_values:
            raise ValueError("An enum rule needs enum values.")
        if self.type == FieldRuleType.CUSTOM and not (self.custom_function or "").strip():
            raise ValueError("A custom rule needs a function name.")
        return self


class FieldMapping(BaseModel):
    id: str = Field(default_factory=_new_id)
    source_field: str = Field(..., min_length=1)
    target_field: str = Field(..., min_length=1)
    source_type: Optional[str] = None
    target_type: Optional[str] = None
    compatibility: Optional[TypeCompatibility] = None
    transform: Optional[TransformRule] = None
    default_value: Any = None
    required: bool = False
    validation: list[FieldValidationRule] = Field(default_factory=list)
    acknowledged: bool = False

    @field_validator("transform", mode="before")
    @classmethod
    def _expand_transform_tag(cls, value):
        if isinstance(value, str):
            return {"type": value}
        return value


class FieldOverride(BaseModel):
    field_name: str = Field(..., min_length=1)
    skip_field: bool = False
    rename_field: Optional[str] = None
    default_value: Any = None
    data_type: Optional[str] = None


class CrossStageReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage_id: str = Field(..., min_length=1)
    field_name: str = Field(..., min_length=1)

    @classmethod
    def parse(cls, value: Any) -> "CrossStageReference":
        if isinstance(value, CrossStageReference):
            return value
        if isinstance(value, dict):
            return cls(**value)
        if not isinstance(value, str):
            raise ValueError("Cross-stage references must be strings of the form 'stageId.fieldName'.")
        stage_id, separator, field_name = value.strip().partition(".")
        if not separator or not stage_id or not field_name:
            raise ValueError(
                f"Invalid cross-stage reference '{value}'. Expected the form 'stageId.fieldName'."
            )
        return cls(stage_id=stage_id, field_name=field_name)

    def __str__(self) -> str:
        return f"{self.stage_id}.{self.field_name}"


def _validate_stage_id(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Stage id cannot be blank.")
    if "." in cleaned:
        raise ValueError("Stage id cannot contain '.'.")
    return cleaned


def _parse_cross_stage_mapping(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {target: CrossStageReference.parse(ref) for target, ref in value.items()}
    return value


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class Stage(BaseModel):
    id: str = Field(default_factory=_new_id, max_length=100)
    order: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    source_table: str = ""
    target_entity: str = Field(..., min_length=1, max_length=100)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    field_overrides: dict[str, FieldOverride] = Field(default_factory=dict)
    target_defaults: dict[str, Any] = Field(default_factory=dict)
    depends_on_stages: list[str] = Field(default_factory=list)
    cross_stage_mapping: dict[str, CrossStageReference] = Field(default_factory=dict)
    is_enabled: bool = True

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _validate_stage_id(value)

    @field_validator("source_table", mode="before")
    @classmethod
    def _strip_source_table(cls, value):
        return (value or "").strip()

    @field_validator("depends_on_stages")
    @classmethod
    def _unique_dependencies(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @field_validator("cross_stage_mapping", mode="before")
    @classmethod
    def _parse_references(cls, value):
        return _parse_cross_stage_mapping(value)

    @field_serializer("cross_stage_mapping")
    def _serialize_references(self, value: dict[str, CrossStageReference]) -> dict[str, str]:
        return {target: str(reference) for target, reference in value.items()}


class StageCreate(BaseModel):
    id: Optional[str] = Field(None, max_length=100)
    order: Optional[int] = Field(None, ge=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    source_table: str = ""
    target_entity: str = Field(..., min_length=1, max_length=100)
    field_overrides: dict[str, FieldOverride] = Field(default_factory=dict)
    target_defaults: dict[str, Any] = Field(default_factory=dict)
    depends_on_stages: list[str] = Field(default_factory=list)
    cross_stage_mapping: dict[str, CrossStageReference] = Field(default_factory=dict)
    is_enabled: bool = True

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_stage_id(value)

    @field_validator("cross_stage_mapping", mode="before")
    @classmethod
    def _parse_references(cls, value):
        return _parse_cross_stage_mapping(value)


class StageUpdate(BaseModel):
    order: Optional[int] = Field(None, ge=1)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    source_table: Optional[str] = None
    target_entity: Optional[str] = Field(None, min_length=1, max_length=100)
    field_overrides: Optional[dict[str, FieldOverride]] = None
    target_defaults: Optional[dict[str, Any]] = None
    depends_on_stages: Optional[list[str]] = None
    cross_stage_mapping: Optional[dict[str, CrossStageReference]] = None
    is_enabled: Optional[bool] = None

    @field_validator("cross_stage_mapping", mode="before")
    @classmethod
    def _parse_references(cls, value):
        if value is None:
            return None
        return _parse_cross_stage_mapping(value)


class FieldMappingCreate(BaseModel):
    source_field: str = Field(..., min_length=1)
    target_field: str = Field(..., min_length=1)
    acknowledged: bool = False
    replace: bool = False
    transform: Optional[TransformRule] = None
    default_value: Any = None
    required: bool = False
    validation: list[FieldValidationRule] = Field(default_factory=list)


class FieldMappingUpdate(BaseModel):
    transform: Optional[TransformRule] = None
    default_value: Any = None
    required: Optional[bool] = None
    validation: Optional[list[FieldValidationRule]] = None


class RelationType(str, Enum):
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_ONE = "many-to-one"
    MANY_TO_MANY = "many-to-many"


RELATION_TYPE_TO_JOIN_TYPE = {
    RelationType.ONE_TO_ONE: JoinType.INNER,
    RelationType.ONE_TO_MANY: JoinType.LEFT,
    RelationType.MANY_TO_ONE: JoinType.RIGHT,
    RelationType.MANY_TO_MANY: JoinType.INNER,
}


def _normalize_relation_type(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("_", "-")
    return value


class Relationship(BaseModel):
    id: str = Field(default_factory=_new_id)
    from_stage_id: str = Field(..., min_length=1)
    to_stage_id: str = Field(..., min_length=1)
    source_field: str = Field(..., min_length=1)
    target_field: str = Field(..., min_length=1)
    relation_type: RelationType = RelationType.MANY_TO_ONE
    join_type: JoinType = JoinType.INNER
    conditions: list[JoinCondition] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _derive_join_type(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        relation = _normalize_relation_type(values.get("relation_type") or RelationType.MANY_TO_ONE.value)
        values["relation_type"] = relation
        if values.get("join_type") is None and relation in RelationType._value2member_map_:
            values["join_type"] = RELATION_TYPE_TO_JOIN_TYPE[RelationType(relation)]
        return values

    @field_validator("join_type", mode="before")
    @classmethod
    def _lower_join_type(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _distinct_stages(self):
        if self.from_stage_id == self.to_stage_id:
            raise ValueError("A relationship must connect two different stages.")
        return self


class ConfigurationStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    SAVED = "saved"
    REJECTED = "rejected"


class ImportConfigurationBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    source_type: SourceType
    connection_config: ConnectionConfig
    is_active: bool = True

    @model_validator(mode="after")
    def _matching_source_type(self):
        if self.connection_config.source_type != self.source_type:
            raise ValueError("connection_config.source_type must match source_type.")
        return self


class ImportConfigurationCreate(ImportConfigurationBase):
    stages: list[Stage] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    joined_tables: list[JoinedTableDefinition] = Field(default_factory=list)


class ImportConfigurationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    connection_config: Optional[ConnectionConfig] = None
    is_active: Optional[bool] = None


class ImportConfiguration(ImportConfigurationBase):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    status: ConfigurationStatus = ConfigurationStatus.DRAFT
    connection_test_passed: bool = False
    source_schema: Optional[SourceSchema] = None
    stages: list[Stage] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    joined_tables: list[JoinedTableDefinition] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def get_joined_table(self, name_or_id: str) -> Optional[JoinedTableDefinition]:
        for joined in self.joined_tables:
            if joined.id == name_or_id or joined.name == name_or_id:
                return joined
        return None


class ImportConfigurationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    source_type: SourceType
    status: ConfigurationStatus
    is_active: bool
    connection_test_passed: bool
    created_at: datetime
    updated_at: datetime


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationIssue(BaseModel):
    severity: IssueSeverity
    code: str
    message: str
    stage_ids: list[str] = Field(default_factory=list)


class ValidationReport(BaseModel):
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> set[str]:
        return {issue.code for issue in [*self.errors, *self.warnings]}


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    duration_ms: Optional[float] = None
    record_count: Optional[int] = None


class TargetField(BaseModel):
    name: str
    type: str
    required: bool = False
    unique: bool = False
    description: str = ""
    enum: Optional[list[str]] = None


class TargetRelationship(BaseModel):
    name: str
    type: RelationType
    target: str
    description: str = ""


class TargetEntity(BaseModel):
    name: str
    description: str
    fields: list[TargetField] = Field(default_factory=list)
    relationships: list[TargetRelationship] = Field(default_factory=list)

    def field(self, name: str) -> Optional[TargetField]:
        for candidate in self.fields:
            if candidate.name == name:
                return candidate
        return None


class TablePreviewRequest(BaseModel):
    table_name: str = Field(..., min_length=1, max_length=200)
    limit: Optional[int] = Field(None, ge=1)


class PreviewLimit(BaseModel):
    limit: Optional[int] = Field(None, ge=1)


class TablePreviewRead(BaseModel):
    columns: list[str]
    rows: list[dict[str, Any]]
    total_count: Optional[int] = None


class JoinPreviewRead(TablePreviewRead):
    source: str
    request_token: int
    superseded: bool = False


class RelationshipMatchedExample(BaseModel):
    from_row: dict[str, Any]
    to_row: dict[str, Any]
    match_reason: str


class RelationshipUnmatchedExample(BaseModel):
    from_row: dict[str, Any]
    reason: str


class RelationshipPreviewRead(BaseModel):
    matched: list[RelationshipMatchedExample] = Field(default_factory=list)
    unmatched: list[RelationshipUnmatchedExample] = Field(default_factory=list)
    match_rate: float
    total_from_records: int
    total_to_records: int
    matched_records: int
    request_token: int
    superseded: bool = False


class PlannedStage(BaseModel):
    position: int
    stage_id: str
    name: str
    source_table: str
    target_entity: str
    depends_on_stages: list[str] = Field(default_factory=list)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    field_overrides: dict[str, FieldOverride] = Field(default_factory=dict)
    target_defaults: dict[str, Any] = Field(default_factory=dict)
    cross_stage_references: dict[str, CrossStageReference] = Field(default_factory=dict)

    @field_serializer("cross_stage_references")
    def _serialize_references(self, value: dict[str, CrossStageReference]) -> dict[str, str]:
        return {target: str(reference) for target, reference in value.items()}


class ExecutionPlan(BaseModel):
    configuration_id: Optional[UUID] = None
    stages: list[PlannedStage] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    def stage_ids(self) -> list[str]:
        return [stage.stage_id for stage in self.stages]
