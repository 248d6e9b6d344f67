from stageflow.schemas.entities import (
    RELATION_TYPE_TO_JOIN_TYPE,
    ApiAuthType,
    ConfigurationStatus,
    ConnectionConfig,
    ConnectionTestResult,
    CrossStageReference,
    ExecutionPlan,
    FieldMapping,
    FieldMappingCreate,
    FieldMappingUpdate,
    FieldOverride,
    FieldRuleType,
    FieldValidationRule,
    ImportConfiguration,
    ImportConfigurationBase,
    ImportConfigurationCreate,
    ImportConfigurationSummary,
    ImportConfigurationUpdate,
    IssueSeverity,
    JoinCondition,
    JoinedTableDefinition,
    JoinOperator,
    JoinPreviewRead,
    JoinType,
    PlannedStage,
    PreviewLimit,
    RelationshipMatchedExample,
    RelationshipPreviewRead,
    RelationshipUnmatchedExample,
    Relationship,
    RelationType,
    SourceField,
    SourceSchema,
    SourceTable,
    SourceType,
    Stage,
    StageCreate,
    StageUpdate,
    TableJoin,
    TablePreviewRead,
    TablePreviewRequest,
    TargetEntity,
    TargetField,
    TargetRelationship,
    TransformRule,
    TransformType,
    TypeCompatibility,
    ValidationIssue,
    ValidationReport,
    WhereCondition,
)

__all__ = [
    "RELATION_TYPE_TO_JOIN_TYPE",
    "ApiAuthType",
    "ConfigurationStatus",
    "ConnectionConfig",
    "ConnectionTestResult",
    "CrossStageReference",
    "ExecutionPlan",
    "FieldMapping",
    "FieldMappingCreate",
    "FieldMappingUpdate",
    "FieldOverride",
    "FieldRuleType",
    "FieldValidationRule",
    "ImportConfiguration",
    "ImportConfigurationBase",
    "ImportConfigurationCreate",
    "ImportConfigurationSummary",
    "ImportConfigurationUpdate",
    "IssueSeverity",
    "JoinCondition",
    "JoinedTableDefinition",
    "JoinOperator",
    "JoinPreviewRead",
    "JoinType",
    "PlannedStage",
    "PreviewLimit",
    "RelationshipMatchedExample",
    "RelationshipPreviewRead",
    "RelationshipUnmatchedExample",
    "Relationship",
    "RelationType",
    "SourceField",
    "SourceSchema",
    "SourceTable",
    "SourceType",
    "Stage",
    "StageCreate",
    "StageUpdate",
    "TableJoin",
    "TablePreviewRead",
    "TablePreviewRequest",
    "TargetEntity",
    "TargetField",
    "TargetRelationship",
    "TransformRule",
    "TransformType",
    "TypeCompatibility",
    "ValidationIssue",
    "ValidationReport",
    "WhereCondition",
]
