from stageflow.services.field_mapping import FieldMappingEngine
from stageflow.services.join_preview import JoinPreviewService, PreviewSequencer
from stageflow.services.plan_compiler import compile_configuration, compile_plan
from stageflow.services.schema_catalog import SchemaCatalog
from stageflow.services.stage_graph import StageGraph, validate_configuration

__all__ = [
    "FieldMappingEngine",
    "JoinPreviewService",
    "PreviewSequencer",
    "SchemaCatalog",
    "StageGraph",
    "compile_configuration",
    "compile_plan",
    "validate_configuration",
]
