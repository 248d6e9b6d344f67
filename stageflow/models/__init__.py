from stageflow.models.entities import (
    ImportConfiguration,
    ImportJoinedTable,
    ImportStage,
    ImportStageRelationship,
    TimestampMixin,
)

__all__ = [
    "ImportConfiguration",
    "ImportJoinedTable",
    "ImportStage",
    "ImportStageRelationship",
    "TimestampMixin",
]
