from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Optional, Sequence
from uuid import UUID

from stageflow.schemas import (
    ExecutionPlan,
    ImportConfiguration,
    PlannedStage,
    Relationship,
    SourceSchema,
    Stage,
    ValidationReport,
)
from stageflow.services.errors import CompileError
from stageflow.services.stage_graph import validate_configuration, validate_stages

logger = logging.getLogger(__name__)


def compile_plan(
    stages: Sequence[Stage],
    relationships: Sequence[Relationship] = (),
    report: Optional[ValidationReport] = None,
    *,
    configuration_id: Optional[UUID] = None,
) -> ExecutionPlan:
    """Order enabled stages for execution and resolve their cross-stage references.

    Dependencies always run first; ties go to the lower declared ``order`` and
    then the lower stage id.
    """

    if report is None:
        report = validate_stages(stages, relationships)
    if report.errors:
        logger.warning("Refusing to compile plan with %s validation errors", len(report.errors))
        raise CompileError([issue.message for issue in report.errors])

    enabled = {stage.id: stage for stage in stages if stage.is_enabled}
    order = _build_order(enabled)

    positions = {stage_id: position for position, stage_id in enumerate(order, start=1)}
    problems: list[str] = []
    planned: list[PlannedStage] = []
    for stage_id in order:
        stage = enabled[stage_id]
        position = positions[stage_id]
        for target_field, reference in stage.cross_stage_mapping.items():
            source_position = positions.get(reference.stage_id)
            if reference.stage_id == stage_id:
                problems.append(
                    f"Stage '{stage.name}' maps {target_field} from itself ({reference})."
                )
            elif source_position is None:
                problems.append(
                    f"Stage '{stage.name}' maps {target_field} from stage '{reference.stage_id}', "
                    "which is not part of the plan."
                )
            elif source_position > position:
                problems.append(
                    f"Stage '{stage.name}' maps {target_field} from stage "
                    f"'{enabled[reference.stage_id].name}', which runs later."
                )

        planned.append(
            PlannedStage(
                position=position,
                stage_id=stage.id,
                name=stage.name,
                source_table=stage.source_table,
                target_entity=stage.target_entity,
                depends_on_stages=[dependency for dependency in stage.depends_on_stages if dependency in enabled],
                field_mappings=[mapping.model_copy() for mapping in stage.field_mappings],
                field_overrides=dict(stage.field_overrides),
                target_defaults=dict(stage.target_defaults),
                cross_stage_references=dict(stage.cross_stage_mapping),
            )
        )

    if problems:
        logger.warning("Cross-stage references could not be resolved: %s", "; ".join(problems))
        raise CompileError(problems)

    planned_relationships = [
        relationship
        for relationship in relationships
        if relationship.from_stage_id in positions and relationship.to_stage_id in positions
    ]
    return ExecutionPlan(
        configuration_id=configuration_id,
        stages=planned,
        relationships=planned_relationships,
        warnings=list(report.warnings),
    )


def compile_configuration(
    config: ImportConfiguration, schema: Optional[SourceSchema] = None
) -> ExecutionPlan:
    report = validate_configuration(config, schema or config.source_schema)
    return compile_plan(
        config.stages,
        config.relationships,
        report,
        configuration_id=config.id,
    )


def _build_order(stages: dict[str, Stage]) -> list[str]:
    indegree: dict[str, int] = {stage_id: 0 for stage_id in stages}
    adjacency: dict[str, set[str]] = defaultdict(set)

    for stage_id, stage in stages.items():
        for dependency in stage.depends_on_stages:
            if dependency == stage_id or dependency not in stages:
                # Disabled or unknown dependencies do not constrain the order.
                continue
            if stage_id not in adjacency[dependency]:
                adjacency[dependency].add(stage_id)
                indegree[stage_id] += 1

    heap = [(stages[stage_id].order, stage_id) for stage_id, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    order: list[str] = []

    while heap:
        _, current = heapq.heappop(heap)
        order.append(current)
        for successor in adjacency[current]:
            indegree[successor] -= 1
            if indegree[successor] == 0:
                heapq.heappush(heap, (stages[successor].order, successor))

    if len(order) != len(stages):
        raise CompileError(["Stage dependencies contain a cycle or unresolved references."])
    return order
