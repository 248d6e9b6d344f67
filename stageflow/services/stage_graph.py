from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Iterable, Optional, Sequence

from stageflow.schemas import (
    ConfigurationStatus,
    ImportConfiguration,
    IssueSeverity,
    JoinedTableDefinition,
    Relationship,
    SourceSchema,
    Stage,
    TargetEntity,
    ValidationIssue,
    ValidationReport,
)
from stageflow.services.errors import ConfigurationInvalidError
from stageflow.services.field_mapping import FieldMappingEngine, unacknowledged_incompatible_mappings
from stageflow.services.schema_catalog import SchemaCatalog
from stageflow.services.target_entities import get_target_entity

logger = logging.getLogger(__name__)

TargetLookup = Callable[[str], Optional[TargetEntity]]


class StageGraph:
    """Id-indexed view of stages and their ``depends_on_stages`` edges."""

    def __init__(self, stages: Iterable[Stage]):
        self._stages: dict[str, Stage] = {}
        for stage in stages:
            self._stages.setdefault(stage.id, stage)

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def stage(self, stage_id: str) -> Optional[Stage]:
        return self._stages.get(stage_id)

    @property
    def stage_ids(self) -> list[str]:
        return list(self._stages)

    def dependencies(self, stage_id: str) -> list[str]:
        stage = self._stages.get(stage_id)
        if stage is None:
            return []
        return [dependency for dependency in stage.depends_on_stages if dependency in self._stages]

    def dependents_of(self, stage_id: str) -> list[str]:
        return [stage.id for stage in self._stages.values() if stage_id in stage.depends_on_stages]

    def has_cycle(self) -> bool:
        return bool(self.find_cycles())

    def find_cycles(self) -> list[list[str]]:
        """Return each distinct dependency cycle, starting from its smallest stage id."""

        found: set[tuple[str, ...]] = set()
        for start in self._stages:
            self._walk(start, [], set(), set(), found)
        return [list(cycle) for cycle in sorted(found)]

    def _walk(
        self,
        node: str,
        path: list[str],
        on_path: set[str],
        explored: set[str],
        found: set[tuple[str, ...]],
    ) -> None:
        if node in on_path:
            members = path[path.index(node):]
            pivot = members.index(min(members))
            found.add(tuple(members[pivot:] + members[:pivot]))
            return
        if node in explored:
            return
        explored.add(node)
        on_path.add(node)
        path.append(node)
        for dependency in self.dependencies(node):
            self._walk(dependency, path, on_path, explored, found)
        path.pop()
        on_path.discard(node)


def _issue(severity: IssueSeverity, code: str, message: str, stage_ids: Iterable[str] = ()) -> ValidationIssue:
    return ValidationIssue(severity=severity, code=code, message=message, stage_ids=list(stage_ids))


def _describe(stage: Stage) -> str:
    return f"'{stage.name}'"


def validate_configuration(
    config: ImportConfiguration,
    schema: Optional[SourceSchema] = None,
    target_lookup: TargetLookup = get_target_entity,
) -> ValidationReport:
    """Collect every graph, mapping and binding problem of ``config`` in one pass."""

    report = validate_stages(
        config.stages,
        config.relationships,
        config.joined_tables,
        schema=schema,
        target_lookup=target_lookup,
    )
    logger.info(
        "Validated configuration %s: %s errors, %s warnings",
        config.id or config.name,
        len(report.errors),
        len(report.warnings),
    )
    return report


def validate_stages(
    stages: Sequence[Stage],
    relationships: Sequence[Relationship] = (),
    joined_tables: Sequence[JoinedTableDefinition] = (),
    *,
    schema: Optional[SourceSchema] = None,
    target_lookup: TargetLookup = get_target_entity,
) -> ValidationReport:
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    def error(code: str, message: str, stage_ids: Iterable[str] = ()) -> None:
        errors.append(_issue(IssueSeverity.ERROR, code, message, stage_ids))

    def warning(code: str, message: str, stage_ids: Iterable[str] = ()) -> None:
        warnings.append(_issue(IssueSeverity.WARNING, code, message, stage_ids))

    graph = StageGraph(stages)
    enabled = [stage for stage in stages if stage.is_enabled]

    by_id: dict[str, list[Stage]] = defaultdict(list)
    by_order: dict[int, list[Stage]] = defaultdict(list)
    by_table: dict[str, list[Stage]] = defaultdict(list)
    for stage in stages:
        by_id[stage.id].append(stage)
        by_order[stage.order].append(stage)
    for stage in enabled:
        if stage.source_table:
            by_table[stage.source_table].append(stage)

    for stage_id, group in by_id.items():
        if len(group) > 1:
            error("duplicate_stage_id", f"Stage id '{stage_id}' is used by {len(group)} stages.", [stage_id])

    for stage in enabled:
        if not stage.source_table:
            error("missing_table", f"Stage {_describe(stage)} has no source table.", [stage.id])

    for table_name, group in by_table.items():
        if len(group) > 1:
            names = ", ".join(_describe(stage) for stage in group)
            error(
                "duplicate_table",
                f"Table '{table_name}' is used by more than one enabled stage: {names}.",
                [stage.id for stage in group],
            )

    for order, group in sorted(by_order.items()):
        if len(group) > 1:
            names = ", ".join(_describe(stage) for stage in group)
            error(
                "duplicate_order",
                f"Stages {names} share order {order}.",
                [stage.id for stage in group],
            )

    for stage in stages:
        for dependency in stage.depends_on_stages:
            target = graph.stage(dependency)
            if target is None:
                error(
                    "unknown_dependency",
                    f"Stage {_describe(stage)} depends on unknown stage '{dependency}'.",
                    [stage.id],
                )
            elif not target.is_enabled:
                warning(
                    "disabled_dependency",
                    f"Stage {_describe(stage)} depends on disabled stage {_describe(target)}.",
                    [stage.id, target.id],
                )

    for cycle in graph.find_cycles():
        names = [_describe(graph.stage(stage_id)) for stage_id in cycle]
        error(
            "cycle",
            f"Stages form a dependency cycle: {' -> '.join(names + names[:1])}.",
            cycle,
        )

    for stage in enabled:
        for mapping in unacknowledged_incompatible_mappings(stage.field_mappings):
            error(
                "incompatible_mapping",
                f"Stage {_describe(stage)} maps {mapping.source_field} ({mapping.source_type}) to "
                f"{mapping.target_field} ({mapping.target_type}) without acknowledging the type mismatch.",
                [stage.id],
            )

        entity = target_lookup(stage.target_entity)
        if entity is None:
            warning(
                "unknown_target_entity",
                f"Stage {_describe(stage)} targets unknown entity '{stage.target_entity}'.",
                [stage.id],
            )
            continue
        engine = FieldMappingEngine.for_stage(stage, (), entity)
        missing = engine.required_missing()
        if missing:
            warning(
                "required_unmapped",
                f"Stage {_describe(stage)} leaves required {entity.name} fields unmapped: {', '.join(missing)}.",
                [stage.id],
            )

    for relationship in relationships:
        absent = [
            stage_id
            for stage_id in (relationship.from_stage_id, relationship.to_stage_id)
            if stage_id not in graph
        ]
        if absent:
            warning(
                "relationship_stage_missing",
                f"Relationship '{relationship.id}' refers to missing stage(s): {', '.join(absent)}.",
                absent,
            )

    joined_names: dict[str, int] = defaultdict(int)
    for definition in joined_tables:
        joined_names[definition.name] += 1
    for name, count in joined_names.items():
        if count > 1:
            error("duplicate_joined_table", f"Joined table name '{name}' is defined {count} times.")

    if schema is not None:
        _validate_against_schema(joined_tables, SchemaCatalog(schema), enabled, error, warning)

    return ValidationReport(errors=errors, warnings=warnings)


def _validate_against_schema(joined_tables, catalog: SchemaCatalog, enabled, error, warning) -> None:
    joined_by_name = {definition.name: definition for definition in joined_tables}

    for stage in enabled:
        if stage.source_table and not catalog.is_physical(stage.source_table) and stage.source_table not in joined_by_name:
            error(
                "unknown_table",
                f"Stage {_describe(stage)} is bound to '{stage.source_table}', which is neither a source table nor a joined table.",
                [stage.id],
            )

    for definition in joined_tables:
        problems: list[str] = []
        primary = catalog.get_table(definition.primary_table)
        if primary is None:
            problems.append(f"primary table '{definition.primary_table}' does not exist")
        for join in definition.joins:
            joined = catalog.get_table(join.table_name)
            if joined is None:
                problems.append(f"joined table '{join.table_name}' does not exist")
            if not join.conditions:
                warning(
                    "join_without_conditions",
                    f"Joined table '{definition.name}' joins '{join.table_name}' without conditions.",
                )
            for condition in join.conditions:
                if primary is not None and condition.source_field not in catalog.field_names(primary.name):
                    problems.append(f"'{definition.primary_table}.{condition.source_field}' does not exist")
                if joined is not None and condition.target_field not in catalog.field_names(joined.name):
                    problems.append(f"'{join.table_name}.{condition.target_field}' does not exist")
        if problems:
            error(
                "invalid_joined_table",
                f"Joined table '{definition.name}' is invalid: {'; '.join(problems)}.",
            )


def apply_validation(config: ImportConfiguration, report: ValidationReport) -> ImportConfiguration:
    config.status = ConfigurationStatus.VALIDATED if report.is_valid else ConfigurationStatus.REJECTED
    return config


def mark_saved(config: ImportConfiguration, report: ValidationReport) -> ImportConfiguration:
    if not report.is_valid:
        config.status = ConfigurationStatus.REJECTED
        raise ConfigurationInvalidError(report)
    config.status = ConfigurationStatus.SAVED
    return config
