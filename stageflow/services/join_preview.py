from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from stageflow.config import get_settings
from stageflow.schemas import ConnectionConfig, JoinedTableDefinition, Relationship, Stage
from stageflow.services.errors import PreviewError, SourceConnectionError
from stageflow.services.join_engine import RelationshipMatch, apply_where, compute_join, match_relationship, project
from stageflow.services.source_connectors import SourceConnector, TablePreview, get_connector

logger = logging.getLogger(__name__)

SERVER_SOURCE = "server"
LOCAL_SOURCE = "local"


class PreviewSequencer:
    """Issues increasing tokens per preview key.

    Only the most recently issued token for a key is current; results carrying an
    older token are stale and should be discarded by the caller.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 0
        self._latest: dict[str, int] = {}

    def begin(self, key: str) -> int:
        with self._lock:
            self._counter += 1
            self._latest[key] = self._counter
            return self._counter

    def is_current(self, key: str, token: int) -> bool:
        with self._lock:
            return self._latest.get(key) == token


preview_sequencer = PreviewSequencer()


@dataclass(frozen=True)
class JoinPreviewOutcome:
    preview: TablePreview
    source: str
    request_token: int
    superseded: bool


@dataclass(frozen=True)
class RelationshipPreviewOutcome:
    match: RelationshipMatch
    request_token: int
    superseded: bool


class JoinPreviewService:
    def __init__(
        self,
        config: ConnectionConfig,
        *,
        connector: Optional[SourceConnector] = None,
        sequencer: Optional[PreviewSequencer] = None,
        sample_size: Optional[int] = None,
        max_rows: Optional[int] = None,
        match_examples: Optional[int] = None,
        unmatch_examples: Optional[int] = None,
    ):
        settings = get_settings()
        self._config = config.model_copy(deep=True)
        self._connector = connector or get_connector(config.source_type)
        self._sequencer = sequencer or preview_sequencer
        self._sample_size = sample_size or settings.preview_sample_size
        self._max_rows = max_rows or settings.preview_max_rows
        self._match_examples = settings.relationship_match_examples if match_examples is None else match_examples
        self._unmatch_examples = (
            settings.relationship_unmatch_examples if unmatch_examples is None else unmatch_examples
        )

    def _clamp(self, limit: Optional[int]) -> int:
        return max(1, min(limit or self._sample_size, self._max_rows))

    def preview_table(
        self,
        table_name: str,
        joined_tables: Iterable[JoinedTableDefinition] = (),
        limit: Optional[int] = None,
    ) -> TablePreview:
        definition = _find_joined_table(table_name, joined_tables)
        if definition is not None:
            preview, _ = self._joined_rows(definition, limit)
            return preview
        return self._fetch_table(table_name, self._clamp(limit))

    def preview_joined_table(
        self, definition: JoinedTableDefinition, limit: Optional[int] = None
    ) -> JoinPreviewOutcome:
        key = f"joined-table:{definition.id}"
        token = self._sequencer.begin(key)
        preview, source = self._joined_rows(definition, limit)
        return JoinPreviewOutcome(
            preview=preview,
            source=source,
            request_token=token,
            superseded=not self._sequencer.is_current(key, token),
        )

    def preview_relationship(
        self,
        relationship: Relationship,
        stages: Sequence[Stage],
        joined_tables: Iterable[JoinedTableDefinition] = (),
        limit: Optional[int] = None,
    ) -> RelationshipPreviewOutcome:
        key = f"relationship:{relationship.id}"
        token = self._sequencer.begin(key)
        joined_tables = list(joined_tables)

        from_stage = _find_stage(relationship.from_stage_id, stages)
        to_stage = _find_stage(relationship.to_stage_id, stages)
        from_rows = self.preview_table(from_stage.source_table, joined_tables, limit)
        to_rows = self.preview_table(to_stage.source_table, joined_tables, self._max_rows)

        match = match_relationship(
            from_rows.rows,
            to_rows.rows,
            relationship.source_field,
            relationship.target_field,
            max_matched=self._match_examples,
            max_unmatched=self._unmatch_examples,
        )
        return RelationshipPreviewOutcome(
            match=match,
            request_token=token,
            superseded=not self._sequencer.is_current(key, token),
        )

    def _joined_rows(
        self, definition: JoinedTableDefinition, limit: Optional[int]
    ) -> tuple[TablePreview, str]:
        size = self._clamp(limit)
        # Filters run over the widest sample so the capped preview is not starved.
        fetch_size = self._max_rows if definition.where_conditions else size
        try:
            result = self._connector.preview_join(
                self._config, definition.primary_table, definition.joins, fetch_size
            )
            columns, rows, total = list(result.columns), list(result.rows), result.total_count
            source = SERVER_SOURCE
        except (PreviewError, SourceConnectionError) as exc:
            logger.warning(
                "Server-side join for '%s' unavailable, falling back to local join: %s",
                definition.name,
                exc,
            )
            local = self._local_join(definition, fetch_size)
            columns, rows, total = local.columns, local.rows, local.total_count
            source = LOCAL_SOURCE

        if definition.where_conditions:
            rows = apply_where(rows, definition.where_conditions)
            total = len(rows)
            rows = rows[:size]
        columns, rows = project(columns, rows, definition.selected_fields)
        return TablePreview(columns=columns, rows=rows, total_count=total), source

    def _local_join(self, definition: JoinedTableDefinition, size: int):
        primary = self._fetch_table(definition.primary_table, size)
        samples: dict[str, TablePreview] = {}
        for join in definition.joins:
            if join.table_name not in samples:
                samples[join.table_name] = self._fetch_table(join.table_name, self._max_rows)
        return compute_join(primary, samples, definition.joins, sample_size=size)

    def _fetch_table(self, table_name: str, limit: int) -> TablePreview:
        if not table_name:
            raise PreviewError("Table name is required for preview.")
        try:
            return self._connector.preview_table(self._config, table_name, limit)
        except SourceConnectionError as exc:
            raise PreviewError(str(exc)) from exc


def _find_joined_table(
    name: str, joined_tables: Iterable[JoinedTableDefinition]
) -> Optional[JoinedTableDefinition]:
    for definition in joined_tables:
        if definition.name == name:
            return definition
    return None


def _find_stage(stage_id: str, stages: Sequence[Stage]) -> Stage:
    for stage in stages:
        if stage.id == stage_id:
            if not stage.source_table:
                raise PreviewError(f"Stage '{stage.name}' has no source table to preview.")
            return stage
    raise PreviewError(f"Stage '{stage_id}' does not exist.")
