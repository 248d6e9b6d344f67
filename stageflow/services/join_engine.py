"""Sample based join evaluation used for previews.

The local join is an approximation of relational semantics: each joined table is
matched against the primary row on its own, so multi-way joins are never cross
matched between joined tables. Outer joins only consider the sampled rows. The
authoritative join is the one computed by the source itself.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from stageflow.schemas import JoinCondition, JoinOperator, JoinType, TableJoin, WhereCondition
from stageflow.services.source_connectors import TablePreview

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 5


@dataclass(frozen=True)
class JoinResult:
    columns: list[str]
    rows: list[dict[str, Any]]
    total_count: int


@dataclass(frozen=True)
class MatchedPair:
    from_row: dict[str, Any]
    to_row: dict[str, Any]
    match_reason: str


@dataclass(frozen=True)
class UnmatchedRow:
    from_row: dict[str, Any]
    reason: str


@dataclass(frozen=True)
class RelationshipMatch:
    matched: list[MatchedPair]
    unmatched: list[UnmatchedRow]
    match_rate: float
    total_from: int
    total_to: int
    matched_count: int


def normalize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    return str(value).strip()


def to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (bool, int, float, Decimal)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number):
        return None
    return number


def _split_items(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(item) for item in value]
    return [item.strip() for item in normalize_value(value).split(",")]


def evaluate(join_operator: JoinOperator, left: Any, right: Any) -> bool:
    """Compare ``left`` (the primary side) with ``right`` under ``join_operator``."""

    if join_operator == JoinOperator.EQ:
        return normalize_value(left) == normalize_value(right)
    if join_operator == JoinOperator.NE:
        return normalize_value(left) != normalize_value(right)
    if join_operator == JoinOperator.LIKE:
        return normalize_value(right).lower() in normalize_value(left).lower()
    if join_operator == JoinOperator.IN:
        return normalize_value(left) in _split_items(right)

    left_number = to_number(left)
    right_number = to_number(right)
    if left_number is None or right_number is None:
        return False
    if join_operator == JoinOperator.GT:
        return left_number > right_number
    if join_operator == JoinOperator.LT:
        return left_number < right_number
    if join_operator == JoinOperator.GE:
        return left_number >= right_number
    if join_operator == JoinOperator.LE:
        return left_number <= right_number
    return False


def conditions_match(
    conditions: Iterable[JoinCondition],
    primary_row: Mapping[str, Any],
    joined_row: Mapping[str, Any],
) -> bool:
    for condition in conditions:
        if condition.source_field not in primary_row or condition.target_field not in joined_row:
            return False
        if not evaluate(condition.operator, primary_row[condition.source_field], joined_row[condition.target_field]):
            return False
    return True


def compute_join(
    primary: TablePreview,
    joined_samples: Mapping[str, TablePreview],
    joins: Sequence[TableJoin],
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> JoinResult:
    if sample_size < 1:
        raise ValueError("Sample size must be positive.")

    active: list[tuple[TableJoin, TablePreview]] = []
    for join in joins:
        sample = joined_samples.get(join.table_name)
        if sample is None:
            logger.debug("No sample rows for joined table %s; skipping it", join.table_name)
            continue
        active.append((join, sample))

    blocks = [[f"{join.label}.{column}" for column in sample.columns] for join, sample in active]
    columns = list(primary.columns) + [column for block in blocks for column in block]
    empty_joined = {column: None for block in blocks for column in block}
    empty_primary = {column: None for column in primary.columns}

    def _primary_part(row: Mapping[str, Any]) -> dict[str, Any]:
        return {column: row.get(column) for column in primary.columns}

    def _joined_part(join: TableJoin, sample: TablePreview, row: Mapping[str, Any]) -> dict[str, Any]:
        return {f"{join.label}.{column}": row.get(column) for column in sample.columns}

    primary_rows = list(primary.rows[:sample_size])
    rows: list[dict[str, Any]] = []
    matched_indexes: list[set[int]] = [set() for _ in active]

    for primary_row in primary_rows:
        base = _primary_part(primary_row)
        for position, (join, sample) in enumerate(active):
            found = False
            for index, joined_row in enumerate(sample.rows):
                if conditions_match(join.conditions, primary_row, joined_row):
                    found = True
                    matched_indexes[position].add(index)
                    rows.append({**base, **empty_joined, **_joined_part(join, sample, joined_row)})
            if not found and join.join_type in (JoinType.LEFT, JoinType.FULL):
                rows.append({**base, **empty_joined})

    for position, (join, sample) in enumerate(active):
        if join.join_type not in (JoinType.RIGHT, JoinType.FULL):
            continue
        for index, joined_row in enumerate(sample.rows):
            if index not in matched_indexes[position]:
                rows.append({**empty_primary, **empty_joined, **_joined_part(join, sample, joined_row)})

    if not rows and (not active or any(join.join_type != JoinType.INNER for join, _ in active)):
        rows = [{**_primary_part(row), **empty_joined} for row in primary_rows]

    return JoinResult(columns=columns, rows=rows[:sample_size], total_count=len(rows))


def apply_where(rows: Iterable[Mapping[str, Any]], where_conditions: Sequence[WhereCondition]) -> list[dict[str, Any]]:
    if not where_conditions:
        return [dict(row) for row in rows]
    filtered: list[dict[str, Any]] = []
    for row in rows:
        if all(
            condition.field in row and evaluate(condition.operator, row[condition.field], condition.value)
            for condition in where_conditions
        ):
            filtered.append(dict(row))
    return filtered


def project(
    columns: Sequence[str],
    rows: Iterable[Mapping[str, Any]],
    selected_fields: Sequence[str],
) -> tuple[list[str], list[dict[str, Any]]]:
    if not selected_fields:
        return list(columns), [dict(row) for row in rows]
    wanted = set(selected_fields)
    kept = [column for column in columns if column in wanted]
    return kept, [{column: row.get(column) for column in kept} for row in rows]


def match_relationship(
    from_rows: Sequence[Mapping[str, Any]],
    to_rows: Sequence[Mapping[str, Any]],
    source_field: str,
    target_field: str,
    max_matched: int = 5,
    max_unmatched: int = 3,
) -> RelationshipMatch:
    """Pair rows of two stages on ``source_field == target_field``.

    Only a few illustrative pairs are returned; ``match_rate`` covers every
    ``from_rows`` entry.
    """

    index: dict[str, Mapping[str, Any]] = {}
    for row in to_rows:
        key = normalize_value(row.get(target_field))
        if key and key not in index:
            index[key] = row

    matched: list[MatchedPair] = []
    unmatched: list[UnmatchedRow] = []
    matched_count = 0
    for row in from_rows:
        key = normalize_value(row.get(source_field))
        target = index.get(key) if key else None
        if target is not None:
            matched_count += 1
            if len(matched) < max_matched:
                matched.append(
                    MatchedPair(
                        from_row=dict(row),
                        to_row=dict(target),
                        match_reason=f"{source_field} = {target_field} ({key})",
                    )
                )
        elif len(unmatched) < max_unmatched:
            reason = f"{source_field} is empty" if not key else f"No row with {target_field} = {key}"
            unmatched.append(UnmatchedRow(from_row=dict(row), reason=reason))

    match_rate = matched_count / len(from_rows) if from_rows else 0.0
    return RelationshipMatch(
        matched=matched,
        unmatched=unmatched,
        match_rate=match_rate,
        total_from=len(from_rows),
        total_to=len(to_rows),
        matched_count=matched_count,
    )
