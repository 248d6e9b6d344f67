from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from stageflow.database import get_db
from stageflow.schemas import (
    ImportConfiguration,
    JoinPreviewRead,
    PreviewLimit,
    RelationshipMatchedExample,
    RelationshipPreviewRead,
    RelationshipUnmatchedExample,
    TablePreviewRead,
    TablePreviewRequest,
)
from stageflow.services.configuration_store import get_configuration_record, load_configuration
from stageflow.services.errors import PreviewError
from stageflow.services.join_preview import JoinPreviewService

router = APIRouter(prefix="/import/configurations", tags=["Import Preview"])


def _get_configuration_or_404(configuration_id: UUID, db: Session) -> ImportConfiguration:
    record = get_configuration_record(db, configuration_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Import configuration not found")
    return load_configuration(record)


def _limit(payload: Optional[PreviewLimit]) -> Optional[int]:
    return payload.limit if payload else None


@router.post("/{configuration_id}/preview/table", response_model=TablePreviewRead)
def preview_source_table(
    configuration_id: UUID,
    payload: TablePreviewRequest,
    db: Session = Depends(get_db),
) -> TablePreviewRead:
    config = _get_configuration_or_404(configuration_id, db)
    service = JoinPreviewService(config.connection_config)
    try:
        preview = service.preview_table(payload.table_name, config.joined_tables, payload.limit)
    except PreviewError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return TablePreviewRead(columns=preview.columns, rows=preview.rows, total_count=preview.total_count)


@router.post("/{configuration_id}/preview/joined-tables/{joined_table_id}", response_model=JoinPreviewRead)
def preview_joined_table(
    configuration_id: UUID,
    joined_table_id: str,
    payload: Optional[PreviewLimit] = None,
    db: Session = Depends(get_db),
) -> JoinPreviewRead:
    config = _get_configuration_or_404(configuration_id, db)
    definition = config.get_joined_table(joined_table_id)
    if definition is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Joined table not found")

    service = JoinPreviewService(config.connection_config)
    try:
        outcome = service.preview_joined_table(definition, _limit(payload))
    except PreviewError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JoinPreviewRead(
        columns=outcome.preview.columns,
        rows=outcome.preview.rows,
        total_count=outcome.preview.total_count,
        source=outcome.source,
        request_token=outcome.request_token,
        superseded=outcome.superseded,
    )


@router.post(
    "/{configuration_id}/preview/relationships/{relationship_id}",
    response_model=RelationshipPreviewRead,
)
def preview_relationship(
    configuration_id: UUID,
    relationship_id: str,
    payload: Optional[PreviewLimit] = None,
    db: Session = Depends(get_db),
) -> RelationshipPreviewRead:
    config = _get_configuration_or_404(configuration_id, db)
    relationship = next((item for item in config.relationships if item.id == relationship_id), None)
    if relationship is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Relationship not found")

    service = JoinPreviewService(config.connection_config)
    try:
        outcome = service.preview_relationship(
            relationship, config.stages, config.joined_tables, _limit(payload)
        )
    except PreviewError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    match = outcome.match
    return RelationshipPreviewRead(
        matched=[
            RelationshipMatchedExample(from_row=pair.from_row, to_row=pair.to_row, match_reason=pair.match_reason)
            for pair in match.matched
        ],
        unmatched=[
            RelationshipUnmatchedExample(from_row=row.from_row, reason=row.reason) for row in match.unmatched
        ],
        match_rate=match.match_rate,
        total_from_records=match.total_from,
        total_to_records=match.total_to,
        matched_records=match.matched_count,
        request_token=outcome.request_token,
        superseded=outcome.superseded,
    )
