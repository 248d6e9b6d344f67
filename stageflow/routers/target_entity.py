from fastapi import APIRouter, HTTPException, status

from stageflow.schemas import TargetEntity
from stageflow.services.target_entities import get_target_entity, list_target_entities

router = APIRouter(prefix="/target-entities", tags=["Target Entities"])


@router.get("", response_model=list[TargetEntity])
def list_entities() -> list[TargetEntity]:
    return list_target_entities()


@router.get("/{entity_name}", response_model=TargetEntity)
def get_entity(entity_name: str) -> TargetEntity:
    entity = get_target_entity(entity_name)
    if entity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Target entity not found")
    return entity
