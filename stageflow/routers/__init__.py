from fastapi import APIRouter

from stageflow.routers import import_configuration, import_preview, target_entity

api_router = APIRouter()
api_router.include_router(target_entity.router)
api_router.include_router(import_configuration.router)
api_router.include_router(import_preview.router)

__all__ = ["api_router"]
