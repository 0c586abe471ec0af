from __future__ import annotations

from fastapi import APIRouter, Depends

from ragquery.api.deps import get_registry
from ragquery.models.schemas import ModelInfo, ModelsResponse
from ragquery.services.model_registry import ModelRegistry

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(registry: ModelRegistry = Depends(get_registry)):
    """Models from the latest refresh, with the model that "auto" resolves to."""
    return ModelsResponse(
        models=[ModelInfo(**m.to_dict()) for m in registry.list_models()],
        default_model=registry.auto_select(),
    )
