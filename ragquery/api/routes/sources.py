from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from ragquery.api.deps import get_storage
from ragquery.errors import StorageError
from ragquery.models.schemas import SourceResponse
from ragquery.services.storage import Storage

router = APIRouter(prefix="/api/sources", tags=["sources"])


@router.get("", response_model=list[SourceResponse])
async def list_sources(
    q: str | None = Query(default=None, description="Keyword filter on title and content"),
    limit: int = Query(default=20, ge=1, le=200),
    storage: Storage = Depends(get_storage),
):
    try:
        sources = await storage.search_sources(q, limit) if q else await storage.get_sources(limit)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return [SourceResponse(**s.to_dict()) for s in sources]
