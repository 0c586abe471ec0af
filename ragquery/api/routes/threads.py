from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ragquery.api.deps import get_storage
from ragquery.models.schemas import CreateThreadRequest, MessageResponse, ThreadResponse
from ragquery.services.storage import Storage

router = APIRouter(prefix="/api/threads", tags=["threads"])


@router.post("", response_model=ThreadResponse)
async def create_thread(request: CreateThreadRequest, storage: Storage = Depends(get_storage)):
    return ThreadResponse(**await storage.create_thread(request.title))


@router.get("", response_model=list[ThreadResponse])
async def list_threads(storage: Storage = Depends(get_storage)):
    return [ThreadResponse(**t) for t in await storage.list_threads()]


@router.get("/{thread_id}/messages", response_model=list[MessageResponse])
async def get_thread_messages(thread_id: str, storage: Storage = Depends(get_storage)):
    if await storage.get_thread(thread_id) is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return [MessageResponse(**m) for m in await storage.get_messages(thread_id)]
