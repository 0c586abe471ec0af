from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- Requests ---


class HistoryMessage(BaseModel):
    role: str
    content: str


class QueryRequest(BaseModel):
    query: str
    web_search_enabled: bool = True
    model: str | None = None  # None or "auto" = automatic selection
    search_provider: str | None = None  # None or "auto" = priority chain
    thread_id: str | None = None
    history: list[HistoryMessage] = Field(default_factory=list)


class CreateThreadRequest(BaseModel):
    title: str | None = None


# --- Responses ---


class SourceResponse(BaseModel):
    id: int
    url: str
    title: str
    content: str
    created_at: datetime


class QueryResponse(BaseModel):
    answer: str
    sources: list[SourceResponse]
    model: str


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    context_length: int | None = None
    is_free: bool = False


class ModelsResponse(BaseModel):
    models: list[ModelInfo]
    default_model: str


class RateCounterResponse(BaseModel):
    window: str
    used: int
    limit: int | None
    remaining: int | None
    window_start: datetime
    cadence: str
    observed: bool = False


class ProviderLimitsResponse(BaseModel):
    provider: str
    name: str
    capability: str
    configured: bool
    counters: list[RateCounterResponse]


class LimitsResponse(BaseModel):
    providers: list[ProviderLimitsResponse]


class ThreadResponse(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    id: int
    thread_id: str
    role: str
    content: str
    created_at: datetime
