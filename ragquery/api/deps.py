"""Process-wide singletons shared by the HTTP routes and the CLI."""
from __future__ import annotations

from ragquery.agents.orchestrator import QueryOrchestrator
from ragquery.config import settings
from ragquery.llm_client import LLMGateway, build_providers
from ragquery.services.model_registry import ModelRegistry
from ragquery.services.rate_gate import RateGate
from ragquery.services.storage import Storage

_storage: Storage | None = None
_rate_gate: RateGate | None = None
_registry: ModelRegistry | None = None
_gateway: LLMGateway | None = None
_orchestrator: QueryOrchestrator | None = None


def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = Storage(settings.database_path)
    return _storage


def get_rate_gate() -> RateGate:
    global _rate_gate
    if _rate_gate is None:
        _rate_gate = RateGate(get_storage())
    return _rate_gate


def get_registry() -> ModelRegistry:
    global _registry
    if _registry is None:
        _registry = ModelRegistry(build_providers(), rate_gate=get_rate_gate())
    return _registry


def get_gateway() -> LLMGateway:
    global _gateway
    if _gateway is None:
        _gateway = LLMGateway(get_rate_gate(), get_registry())
    return _gateway


def get_orchestrator() -> QueryOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = QueryOrchestrator(
            get_gateway(), get_registry(), get_storage(), get_rate_gate()
        )
    return _orchestrator


def reset() -> None:
    """Drop every singleton; the next getter call rebuilds from settings."""
    global _storage, _rate_gate, _registry, _gateway, _orchestrator
    _storage = _rate_gate = _registry = _gateway = _orchestrator = None
