from __future__ import annotations

from fastapi import APIRouter, Depends

from ragquery.api.deps import get_rate_gate, get_registry
from ragquery.llm_client import ChatProvider
from ragquery.models.domain import Capability, ProviderType
from ragquery.models.schemas import LimitsResponse, ProviderLimitsResponse, RateCounterResponse
from ragquery.services.model_registry import ModelRegistry
from ragquery.services.rate_gate import RateGate
from ragquery.tools import search_provider

router = APIRouter(prefix="/api/limits", tags=["limits"])


def _configured(provider: ProviderType, chat_providers: dict[ProviderType, ChatProvider]) -> bool:
    if provider.capability is Capability.SEARCH:
        return search_provider.is_configured(provider)
    adapter = chat_providers.get(provider)
    return adapter is not None and adapter.configured


async def _limits(rate_gate: RateGate, registry: ModelRegistry) -> LimitsResponse:
    providers = []
    for provider in ProviderType:
        counters = await rate_gate.snapshot(provider)
        providers.append(
            ProviderLimitsResponse(
                provider=provider.value,
                name=provider.display_name,
                capability=provider.capability.value,
                configured=_configured(provider, registry.providers),
                counters=[RateCounterResponse(**c.to_dict()) for c in counters],
            )
        )
    return LimitsResponse(providers=providers)


@router.get("", response_model=LimitsResponse)
async def get_limits(
    rate_gate: RateGate = Depends(get_rate_gate),
    registry: ModelRegistry = Depends(get_registry),
):
    """Current usage and limit per provider and window."""
    return await _limits(rate_gate, registry)


@router.post("/sync", response_model=LimitsResponse)
async def sync_limits(
    rate_gate: RateGate = Depends(get_rate_gate),
    registry: ModelRegistry = Depends(get_registry),
):
    """Pull account quotas from the providers that report them, then return the result."""
    await registry.refresh_limits()
    return await _limits(rate_gate, registry)
