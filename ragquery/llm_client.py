"""Chat providers and the gateway that gates, dispatches and normalizes LLM calls."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

import httpx
import openai
from loguru import logger

from ragquery.config import settings
from ragquery.errors import (
    ModelNotFoundError,
    ProviderNotConfiguredError,
    RateExhaustedError,
    UpstreamProviderError,
)
from ragquery.models.domain import Model, ProviderType, Window
from ragquery.services import logger as log_service

if TYPE_CHECKING:
    from ragquery.services.model_registry import ModelRegistry
    from ragquery.services.rate_gate import RateGate

COHERE_API_URL = "https://api.cohere.ai/v1"
CLIENT_NAME = "ragquery"


@dataclass(frozen=True, slots=True)
class QuotaReading:
    """Quota figures reported by a provider for one window."""

    window: Window
    remaining: int | None = None
    limit: int | None = None


@dataclass(slots=True)
class ChatResponse:
    body: dict[str, Any]
    quota: list[QuotaReading] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QuotaHeaders:
    window: Window
    limit: str
    remaining: str


class ChatProvider(Protocol):
    provider: ProviderType

    @property
    def configured(self) -> bool: ...

    async def chat(
        self, model_id: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse: ...

    async def list_models(self) -> list[Model]: ...

    async def fetch_limits(self) -> list[QuotaReading]: ...


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def quota_from_headers(headers: httpx.Headers, specs: tuple[QuotaHeaders, ...]) -> list[QuotaReading]:
    readings = []
    for spec in specs:
        limit = _to_int(headers.get(spec.limit))
        remaining = _to_int(headers.get(spec.remaining))
        if limit is not None or remaining is not None:
            readings.append(QuotaReading(spec.window, remaining=remaining, limit=limit))
    return readings


# --- Model list parsers, one per provider payload shape ---


def _is_zero_price(value: Any) -> bool:
    try:
        return float(value) <= 0.000001
    except (TypeError, ValueError):
        return False


def parse_openrouter_models(payload: Any) -> list[Model]:
    allowed = settings.openrouter_model_list
    models = []
    for item in payload.get("data", []):
        pricing = item.get("pricing") or {}
        is_free = _is_zero_price(pricing.get("prompt")) and _is_zero_price(pricing.get("completion"))
        if allowed:
            if item.get("id") not in allowed:
                continue
        elif not is_free:
            continue
        models.append(
            Model(
                id=item["id"],
                name=item.get("name") or item["id"],
                provider=ProviderType.OPENROUTER,
                context_length=_to_int(item.get("context_length")),
                is_free=is_free,
            )
        )
    return models


def parse_groq_models(payload: Any) -> list[Model]:
    return [
        Model(
            id=item["id"],
            name=item["id"],
            provider=ProviderType.GROQ,
            context_length=_to_int(item.get("context_window")),
        )
        for item in payload.get("data", [])
    ]


def parse_cerebras_models(payload: Any) -> list[Model]:
    items = payload.get("data", []) if isinstance(payload, dict) else payload
    return [
        Model(
            id=item["id"],
            name=item.get("name") or item["id"],
            provider=ProviderType.CEREBRAS,
            context_length=_to_int(item.get("context_length")),
        )
        for item in items
    ]


def parse_pollinations_models(payload: Any) -> list[Model]:
    return [
        Model(
            id=item["name"],
            name=item.get("description") or item["name"],
            provider=ProviderType.POLLINATIONS,
            context_length=_to_int(item.get("context_window")) or 16000,
            is_free=True,
        )
        for item in payload
        if isinstance(item, dict) and item.get("name")
    ]


def parse_openrouter_limits(payload: Any) -> list[QuotaReading]:
    rate_limit = (payload.get("data") or {}).get("rate_limit") or {}
    requests = _to_int(rate_limit.get("requests"))
    interval = rate_limit.get("interval")
    if requests is None or requests < 0:
        return []
    if interval == "1d":
        return [QuotaReading(Window.DAY, limit=requests)]
    if interval in ("1m", "60s", "10s"):
        # 10s intervals are reported by OpenRouter for paid keys; scale to a minute
        scale = 6 if interval == "10s" else 1
        return [QuotaReading(Window.MINUTE, limit=requests * scale)]
    return []


def parse_pollinations_limits(payload: Any) -> list[QuotaReading]:
    balance = _to_int(payload.get("balance"))
    if balance is None:
        return []
    return [QuotaReading(Window.DAY, remaining=balance)]


@dataclass(frozen=True)
class ProviderProfile:
    """Everything that differs between OpenAI-compatible chat providers."""

    provider: ProviderType
    base_url: str
    api_key: str
    models_url: str
    parse_models: Callable[[Any], list[Model]]
    models_need_auth: bool = True
    extra_headers: dict[str, str] = field(default_factory=dict)
    quota_headers: tuple[QuotaHeaders, ...] = ()
    limits_url: str | None = None
    parse_limits: Callable[[Any], list[QuotaReading]] | None = None


class OpenAICompatibleProvider:
    """OpenRouter, Groq, Cerebras and Pollinations all speak /chat/completions."""

    def __init__(self, profile: ProviderProfile, transport: httpx.AsyncBaseTransport | None = None):
        self.profile = profile
        self.provider = profile.provider
        self._transport = transport
        self._client: openai.AsyncOpenAI | None = None

    @property
    def configured(self) -> bool:
        return bool(self.profile.api_key)

    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            http_client = None
            if self._transport is not None:
                http_client = httpx.AsyncClient(
                    transport=self._transport, timeout=settings.llm_timeout_seconds
                )
            self._client = openai.AsyncOpenAI(
                api_key=self.profile.api_key,
                base_url=self.profile.base_url,
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
                default_headers=self.profile.extra_headers or None,
                http_client=http_client,
            )
        return self._client

    async def chat(
        self, model_id: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse:
        kwargs: dict[str, Any] = {"model": model_id, "messages": messages}
        if tools:
            kwargs["tools"] = tools
        name = self.provider.display_name
        try:
            raw = await self.client().chat.completions.with_raw_response.create(**kwargs)
            completion = raw.parse()
        except openai.APIStatusError as e:
            raise UpstreamProviderError(name, e.status_code, e.response.text) from e
        except openai.APIError as e:
            raise UpstreamProviderError(name, None, str(e)) from e

        body = completion.model_dump()
        if not body.get("choices"):
            raise UpstreamProviderError(name, raw.status_code, raw.text)
        return ChatResponse(body=body, quota=quota_from_headers(raw.headers, self.profile.quota_headers))

    def _metadata_headers(self) -> dict[str, str]:
        headers = dict(self.profile.extra_headers)
        if self.profile.api_key:
            headers["Authorization"] = f"Bearer {self.profile.api_key}"
        return headers

    async def list_models(self) -> list[Model]:
        headers = self._metadata_headers() if self.profile.models_need_auth else {}
        async with httpx.AsyncClient(
            timeout=settings.metadata_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(self.profile.models_url, headers=headers)
        if response.status_code >= 400:
            raise UpstreamProviderError(self.provider.display_name, response.status_code, response.text)
        return self.profile.parse_models(response.json())

    async def fetch_limits(self) -> list[QuotaReading]:
        if not self.profile.limits_url or self.profile.parse_limits is None:
            return []
        async with httpx.AsyncClient(
            timeout=settings.limits_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(self.profile.limits_url, headers=self._metadata_headers())
        if response.status_code >= 400:
            raise UpstreamProviderError(self.provider.display_name, response.status_code, response.text)
        return self.profile.parse_limits(response.json())


_COHERE_ROLES = {"user": "USER", "assistant": "CHATBOT", "system": "SYSTEM"}


def to_cohere_request(model_id: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
    """Last message becomes ``message``; everything before it becomes ``chat_history``."""
    if not messages or not isinstance(messages[-1].get("content"), str):
        raise UpstreamProviderError(ProviderType.COHERE.display_name, None, "No content in last message")
    history = [
        {"role": _COHERE_ROLES.get(m.get("role", ""), "USER"), "message": m["content"]}
        for m in messages[:-1]
        if isinstance(m.get("content"), str)
    ]
    return {"model": model_id, "message": messages[-1]["content"], "chat_history": history}


def from_cohere_response(model_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": payload.get("generation_id"),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model_id,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": payload.get("text") or ""},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


class CohereProvider:
    """Cohere v1 /chat, translated to and from the chat-completions shape."""

    provider = ProviderType.COHERE

    def __init__(
        self,
        api_key: str,
        base_url: str = COHERE_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Client-Name": CLIENT_NAME,
        }

    async def chat(
        self, model_id: str, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None = None
    ) -> ChatResponse:
        # v1 /chat tool calling uses a different schema; requests go out without tools
        request = to_cohere_request(model_id, messages)
        name = self.provider.display_name
        try:
            async with httpx.AsyncClient(
                timeout=settings.llm_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(f"{self.base_url}/chat", json=request, headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamProviderError(name, None, str(e)) from e
        if response.status_code >= 400:
            raise UpstreamProviderError(name, response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamProviderError(name, response.status_code, response.text) from e
        return ChatResponse(body=from_cohere_response(model_id, payload))

    async def list_models(self) -> list[Model]:
        async with httpx.AsyncClient(
            timeout=settings.metadata_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(f"{self.base_url}/models", headers=self._headers())
        if response.status_code >= 400:
            raise UpstreamProviderError(self.provider.display_name, response.status_code, response.text)
        return [
            Model(
                id=item["name"],
                name=item["name"],
                provider=ProviderType.COHERE,
                context_length=_to_int(item.get("context_length")),
            )
            for item in response.json().get("models", [])
        ]

    async def fetch_limits(self) -> list[QuotaReading]:
        return []


def build_providers(transport: httpx.AsyncBaseTransport | None = None) -> dict[ProviderType, ChatProvider]:
    openrouter_base = settings.openrouter_base_url.rstrip("/")
    profiles = [
        ProviderProfile(
            provider=ProviderType.OPENROUTER,
            base_url=openrouter_base,
            api_key=settings.openrouter_api_key,
            models_url=f"{openrouter_base}/models",
            parse_models=parse_openrouter_models,
            models_need_auth=False,
            extra_headers={
                "HTTP-Referer": settings.public_base_url,
                "X-Title": settings.app_title,
            },
            limits_url=f"{openrouter_base}/key",
            parse_limits=parse_openrouter_limits,
        ),
        ProviderProfile(
            provider=ProviderType.GROQ,
            base_url="https://api.groq.com/openai/v1",
            api_key=settings.groq_api_key,
            models_url="https://api.groq.com/openai/v1/models",
            parse_models=parse_groq_models,
            quota_headers=(
                QuotaHeaders(Window.DAY, "x-ratelimit-limit-requests", "x-ratelimit-remaining-requests"),
            ),
        ),
        ProviderProfile(
            provider=ProviderType.CEREBRAS,
            base_url="https://api.cerebras.ai/v1",
            api_key=settings.cerebras_api_key,
            models_url="https://api.cerebras.ai/public/v1/models",
            parse_models=parse_cerebras_models,
            models_need_auth=False,
            quota_headers=(
                QuotaHeaders(
                    Window.DAY, "x-ratelimit-limit-requests-day", "x-ratelimit-remaining-requests-day"
                ),
            ),
        ),
        ProviderProfile(
            provider=ProviderType.POLLINATIONS,
            base_url="https://gen.pollinations.ai/v1",
            api_key=settings.pollinations_api_key,
            models_url="https://gen.pollinations.ai/text/models",
            parse_models=parse_pollinations_models,
            models_need_auth=False,
            limits_url="https://gen.pollinations.ai/account/balance",
            parse_limits=parse_pollinations_limits,
        ),
    ]
    providers: dict[ProviderType, ChatProvider] = {
        p.provider: OpenAICompatibleProvider(p, transport=transport) for p in profiles
    }
    providers[ProviderType.COHERE] = CohereProvider(settings.cohere_api_key, transport=transport)
    return providers


class LLMGateway:
    """Uniform ``chat`` over every configured provider, gated by the rate gate."""

    def __init__(
        self,
        rate_gate: RateGate,
        registry: ModelRegistry,
        providers: dict[ProviderType, ChatProvider] | None = None,
    ):
        self.rate_gate = rate_gate
        self.registry = registry
        self.providers = providers if providers is not None else registry.providers

    async def chat(
        self,
        model_id: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        caller: str = "gateway",
    ) -> dict[str, Any]:
        model = self.registry.get(model_id)
        if model is None:
            raise ModelNotFoundError(model_id)
        provider = model.provider
        adapter = self.providers.get(provider)
        if adapter is None or not adapter.configured:
            raise ProviderNotConfiguredError(provider.display_name)

        if not await self.rate_gate.admit(provider):
            window = self.rate_gate.denying_window(provider)
            raise RateExhaustedError(provider.display_name, window.value if window else None)

        t0 = time.monotonic()
        try:
            response = await adapter.chat(model_id, messages, tools)
        except UpstreamProviderError as e:
            log_service.log_llm_call(
                model=model_id,
                provider=provider.value,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(e),
            )
            raise
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        usage = response.body.get("usage") or {}
        log_service.log_llm_call(
            model=model_id,
            provider=provider.value,
            caller=caller,
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
            duration_ms=elapsed_ms,
        )
        await self.record_quota(provider, response.quota)
        return response.body

    async def record_quota(self, provider: ProviderType, readings: list[QuotaReading]) -> None:
        for reading in readings:
            try:
                await self.rate_gate.update_limits(
                    provider, reading.window, remaining=reading.remaining, limit=reading.limit
                )
            except Exception as e:
                logger.warning(f"Could not record {provider.value} quota telemetry: {e}")
