from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from ragquery.config import settings
from ragquery.models.domain import Model, ProviderType
from ragquery.services import logger as log_service

if TYPE_CHECKING:
    from ragquery.llm_client import ChatProvider
    from ragquery.services.rate_gate import RateGate

NO_MODELS_AVAILABLE = "no-models-available"

# Most capable first; matched as a case-insensitive substring of the model id.
AUTO_SELECT_PATTERNS: tuple[str, ...] = (
    "deepseek-r1",
    "llama-3.3-70b",
    "qwen-2.5-72b",
    "mixtral-8x22b",
    "claude-3-opus",
    "gpt-4",
)


@dataclass(frozen=True)
class ModelSnapshot:
    models: tuple[Model, ...] = ()
    by_id: dict[str, Model] = field(default_factory=dict)

    @classmethod
    def of(cls, models: list[Model]) -> ModelSnapshot:
        unique: dict[str, Model] = {}
        for model in models:
            unique.setdefault(model.id, model)
        return cls(models=tuple(unique.values()), by_id=unique)


class ModelRegistry:
    """Holds the current model snapshot and answers model-selection questions.

    The snapshot is rebuilt off to the side and swapped in one assignment,
    so readers never see a half-refreshed list.
    """

    def __init__(
        self,
        providers: dict[ProviderType, ChatProvider],
        rate_gate: RateGate | None = None,
        default_model: str | None = None,
        patterns: tuple[str, ...] = AUTO_SELECT_PATTERNS,
    ):
        self.providers = providers
        self.rate_gate = rate_gate
        self.configured_default = default_model if default_model is not None else settings.default_model
        self.patterns = patterns
        self._snapshot = ModelSnapshot()
        self._refresh_task: asyncio.Task | None = None

    @property
    def snapshot(self) -> ModelSnapshot:
        return self._snapshot

    def replace(self, models: list[Model]) -> None:
        self._snapshot = ModelSnapshot.of(models)

    def get(self, model_id: str) -> Model | None:
        return self._snapshot.by_id.get(model_id)

    def list_models(self) -> list[Model]:
        return list(self._snapshot.models)

    @property
    def default_model(self) -> str:
        snapshot = self._snapshot
        if self.configured_default and self.configured_default in snapshot.by_id:
            return self.configured_default
        if snapshot.models:
            return snapshot.models[0].id
        return self.configured_default or NO_MODELS_AVAILABLE

    def auto_select(self) -> str:
        snapshot = self._snapshot
        for pattern in self.patterns:
            for model in snapshot.models:
                if pattern in model.id.lower():
                    return model.id
        return self.default_model

    def resolve(self, requested: str | None) -> str:
        """Model id to use for a request; never raises."""
        if not requested or requested.strip().lower() == "auto":
            return self.auto_select()
        requested = requested.strip()
        if requested in self._snapshot.by_id:
            return requested
        fallback = self.default_model
        logger.warning(f"Model {requested} not available, falling back to {fallback}")
        return fallback

    async def refresh(self) -> int:
        """Fetch model lists from every configured provider and swap the snapshot."""
        collected: list[Model] = []
        for provider_type, provider in self.providers.items():
            if not provider.configured:
                continue
            try:
                models = await provider.list_models()
            except Exception as e:
                logger.error(f"Failed to fetch {provider_type.display_name} models: {e}")
                continue
            logger.info(f"Fetched {len(models)} {provider_type.display_name} models")
            collected.extend(models)

        self.replace(collected)
        count = len(self._snapshot.models)
        if count == 0:
            logger.warning("No models found available from any provider")
        log_service.log_event(
            event_type="models_refreshed",
            message=f"Model list updated: {count} models",
            default_model=self.default_model,
        )
        return count

    async def refresh_limits(self) -> None:
        """Pull account-level quota figures into the rate gate."""
        if self.rate_gate is None:
            return
        for provider_type, provider in self.providers.items():
            if not provider.configured:
                continue
            try:
                readings = await provider.fetch_limits()
                for reading in readings:
                    await self.rate_gate.update_limits(
                        provider_type, reading.window, remaining=reading.remaining, limit=reading.limit
                    )
            except Exception as e:
                logger.warning(f"Failed to fetch {provider_type.display_name} limits: {e}")

    async def _refresh_forever(self, interval: float) -> None:
        while True:
            try:
                await self.refresh()
                await self.refresh_limits()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Background model refresh failed: {e}")
            await asyncio.sleep(interval)

    def start_background_refresh(self, interval: float | None = None) -> asyncio.Task:
        if self._refresh_task is None or self._refresh_task.done():
            period = settings.model_refresh_interval_seconds if interval is None else interval
            self._refresh_task = asyncio.create_task(self._refresh_forever(period))
        return self._refresh_task

    async def stop_background_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
