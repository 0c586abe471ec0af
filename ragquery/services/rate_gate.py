"""Per-provider, per-window admission control backed by persisted counters."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable

from loguru import logger

from ragquery.config import settings
from ragquery.models.domain import Cadence, ProviderType, RateCounter, Window, period_start
from ragquery.services.storage import Storage


@dataclass(frozen=True, slots=True)
class WindowPolicy:
    window: Window
    limit: int | None
    cadence: Cadence = Cadence.ROLLING


DEFAULT_LIMITS: dict[ProviderType, tuple[WindowPolicy, ...]] = {
    ProviderType.OPENROUTER: (
        WindowPolicy(Window.MINUTE, 20),
        WindowPolicy(Window.DAY, 50, Cadence.CALENDAR),
    ),
    ProviderType.GROQ: (
        WindowPolicy(Window.MINUTE, 30),
        WindowPolicy(Window.DAY, 1000),
    ),
    ProviderType.CEREBRAS: (
        WindowPolicy(Window.MINUTE, 30),
        WindowPolicy(Window.DAY, 14400),
    ),
    ProviderType.COHERE: (
        WindowPolicy(Window.MINUTE, 20),
        WindowPolicy(Window.MONTH, 1000, Cadence.CALENDAR),
    ),
    ProviderType.POLLINATIONS: (
        WindowPolicy(Window.MINUTE, None),
        WindowPolicy(Window.DAY, None),
    ),
    ProviderType.TAVILY: (WindowPolicy(Window.MONTH, 1000, Cadence.CALENDAR),),
    ProviderType.BRAVE: (
        WindowPolicy(Window.MINUTE, 60),
        WindowPolicy(Window.MONTH, 2000, Cadence.CALENDAR),
    ),
    ProviderType.DUCKDUCKGO: (WindowPolicy(Window.MINUTE, 20),),
    ProviderType.SEARXNG: (WindowPolicy(Window.MINUTE, None),),
}


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def apply_overrides(
    policies: dict[ProviderType, tuple[WindowPolicy, ...]],
    overrides: dict[str, dict[str, int | None]],
) -> dict[ProviderType, tuple[WindowPolicy, ...]]:
    """Merge ``{"groq": {"minute": 30}}`` style overrides into the policy table."""
    merged = dict(policies)
    for provider_name, windows in overrides.items():
        provider = ProviderType.parse(provider_name)
        if provider is None or not isinstance(windows, dict):
            logger.warning(f"Ignoring rate limit override for unknown provider {provider_name!r}")
            continue
        by_window = {p.window: p for p in merged.get(provider, ())}
        for window_name, limit in windows.items():
            try:
                window = Window(str(window_name).lower())
            except ValueError:
                logger.warning(f"Ignoring rate limit override for unknown window {window_name!r}")
                continue
            existing = by_window.get(window)
            cadence = existing.cadence if existing else Cadence.ROLLING
            by_window[window] = WindowPolicy(window, None if limit is None else int(limit), cadence)
        merged[provider] = tuple(by_window.values())
    return merged


class RateGate:
    """Admits or refuses provider calls against minute/day/month quotas.

    One lock serializes every read-modify-write of the persisted counters,
    so concurrent admissions can never both pass on the last unit of quota.
    """

    def __init__(
        self,
        storage: Storage,
        policies: dict[ProviderType, tuple[WindowPolicy, ...]] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.storage = storage
        if policies is None:
            policies = apply_overrides(DEFAULT_LIMITS, settings.rate_limit_override_map)
        self.policies = policies
        self._clock = clock
        self._lock = asyncio.Lock()
        self._denied: dict[ProviderType, Window] = {}

    def _seed(self, policy: WindowPolicy, now: datetime) -> RateCounter:
        return RateCounter(
            window=policy.window,
            used=0,
            limit=policy.limit,
            window_start=period_start(policy.window, policy.cadence, now),
            cadence=policy.cadence,
        )

    async def _load(self, provider: ProviderType, now: datetime) -> dict[Window, RateCounter]:
        """Stored counters for every declared window, with due resets applied."""
        stored = await self.storage.get_rate_counters(provider) or {}
        counters: dict[Window, RateCounter] = {}
        for policy in self.policies.get(provider, ()):
            counter = stored.get(policy.window)
            if counter is None:
                counter = self._seed(policy, now)
            elif not counter.observed and counter.limit != policy.limit:
                # configured limits may change between runs; only provider readings stick
                counter = replace(counter, limit=policy.limit)
            counters[policy.window] = counter
        # telemetry may have recorded windows that the policy table does not declare
        for window, counter in stored.items():
            counters.setdefault(window, counter)
        for window, counter in counters.items():
            if counter.is_due(now):
                counters[window] = counter.reset(now)
        return counters

    async def admit(
        self,
        provider: ProviderType,
        windows: Iterable[Window] | None = None,
        cost: int = 1,
    ) -> bool:
        async with self._lock:
            now = self._clock()
            counters = await self._load(provider, now)
            checked = list(counters) if windows is None else [w for w in windows if w in counters]

            for window in checked:
                if not counters[window].allows(cost):
                    self._denied[provider] = window
                    logger.warning(
                        f"Rate gate denied {provider.value}: {window.value} window "
                        f"{counters[window].used}/{counters[window].limit}"
                    )
                    return False

            for window in checked:
                counters[window] = replace(counters[window], used=counters[window].used + cost)
            await self.storage.put_rate_counters(provider, counters)
            self._denied.pop(provider, None)
            return True

    def denying_window(self, provider: ProviderType) -> Window | None:
        """Window that refused the most recent denied admission for ``provider``."""
        return self._denied.get(provider)

    async def update_limits(
        self,
        provider: ProviderType,
        window: Window,
        remaining: int | None = None,
        limit: int | None = None,
    ) -> RateCounter:
        """Reconcile a counter with quota figures reported by the provider."""
        async with self._lock:
            now = self._clock()
            counters = await self._load(provider, now)
            counter = counters.get(window) or self._seed(WindowPolicy(window, None), now)

            if limit is not None:
                counter = replace(counter, limit=max(int(limit), 0), observed=True)
            if remaining is not None:
                remaining = max(int(remaining), 0)
                if counter.limit is not None:
                    counter = replace(counter, used=max(counter.limit - remaining, 0))
                else:
                    counter = replace(counter, limit=counter.used + remaining, observed=True)
            if counter.limit is not None and counter.used > counter.limit:
                counter = replace(counter, used=counter.limit)

            counters[window] = counter
            await self.storage.put_rate_counters(provider, counters)
            logger.debug(
                f"Reconciled {provider.value} {window.value}: used={counter.used} limit={counter.limit}"
            )
            return counter

    async def snapshot(self, provider: ProviderType) -> list[RateCounter]:
        async with self._lock:
            counters = await self._load(provider, self._clock())
        order = list(Window)
        return sorted(counters.values(), key=lambda c: order.index(c.window))
