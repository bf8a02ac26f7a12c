"""Named station views and the invalidate -> re-fetch barrier run after moderation writes."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from functools import lru_cache

from opentelemetry import trace

from refillia.core.config import get_settings
from refillia.services.repository import StationRecord, StationRepository, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PENDING_VIEW = "pending_stations"
VERIFIED_VIEW = "verified_stations"
MAP_VIEW = "verified_map_stations"

ViewLoader = Callable[[], Awaitable[list[StationRecord]]]


class ViewSyncError(Exception):
    """Raised when one or more views could not be re-fetched after invalidation."""

    def __init__(self, failed_views: list[str], cause: BaseException | None = None) -> None:
        super().__init__(f"failed to refresh views: {', '.join(failed_views)}")
        self.failed_views = failed_views
        self.cause = cause


@dataclass(slots=True)
class _ViewState:
    loader: ViewLoader
    data: list[StationRecord] | None = None
    stale: bool = True
    generation: int = 0
    loaded_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ViewCache:
    def __init__(self, *, max_age_seconds: float | None = None) -> None:
        self.max_age_seconds = max_age_seconds
        self._views: dict[str, _ViewState] = {}

    def register(self, name: str, loader: ViewLoader) -> None:
        if name in self._views:
            raise ValueError(f"view already registered: {name}")
        self._views[name] = _ViewState(loader=loader)

    def names(self) -> list[str]:
        return list(self._views)

    def peek(self, name: str) -> list[StationRecord] | None:
        """Return the materialized working set without loading it."""
        return self._state(name).data

    async def get(self, name: str) -> list[StationRecord]:
        state = self._state(name)
        if self._expired(state):
            state.stale = True
        while state.stale or state.data is None:
            await self._load(name, state)
        return list(state.data or [])

    def invalidate(self, names: Iterable[str] | None = None) -> list[str]:
        selected = self._select(names)
        for name in selected:
            state = self._views[name]
            state.stale = True
            state.generation += 1
        logger.debug("invalidated views: %s", selected)
        return selected

    async def refetch(self, names: Iterable[str] | None = None) -> None:
        selected = self._select(names)
        results = await asyncio.gather(
            *(self._load(name, self._views[name], force=True) for name in selected),
            return_exceptions=True,
        )
        failed = [name for name, result in zip(selected, results) if isinstance(result, BaseException)]
        if failed:
            cause = next(result for result in results if isinstance(result, BaseException))
            raise ViewSyncError(failed, cause) from cause

    async def synchronize(self, names: Iterable[str] | None = None) -> None:
        with tracer.start_as_current_span("views.synchronize") as span:
            selected = self.invalidate(names)
            span.set_attribute("views.names", selected)
            await self.refetch(selected)

    async def _load(self, name: str, state: _ViewState, *, force: bool = False) -> None:
        async with state.lock:
            if not force and not state.stale and state.data is not None:
                # Another caller reloaded it while this one waited for the lock.
                return
            generation = state.generation
            data = await state.loader()
            if generation != state.generation:
                # Invalidated while loading; the newer re-fetch owns the result.
                logger.debug("discarding superseded load for view=%s", name)
                return
            state.data = data
            state.stale = False
            state.loaded_at = time.monotonic()

    def _expired(self, state: _ViewState) -> bool:
        if self.max_age_seconds is None:
            return False
        return time.monotonic() - state.loaded_at > self.max_age_seconds

    def _state(self, name: str) -> _ViewState:
        try:
            return self._views[name]
        except KeyError:
            raise KeyError(f"unknown view: {name}") from None

    def _select(self, names: Iterable[str] | None) -> list[str]:
        if names is None:
            return self.names()
        selected = list(dict.fromkeys(names))
        for name in selected:
            self._state(name)
        return selected


def build_station_views(repository: StationRepository, *, max_age_seconds: float | None = None) -> ViewCache:
    views = ViewCache(max_age_seconds=max_age_seconds)

    async def load_pending() -> list[StationRecord]:
        return await repository.fetch_by_status("unverified")

    async def load_verified() -> list[StationRecord]:
        return await repository.fetch_by_status("verified")

    views.register(PENDING_VIEW, load_pending)
    views.register(VERIFIED_VIEW, load_verified)
    return views


def register_map_view(views: ViewCache, repository: StationRepository) -> None:
    async def load_map_stations() -> list[StationRecord]:
        return await repository.fetch_by_status("verified")

    views.register(MAP_VIEW, load_map_stations)


@lru_cache
def get_view_cache() -> ViewCache:
    repository = get_repository()
    views = build_station_views(repository, max_age_seconds=get_settings().view_max_age_seconds)
    register_map_view(views, repository)
    return views
