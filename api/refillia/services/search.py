from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from refillia.services.repository import StationRecord

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.3

SearchFn = Callable[[str], Awaitable[list[StationRecord]]]


@dataclass(slots=True, frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(slots=True)
class SearchOutcome:
    query: str
    stations: list[StationRecord] = field(default_factory=list)

    @property
    def focus(self) -> Location | None:
        """Location to center on when the search narrowed down to a single station."""
        if len(self.stations) != 1:
            return None
        station = self.stations[0]
        return Location(latitude=station.latitude, longitude=station.longitude)


def station_matches(station: StationRecord, needle: str) -> bool:
    haystacks = (
        station.name,
        station.description,
        station.profile.username,
        station.profile.email,
        station.landmark,
    )
    return any(value and needle in value.lower() for value in haystacks)


def filter_stations(stations: Iterable[StationRecord], query: str) -> list[StationRecord]:
    """Case-insensitive substring filter over an already materialized working set."""
    needle = query.lower()
    if not needle:
        return list(stations)
    return [station for station in stations if station_matches(station, needle)]


async def run_search(search_fn: SearchFn, query: str) -> SearchOutcome:
    """Run one remote search; blank queries and store failures yield no results."""
    normalized_query = query.strip()
    if not normalized_query:
        return SearchOutcome(query=query)
    try:
        stations = await search_fn(normalized_query)
    except Exception:
        logger.warning("station search failed query=%r", normalized_query, exc_info=True)
        return SearchOutcome(query=query)
    return SearchOutcome(query=query, stations=list(stations))


class LiveSearch:
    """Debounced type-ahead search.

    Every ``update`` restarts the quiescence timer. A timer that already fired has
    issued its store call; that call is left to finish, but its outcome is applied
    only if no later ``update`` happened in the meantime.
    """

    def __init__(
        self,
        search_fn: SearchFn,
        *,
        delay_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        on_results: Callable[[SearchOutcome], None] | None = None,
        on_focus: Callable[[Location], None] | None = None,
    ) -> None:
        self._search_fn = search_fn
        self.delay_seconds = delay_seconds
        self._on_results = on_results
        self._on_focus = on_focus
        self._generation = 0
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self.query = ""
        self.outcome = SearchOutcome(query="")

    @property
    def results(self) -> list[StationRecord]:
        return list(self.outcome.stations)

    def update(self, query: str) -> None:
        self.query = query
        self._generation += 1
        self._cancel_timer()

        if not query.strip():
            self._apply(SearchOutcome(query=query))
            self._refresh_idle()
            return

        generation = self._generation
        loop = asyncio.get_running_loop()
        self._idle.clear()
        self._timer = loop.call_later(self.delay_seconds, self._fire, query, generation)

    async def wait_idle(self) -> None:
        """Wait until no timer is pending and every issued search has settled."""
        while not self._idle.is_set():
            await self._idle.wait()

    def close(self) -> None:
        self._generation += 1
        self._cancel_timer()
        for task in self._tasks:
            task.cancel()
        self._refresh_idle()

    def _fire(self, query: str, generation: int) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._run(query, generation))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    async def _run(self, query: str, generation: int) -> None:
        outcome = await run_search(self._search_fn, query)
        if generation != self._generation:
            logger.debug("discarding stale search results query=%r", query)
            return
        self._apply(outcome)

    def _apply(self, outcome: SearchOutcome) -> None:
        self.outcome = outcome
        if self._on_results is not None:
            self._on_results(outcome)
        focus = outcome.focus
        if focus is not None and self._on_focus is not None:
            self._on_focus(focus)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("live search task failed", exc_info=task.exception())
        self._refresh_idle()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _refresh_idle(self) -> None:
        if self._timer is None and not self._tasks:
            self._idle.set()
