from __future__ import annotations

import logging
from collections import deque

from refillia.core.auth import Principal
from refillia.core.config import get_settings
from refillia.services.moderation import (
    DecisionResult,
    ModerationWorkflow,
    Notification,
    get_moderation_workflow,
)
from refillia.services.repository import StationRecord, StationRepository, get_repository
from refillia.services.search import (
    DEFAULT_DEBOUNCE_SECONDS,
    LiveSearch,
    Location,
    SearchOutcome,
    filter_stations,
)
from refillia.services.views import PENDING_VIEW, VERIFIED_VIEW, ViewCache, get_view_cache

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 20


class DashboardSession:
    """State held for one moderator working the dashboard.

    The local filter runs over whatever pending/verified working sets are already
    loaded and recomputes on every keystroke; the live search goes to the store,
    debounced.
    """

    def __init__(
        self,
        principal: Principal,
        repository: StationRepository,
        views: ViewCache,
        workflow: ModerationWorkflow,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.principal = principal
        self.views = views
        self.workflow = workflow
        self.query = ""
        self.focus: Location | None = None
        self.notifications: deque[Notification] = deque(maxlen=MAX_NOTIFICATIONS)
        self.live_search = LiveSearch(
            repository.search,
            delay_seconds=debounce_seconds,
            on_results=self._on_search_results,
            on_focus=self._on_focus,
        )

    def is_privileged_caller(self) -> bool:
        return self.principal.is_privileged

    async def list_pending(self) -> list[StationRecord]:
        return await self.views.get(PENDING_VIEW)

    async def list_verified(self) -> list[StationRecord]:
        return await self.views.get(VERIFIED_VIEW)

    def set_query(self, query: str) -> None:
        self.query = query
        self.live_search.update(query)

    @property
    def search_results(self) -> list[StationRecord]:
        return self.live_search.results

    def filtered_pending(self) -> list[StationRecord]:
        return filter_stations(self.views.peek(PENDING_VIEW) or [], self.query)

    def filtered_verified(self) -> list[StationRecord]:
        return filter_stations(self.views.peek(VERIFIED_VIEW) or [], self.query)

    def is_updating(self, station_id: str) -> bool:
        return station_id in self.workflow.in_flight()

    async def decide(self, station_id: str, outcome: str) -> DecisionResult:
        result = await self.workflow.decide(
            station_id,
            outcome,
            privileged=self.is_privileged_caller(),
            actor_id=self.principal.actor_id,
        )
        self.notifications.append(result.notification)
        return result

    async def close(self) -> None:
        self.live_search.close()
        await self.live_search.wait_idle()

    def _on_search_results(self, outcome: SearchOutcome) -> None:
        self.focus = None
        logger.debug("search results query=%r count=%d", outcome.query, len(outcome.stations))

    def _on_focus(self, location: Location) -> None:
        self.focus = location


def create_dashboard_session(principal: Principal) -> DashboardSession:
    settings = get_settings()
    return DashboardSession(
        principal,
        get_repository(),
        get_view_cache(),
        get_moderation_workflow(),
        debounce_seconds=settings.search_debounce_seconds,
    )
