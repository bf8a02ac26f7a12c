from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from itertools import count

from opentelemetry import trace

from refillia.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    StationRecord,
    StationRepository,
    get_repository,
)
from refillia.services.views import ViewCache, ViewSyncError, get_view_cache

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DECISION_OUTCOMES = ("verified", "rejected")
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "unverified": {"verified", "rejected"},
    "reported": {"verified", "rejected"},
    "verified": set(),
    "rejected": set(),
}
MIN_TIMESTAMP_STEP = timedelta(microseconds=1)


class DecisionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_IN_PROGRESS = "already_in_progress"


class DecisionError(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    SYNC_FAILED = "sync_failed"


@dataclass(slots=True, frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"


@dataclass(slots=True)
class DecisionResult:
    station_id: str
    outcome: str
    status: DecisionStatus
    notification: Notification
    error: DecisionError | None = None
    station: StationRecord | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is DecisionStatus.SUCCEEDED


class _DecisionFailure(Exception):
    def __init__(self, error: DecisionError, message: str) -> None:
        super().__init__(message)
        self.error = error
        self.message = message


class ModerationWorkflow:
    """Moves stations out of ``unverified`` and keeps the dependent views in step.

    At most one decision runs per station id. The marker is taken before the first
    suspension point, so a second ``decide`` for the same id issued while the first
    is still awaiting the store resolves as ``already_in_progress``.
    """

    def __init__(
        self,
        repository: StationRepository,
        views: ViewCache,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.views = views
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._in_flight: dict[str, int] = {}
        self._tokens = count(1)

    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    async def decide(
        self,
        station_id: str,
        outcome: str,
        *,
        privileged: bool,
        actor_id: str | None = None,
    ) -> DecisionResult:
        if outcome not in DECISION_OUTCOMES:
            raise ValueError(f"outcome must be one of {DECISION_OUTCOMES}, got {outcome!r}")

        if not privileged:
            logger.warning("moderation denied station_id=%s actor_id=%s", station_id, actor_id)
            return self._failed(
                station_id,
                outcome,
                DecisionError.UNAUTHORIZED,
                "You do not have permission to moderate stations.",
            )

        if station_id in self._in_flight:
            logger.info("moderation already in progress station_id=%s", station_id)
            return DecisionResult(
                station_id=station_id,
                outcome=outcome,
                status=DecisionStatus.ALREADY_IN_PROGRESS,
                notification=Notification(
                    title="Update in progress",
                    description="This station is already being updated.",
                ),
            )

        with tracer.start_as_current_span("moderation.decide") as span:
            span.set_attribute("station.id", station_id)
            span.set_attribute("moderation.outcome", outcome)
            with self._transition(station_id):
                try:
                    station = await self._apply(station_id, outcome)
                except _DecisionFailure as failure:
                    span.set_attribute("moderation.error", failure.error.value)
                    return self._failed(station_id, outcome, failure.error, failure.message)
                except Exception:
                    logger.exception("unexpected error during moderation station_id=%s", station_id)
                    span.set_attribute("moderation.error", DecisionError.STORE_UNAVAILABLE.value)
                    return self._failed(
                        station_id,
                        outcome,
                        DecisionError.STORE_UNAVAILABLE,
                        f"Failed to {_verb(outcome)} the station. Please try again.",
                    )

                logger.info(
                    "station status updated station_id=%s status=%s actor_id=%s",
                    station_id,
                    outcome,
                    actor_id,
                )

                try:
                    await self.views.synchronize()
                except ViewSyncError as exc:
                    logger.error(
                        "view refresh failed after moderation station_id=%s views=%s",
                        station_id,
                        exc.failed_views,
                    )
                    span.set_attribute("moderation.error", DecisionError.SYNC_FAILED.value)
                    result = self._failed(
                        station_id,
                        outcome,
                        DecisionError.SYNC_FAILED,
                        f"The station was {outcome}, but the station lists could not be refreshed.",
                    )
                    result.station = station
                    return result

                await self._check_consistency(station_id, outcome)

        return DecisionResult(
            station_id=station_id,
            outcome=outcome,
            status=DecisionStatus.SUCCEEDED,
            notification=Notification(
                title=f"Station {outcome}",
                description=f"The refill station has been {outcome} successfully.",
            ),
            station=station,
        )

    async def _apply(self, station_id: str, outcome: str) -> StationRecord:
        try:
            current = await self.repository.fetch_by_id(station_id)
        except RepositoryNotFoundError as exc:
            raise _DecisionFailure(DecisionError.NOT_FOUND, "Could not find the station to update") from exc
        except RepositoryError as exc:
            raise self._store_failure(exc, outcome) from exc

        allowed = ALLOWED_TRANSITIONS.get(current.status, set())
        if outcome not in allowed:
            raise _DecisionFailure(
                DecisionError.INVALID_TRANSITION,
                f"Station is already {current.status} and cannot be {outcome}.",
            )

        updated_at = max(self._clock(), current.updated_at + MIN_TIMESTAMP_STEP)
        try:
            return await self.repository.update_status(
                station_id,
                outcome,
                updated_at=updated_at,
                expected_updated_at=current.updated_at,
            )
        except RepositoryNotFoundError as exc:
            raise _DecisionFailure(DecisionError.NOT_FOUND, "Could not find the station to update") from exc
        except RepositoryError as exc:
            raise self._store_failure(exc, outcome) from exc

    async def _check_consistency(self, station_id: str, outcome: str) -> None:
        try:
            observed = await self.repository.fetch_by_id(station_id)
        except RepositoryError:
            logger.warning("could not re-read station after update station_id=%s", station_id, exc_info=True)
            return
        if observed.status != outcome:
            logger.error(
                "status mismatch after update station_id=%s expected=%s actual=%s",
                station_id,
                outcome,
                observed.status,
            )

    @contextmanager
    def _transition(self, station_id: str) -> Iterator[int]:
        token = next(self._tokens)
        self._in_flight[station_id] = token
        try:
            yield token
        finally:
            if self._in_flight.get(station_id) == token:
                del self._in_flight[station_id]

    @staticmethod
    def _store_failure(exc: RepositoryError, outcome: str) -> _DecisionFailure:
        if isinstance(exc, RepositoryConflictError):
            logger.warning("concurrent modification detected: %s", exc)
            return _DecisionFailure(
                DecisionError.CONFLICT,
                "The station was changed by someone else. Refresh and try again.",
            )
        if isinstance(exc, RepositoryUnavailableError):
            logger.error("station store unavailable during moderation: %s", exc)
        else:
            logger.error("station store rejected moderation write: %s", exc)
        return _DecisionFailure(
            DecisionError.STORE_UNAVAILABLE,
            f"Failed to {_verb(outcome)} the station. Please try again.",
        )

    @staticmethod
    def _failed(station_id: str, outcome: str, error: DecisionError, message: str) -> DecisionResult:
        return DecisionResult(
            station_id=station_id,
            outcome=outcome,
            status=DecisionStatus.FAILED,
            error=error,
            notification=Notification(title="Error", description=message, variant="destructive"),
        )


def _verb(outcome: str) -> str:
    return {"verified": "verify", "rejected": "reject"}.get(outcome, outcome)


@lru_cache
def get_moderation_workflow() -> ModerationWorkflow:
    return ModerationWorkflow(get_repository(), get_view_cache())
