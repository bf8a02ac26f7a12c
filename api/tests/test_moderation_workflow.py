from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from refillia.services.moderation import (
    DecisionError,
    DecisionStatus,
    ModerationWorkflow,
)
from refillia.services.repository import RepositoryUnavailableError
from refillia.services.store import InMemoryStationStore
from refillia.services.views import PENDING_VIEW, VERIFIED_VIEW, ViewCache, build_station_views


class RecordingStore(InMemoryStationStore):
    def __init__(self, inner: InMemoryStationStore, *, write_delay: float = 0.0) -> None:
        super().__init__(search_result_limit=inner.search_result_limit)
        self.stations = inner.stations
        self.profiles = inner.profiles
        self.calls: list[str] = []
        self.write_delay = write_delay

    async def fetch_by_status(self, status):
        self.calls.append(f"fetch_by_status:{status}")
        return await super().fetch_by_status(status)

    async def fetch_by_id(self, station_id):
        self.calls.append(f"fetch_by_id:{station_id}")
        return await super().fetch_by_id(station_id)

    async def update_status(self, station_id, status, *, updated_at, expected_updated_at=None):
        self.calls.append(f"update_status:{station_id}:{status}")
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        return await super().update_status(
            station_id,
            status,
            updated_at=updated_at,
            expected_updated_at=expected_updated_at,
        )


def _workflow(store, **kwargs) -> tuple[ModerationWorkflow, ViewCache]:
    views = build_station_views(store)
    return ModerationWorkflow(store, views, **kwargs), views


def test_privileged_approval_moves_station_between_lists(store) -> None:
    workflow, views = _workflow(store)

    async def scenario():
        await views.get(PENDING_VIEW)
        await views.get(VERIFIED_VIEW)
        result = await workflow.decide("s1", "verified", privileged=True, actor_id="admin-1")
        return result, await views.get(PENDING_VIEW), await views.get(VERIFIED_VIEW)

    result, pending, verified = asyncio.run(scenario())

    assert result.status is DecisionStatus.SUCCEEDED
    assert result.succeeded
    assert result.station is not None and result.station.status == "verified"
    assert result.notification.title == "Station verified"
    assert result.notification.description == "The refill station has been verified successfully."
    assert "s1" in {station.id for station in verified}
    assert "s1" not in {station.id for station in pending}
    assert workflow.in_flight() == set()


def test_rejection_removes_station_from_pending(store) -> None:
    workflow, views = _workflow(store)

    async def scenario():
        result = await workflow.decide("s2", "rejected", privileged=True)
        return result, await views.get(PENDING_VIEW), await views.get(VERIFIED_VIEW)

    result, pending, verified = asyncio.run(scenario())

    assert result.succeeded
    assert [station.id for station in pending] == ["s1"]
    assert "s2" not in {station.id for station in verified}


def test_unprivileged_caller_never_reaches_store(store) -> None:
    recording = RecordingStore(store)
    workflow, _ = _workflow(recording)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=False))

    assert result.status is DecisionStatus.FAILED
    assert result.error is DecisionError.UNAUTHORIZED
    assert result.notification.variant == "destructive"
    assert recording.calls == []
    assert store.stations["s1"]["status"] == "unverified"


def test_missing_station_reports_not_found(store) -> None:
    workflow, _ = _workflow(store)

    result = asyncio.run(workflow.decide("missing-id", "verified", privileged=True))

    assert result.error is DecisionError.NOT_FOUND
    assert result.notification.title == "Error"
    assert result.notification.description == "Could not find the station to update"
    assert workflow.in_flight() == set()


def test_concurrent_decisions_for_same_station_allow_one_write(store) -> None:
    recording = RecordingStore(store, write_delay=0.05)
    workflow, _ = _workflow(recording)

    async def scenario():
        first = asyncio.create_task(workflow.decide("s1", "verified", privileged=True))
        await asyncio.sleep(0.01)
        assert workflow.in_flight() == {"s1"}
        second = await workflow.decide("s1", "rejected", privileged=True)
        return await first, second

    first, second = asyncio.run(scenario())

    assert first.status is DecisionStatus.SUCCEEDED
    assert second.status is DecisionStatus.ALREADY_IN_PROGRESS
    assert second.error is None
    writes = [call for call in recording.calls if call.startswith("update_status")]
    assert writes == ["update_status:s1:verified"]
    assert workflow.in_flight() == set()


def test_decisions_for_different_stations_run_independently(store) -> None:
    recording = RecordingStore(store, write_delay=0.02)
    workflow, _ = _workflow(recording)

    async def scenario():
        return await asyncio.gather(
            workflow.decide("s1", "verified", privileged=True),
            workflow.decide("s2", "rejected", privileged=True),
        )

    results = asyncio.run(scenario())

    assert all(result.succeeded for result in results)


def test_updated_at_strictly_advances_even_with_lagging_clock(store) -> None:
    before = store.stations["s1"]["updated_at"]
    lagging = before - timedelta(hours=1)
    workflow, _ = _workflow(store, clock=lambda: lagging)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.station is not None
    assert result.station.updated_at > before


def test_updated_at_uses_clock_when_ahead(store) -> None:
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    workflow, _ = _workflow(store, clock=lambda: now)

    result = asyncio.run(workflow.decide("s1", "rejected", privileged=True))

    assert result.station is not None
    assert result.station.updated_at == now


def test_terminal_station_cannot_be_decided_again(store) -> None:
    workflow, _ = _workflow(store)

    result = asyncio.run(workflow.decide("s3", "rejected", privileged=True))

    assert result.error is DecisionError.INVALID_TRANSITION
    assert store.stations["s3"]["status"] == "verified"


def test_reported_station_can_be_moderated(store) -> None:
    store.stations["s2"]["status"] = "reported"
    workflow, _ = _workflow(store)

    result = asyncio.run(workflow.decide("s2", "verified", privileged=True))

    assert result.succeeded


class ConcurrentWriterStore(InMemoryStationStore):
    """Simulates another moderator writing between our read and our write."""

    async def fetch_by_id(self, station_id):
        record = await super().fetch_by_id(station_id)
        self.stations[station_id]["updated_at"] = record.updated_at + timedelta(seconds=1)
        return record


def test_concurrent_modification_reports_conflict(store) -> None:
    conflicting = ConcurrentWriterStore()
    conflicting.stations = store.stations
    workflow, _ = _workflow(conflicting)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.error is DecisionError.CONFLICT
    assert store.stations["s1"]["status"] == "unverified"


def test_store_outage_reports_failure_and_releases_marker(store) -> None:
    store.available = False
    workflow, _ = _workflow(store)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.error is DecisionError.STORE_UNAVAILABLE
    assert result.notification.description == "Failed to verify the station. Please try again."
    assert workflow.in_flight() == set()


class BrokenWriteStore(InMemoryStationStore):
    async def update_status(self, station_id, status, *, updated_at, expected_updated_at=None):
        raise RuntimeError("driver bug")


def test_unexpected_store_error_becomes_failure_and_releases_marker(store) -> None:
    broken = BrokenWriteStore()
    broken.stations = store.stations
    workflow, _ = _workflow(broken)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.status is DecisionStatus.FAILED
    assert result.error is DecisionError.STORE_UNAVAILABLE
    assert result.notification.title == "Error"
    assert result.notification.description == "Failed to verify the station. Please try again."
    assert workflow.in_flight() == set()
    assert store.stations["s1"]["status"] == "unverified"


class StaleReadStore(InMemoryStationStore):
    """Write succeeds but the follow-up read still reports the previous status."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    async def fetch_by_id(self, station_id):
        self.reads += 1
        record = await super().fetch_by_id(station_id)
        if self.reads > 1:
            record.status = "unverified"
        return record


def test_post_update_mismatch_is_logged_not_surfaced(store, caplog) -> None:
    stale = StaleReadStore()
    stale.stations = store.stations
    workflow, _ = _workflow(stale)

    with caplog.at_level(logging.ERROR, logger="refillia.services.moderation"):
        result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.succeeded
    assert "status mismatch after update" in caplog.text


class FailingListStore(InMemoryStationStore):
    async def fetch_by_status(self, status):
        raise RepositoryUnavailableError("list endpoint down")


def test_view_refresh_failure_is_a_secondary_failure(store) -> None:
    failing = FailingListStore()
    failing.stations = store.stations
    workflow, _ = _workflow(failing)

    result = asyncio.run(workflow.decide("s1", "verified", privileged=True))

    assert result.status is DecisionStatus.FAILED
    assert result.error is DecisionError.SYNC_FAILED
    assert result.station is not None and result.station.status == "verified"
    assert store.stations["s1"]["status"] == "verified"


def test_refresh_completes_before_consistency_check(store) -> None:
    recording = RecordingStore(store)
    workflow, _ = _workflow(recording)

    asyncio.run(workflow.decide("s1", "verified", privileged=True))

    write_index = recording.calls.index("update_status:s1:verified")
    after_write = recording.calls[write_index + 1 :]
    assert sorted(after_write[:2]) == ["fetch_by_status:unverified", "fetch_by_status:verified"]
    assert after_write[2:] == ["fetch_by_id:s1"]
