from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from refillia.services.store import InMemoryStationStore

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SUBMITTER_ID = "33333333-3333-3333-3333-333333333333"


@pytest.fixture
def store() -> InMemoryStationStore:
    store = InMemoryStationStore(search_result_limit=10)
    store.add_profile(SUBMITTER_ID, username="juan", email="juan@example.com")
    store.add_station(
        station_id="s1",
        name="Fountain at Plaza",
        description="Cold water near the kiosk",
        landmark="City Hall",
        latitude=14.5995,
        longitude=120.9842,
        added_by=SUBMITTER_ID,
        created_at=BASE_TIME,
    )
    store.add_station(
        station_id="s2",
        name="Library Refill Point",
        description="Second floor, by the stairs",
        latitude=14.6,
        longitude=121.0,
        added_by="44444444-4444-4444-4444-444444444444",
        created_at=BASE_TIME + timedelta(hours=1),
    )
    store.add_station(
        station_id="s3",
        name="Park Fountain",
        description="Next to the playground",
        latitude=14.61,
        longitude=121.01,
        added_by=SUBMITTER_ID,
        status="verified",
        created_at=BASE_TIME - timedelta(days=1),
    )
    return store
