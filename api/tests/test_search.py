from __future__ import annotations

import asyncio

from refillia.services.search import LiveSearch, Location, filter_stations, run_search


def test_filter_matches_any_text_field_case_insensitively(store) -> None:
    stations = asyncio.run(store.fetch_by_status("unverified"))

    assert [s.id for s in filter_stations(stations, "KIOSK")] == ["s1"]
    assert [s.id for s in filter_stations(stations, "city hall")] == ["s1"]
    assert [s.id for s in filter_stations(stations, "juan@")] == ["s1"]
    assert [s.id for s in filter_stations(stations, "stairs")] == ["s2"]
    # s2 has no profile, so it carries the "Unknown" placeholder.
    assert [s.id for s in filter_stations(stations, "unknown")] == ["s2"]


def test_filter_with_empty_query_returns_whole_working_set(store) -> None:
    stations = asyncio.run(store.fetch_by_status("unverified"))

    assert filter_stations(stations, "") == stations


def test_filter_is_repeatable(store) -> None:
    stations = asyncio.run(store.fetch_by_status("unverified"))

    assert filter_stations(stations, "fount") == filter_stations(stations, "fount")


def test_run_search_skips_store_for_blank_query() -> None:
    calls: list[str] = []

    async def search_fn(query: str):
        calls.append(query)
        return []

    outcome = asyncio.run(run_search(search_fn, "   "))

    assert outcome.stations == []
    assert calls == []


def test_run_search_swallows_store_errors() -> None:
    async def search_fn(query: str):
        raise ConnectionError("offline")

    outcome = asyncio.run(run_search(search_fn, "fountain"))

    assert outcome.stations == []
    assert outcome.focus is None


def test_single_match_produces_focus(store) -> None:
    outcome = asyncio.run(run_search(store.search, "library"))

    assert [s.id for s in outcome.stations] == ["s2"]
    assert outcome.focus == Location(latitude=14.6, longitude=121.0)


def test_multiple_matches_produce_no_focus(store) -> None:
    outcome = asyncio.run(run_search(store.search, "fountain"))

    assert len(outcome.stations) == 2
    assert outcome.focus is None


def test_rapid_typing_collapses_into_one_search() -> None:
    calls: list[str] = []

    async def search_fn(query: str):
        calls.append(query)
        return []

    async def scenario() -> None:
        live = LiveSearch(search_fn, delay_seconds=0.3)
        for query in ("f", "fo", "fou", "foun"):
            live.update(query)
            await asyncio.sleep(0.05)
        await live.wait_idle()

    asyncio.run(scenario())
    assert calls == ["foun"]


def test_late_result_from_superseded_search_is_discarded(store) -> None:
    release_first = asyncio.Event()
    applied: list[str] = []

    async def search_fn(query: str):
        if query == "park":
            await release_first.wait()
        return await store.search(query)

    async def scenario() -> list[str]:
        live = LiveSearch(search_fn, delay_seconds=0.01, on_results=lambda outcome: applied.append(outcome.query))
        live.update("park")
        await asyncio.sleep(0.05)  # "park" has been issued and is waiting on the store
        live.update("library")
        await asyncio.sleep(0.05)
        release_first.set()
        await live.wait_idle()
        return [station.id for station in live.results]

    result_ids = asyncio.run(scenario())
    assert result_ids == ["s2"]
    assert applied == ["library"]


def test_blank_query_clears_results_without_remote_call(store) -> None:
    calls: list[str] = []

    async def search_fn(query: str):
        calls.append(query)
        return await store.search(query)

    async def scenario():
        live = LiveSearch(search_fn, delay_seconds=0.01)
        live.update("library")
        await live.wait_idle()
        first = live.results
        live.update("  ")
        await live.wait_idle()
        return first, live.results

    first, cleared = asyncio.run(scenario())
    assert [s.id for s in first] == ["s2"]
    assert cleared == []
    assert calls == ["library"]


def test_focus_callback_fires_for_single_match(store) -> None:
    focused: list[Location] = []

    async def scenario() -> None:
        live = LiveSearch(store.search, delay_seconds=0.01, on_focus=focused.append)
        live.update("plaza")
        await live.wait_idle()
        live.update("fountain")
        await live.wait_idle()

    asyncio.run(scenario())
    assert focused == [Location(latitude=14.5995, longitude=120.9842)]


def test_close_cancels_pending_timer() -> None:
    calls: list[str] = []

    async def search_fn(query: str):
        calls.append(query)
        return []

    async def scenario() -> None:
        live = LiveSearch(search_fn, delay_seconds=0.05)
        live.update("fountain")
        live.close()
        await asyncio.sleep(0.1)
        await live.wait_idle()

    asyncio.run(scenario())
    assert calls == []
