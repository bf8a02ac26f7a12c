from refillia.core.config import Settings
from refillia.core.telemetry import parse_headers, setup_api_telemetry


def test_parse_headers_skips_malformed_items() -> None:
    assert parse_headers("authorization=Bearer abc, broken, x-team = refill ,=orphan") == {
        "authorization": "Bearer abc",
        "x-team": "refill",
    }


def test_parse_headers_handles_missing_value() -> None:
    assert parse_headers(None) == {}


def test_setup_is_noop_when_disabled() -> None:
    runtime = setup_api_telemetry(app=None, settings=Settings(otel_enabled=False))  # type: ignore[arg-type]

    assert runtime.enabled is False
    assert runtime.provider is None
