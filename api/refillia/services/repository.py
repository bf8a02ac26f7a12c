from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Mapping, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from refillia.core.config import get_settings

logger = logging.getLogger(__name__)

STATION_STATUSES = ("unverified", "verified", "rejected", "reported")
UNKNOWN_PROFILE_VALUE = "Unknown"
TABLE_NAME_CHARS = frozenset("abcdefghijklmnopqrstuvwxyz0123456789_.")


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the store is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested station does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when the station changed between read and conditional write."""


class RepositoryValidationError(RepositoryError):
    """Raised when a value is rejected before or by the store."""


@dataclass(slots=True)
class UserProfile:
    username: str = UNKNOWN_PROFILE_VALUE
    email: str = UNKNOWN_PROFILE_VALUE


@dataclass(slots=True)
class StationRecord:
    id: str
    name: str
    description: str
    latitude: float
    longitude: float
    status: str
    added_by: str | None
    created_at: datetime
    updated_at: datetime
    landmark: str | None = None
    profile: UserProfile = field(default_factory=UserProfile)


class StationRepository(Protocol):
    async def fetch_by_status(self, status: str) -> list[StationRecord]: ...

    async def fetch_by_id(self, station_id: str) -> StationRecord: ...

    async def update_status(
        self,
        station_id: str,
        status: str,
        *,
        updated_at: datetime,
        expected_updated_at: datetime | None = None,
    ) -> StationRecord: ...

    async def search(self, query: str) -> list[StationRecord]: ...

    async def close(self) -> None: ...


def station_from_row(row: Mapping[str, Any]) -> StationRecord:
    """Decode a joined station row into the canonical record shape.

    Rows reach this point with either snake_case or camelCase keys and with the
    profile either flattened (``username``/``email``) or nested under
    ``user_profiles``. Missing profile values fall back to ``"Unknown"``.
    """
    status = _pick(row, "status")
    if status not in STATION_STATUSES:
        raise RepositoryValidationError(f"invalid station status: {status!r}")

    latitude = _coerce_coordinate(_pick(row, "latitude"), limit=90.0, label="latitude")
    longitude = _coerce_coordinate(_pick(row, "longitude"), limit=180.0, label="longitude")

    nested = _pick(row, "user_profiles", "profile")
    if not isinstance(nested, Mapping):
        nested = {}
    username = _coerce_text(_pick(row, "username")) or _coerce_text(nested.get("username"))
    email = (
        _coerce_text(_pick(row, "email", "userEmail", "user_email"))
        or _coerce_text(nested.get("email"))
    )

    return StationRecord(
        id=str(_pick(row, "id")),
        name=_pick(row, "name") or "",
        description=_pick(row, "description") or "",
        landmark=_coerce_text(_pick(row, "landmark")),
        latitude=latitude,
        longitude=longitude,
        status=status,
        added_by=_coerce_text(_pick(row, "added_by", "addedBy")),
        created_at=_coerce_datetime(_pick(row, "created_at", "createdAt")),
        updated_at=_coerce_datetime(_pick(row, "updated_at", "updatedAt")),
        profile=UserProfile(
            username=username or UNKNOWN_PROFILE_VALUE,
            email=email or UNKNOWN_PROFILE_VALUE,
        ),
    )


def escape_like(query: str) -> str:
    return query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStationRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        *,
        command_timeout_seconds: float = 15.0,
        stations_table: str = "refill_stations",
        profiles_table: str = "user_profiles",
        search_result_limit: int = 20,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.stations_table = self._validate_table_name(stations_table)
        self.profiles_table = self._validate_table_name(profiles_table)
        self.search_result_limit = max(1, search_result_limit)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def fetch_by_status(self, status: str) -> list[StationRecord]:
        if status not in STATION_STATUSES:
            raise RepositoryValidationError(f"invalid station status: {status!r}")
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                {self._select_joined()}
                where s.status::text = $1
                order by s.created_at desc
                """,
                status,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("failed to fetch stations") from exc
        return [station_from_row(row) for row in rows]

    async def fetch_by_id(self, station_id: str) -> StationRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                {self._select_joined()}
                where s.id::text = $1
                """,
                station_id,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("failed to fetch station") from exc
        if not row:
            raise RepositoryNotFoundError("station not found")
        return station_from_row(row)

    async def update_status(
        self,
        station_id: str,
        status: str,
        *,
        updated_at: datetime,
        expected_updated_at: datetime | None = None,
    ) -> StationRecord:
        if status not in STATION_STATUSES:
            raise RepositoryValidationError(f"invalid station status: {status!r}")
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    updated = await conn.fetchval(
                        f"""
                        update {self.stations_table}
                        set status = $2, updated_at = $3
                        where id::text = $1
                          and ($4::timestamptz is null or updated_at = $4::timestamptz)
                        returning id::text
                        """,
                        station_id,
                        status,
                        updated_at,
                        expected_updated_at,
                    )
                    if updated is None:
                        exists = await conn.fetchval(
                            f"select 1 from {self.stations_table} where id::text = $1",
                            station_id,
                        )
                        if not exists:
                            raise RepositoryNotFoundError("station not found")
                        raise RepositoryConflictError("station was modified concurrently")

                    row = await conn.fetchrow(
                        f"""
                        {self._select_joined()}
                        where s.id::text = $1
                        """,
                        station_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid station status or id") from exc
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("failed to update station") from exc

        if not row:
            raise RepositoryNotFoundError("station not found")
        return station_from_row(row)

    async def search(self, query: str) -> list[StationRecord]:
        normalized_query = query.strip()
        if not normalized_query:
            return []
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                {self._select_joined()}
                where s.name ilike $1 escape '\\'
                order by s.created_at desc
                limit $2
                """,
                f"%{escape_like(normalized_query)}%",
                self.search_result_limit,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("failed to search stations") from exc
        return [station_from_row(row) for row in rows]

    def _select_joined(self) -> str:
        return f"""
            select
              s.id::text as id,
              s.name,
              s.description,
              s.landmark,
              s.latitude,
              s.longitude,
              s.status::text as status,
              s.added_by::text as added_by,
              s.created_at,
              s.updated_at,
              up.username,
              up.email
            from {self.stations_table} s
            left join {self.profiles_table} up on up.id = s.added_by
        """

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _validate_table_name(name: str) -> str:
        normalized = name.strip().lower()
        if not normalized or not set(normalized) <= TABLE_NAME_CHARS:
            raise ValueError(f"invalid table name: {name!r}")
        return normalized


def _pick(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return None


def _coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _coerce_coordinate(value: Any, *, limit: float, label: str) -> float:
    try:
        coordinate = float(value)
    except (TypeError, ValueError) as exc:
        raise RepositoryValidationError(f"invalid {label}: {value!r}") from exc
    if not -limit <= coordinate <= limit:
        raise RepositoryValidationError(f"{label} out of range: {coordinate}")
    return coordinate


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise RepositoryValidationError(f"invalid timestamp: {value!r}") from exc
    else:
        raise RepositoryValidationError(f"missing timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@lru_cache
def get_repository() -> StationRepository:
    settings = get_settings()
    if settings.store_backend == "memory":
        from refillia.services.store import InMemoryStationStore

        logger.info("using in-memory station store")
        return InMemoryStationStore(search_result_limit=settings.search_result_limit)
    return PostgresStationRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        stations_table=settings.stations_table,
        profiles_table=settings.profiles_table,
        search_result_limit=settings.search_result_limit,
    )
