from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from refillia.services.repository import (
    STATION_STATUSES,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    StationRecord,
    station_from_row,
)


class InMemoryStationStore:
    """Station store for local development and tests; mirrors the Postgres adapter semantics."""

    def __init__(self, search_result_limit: int = 20) -> None:
        self.search_result_limit = max(1, search_result_limit)
        self.stations: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.available = True

    def add_profile(self, user_id: str, *, username: str, email: str) -> None:
        self.profiles[user_id] = {"username": username, "email": email}

    def add_station(
        self,
        *,
        name: str,
        description: str = "",
        latitude: float = 0.0,
        longitude: float = 0.0,
        landmark: str | None = None,
        added_by: str | None = None,
        station_id: str | None = None,
        status: str = "unverified",
        created_at: datetime | None = None,
    ) -> StationRecord:
        created_at = created_at or datetime.now(timezone.utc)
        row = {
            "id": station_id or str(uuid4()),
            "name": name,
            "description": description,
            "landmark": landmark,
            "latitude": latitude,
            "longitude": longitude,
            "status": status,
            "added_by": added_by,
            "created_at": created_at,
            "updated_at": created_at,
        }
        record = station_from_row(row)
        self.stations[record.id] = row
        return record

    async def close(self) -> None:
        return None

    async def fetch_by_status(self, status: str) -> list[StationRecord]:
        if status not in STATION_STATUSES:
            raise RepositoryValidationError(f"invalid station status: {status!r}")
        self._ensure_available()
        rows = [row for row in self.stations.values() if row["status"] == status]
        return self._joined(sorted(rows, key=lambda row: row["created_at"], reverse=True))

    async def fetch_by_id(self, station_id: str) -> StationRecord:
        self._ensure_available()
        row = self.stations.get(station_id)
        if row is None:
            raise RepositoryNotFoundError("station not found")
        return self._join(row)

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
        self._ensure_available()
        row = self.stations.get(station_id)
        if row is None:
            raise RepositoryNotFoundError("station not found")
        if expected_updated_at is not None and row["updated_at"] != expected_updated_at:
            raise RepositoryConflictError("station was modified concurrently")
        row["status"] = status
        row["updated_at"] = updated_at
        return self._join(row)

    async def search(self, query: str) -> list[StationRecord]:
        normalized_query = query.strip().lower()
        if not normalized_query:
            return []
        self._ensure_available()
        rows = [row for row in self.stations.values() if normalized_query in (row["name"] or "").lower()]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return self._joined(rows[: self.search_result_limit])

    def _ensure_available(self) -> None:
        if not self.available:
            raise RepositoryUnavailableError("station store unavailable")

    def _joined(self, rows: list[dict[str, Any]]) -> list[StationRecord]:
        return [self._join(row) for row in rows]

    def _join(self, row: dict[str, Any]) -> StationRecord:
        profile = self.profiles.get(row["added_by"] or "", {})
        return station_from_row({**row, **profile})
