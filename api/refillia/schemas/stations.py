from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from refillia.services.moderation import DecisionResult
from refillia.services.repository import StationRecord
from refillia.services.search import Location

StationStatus = Literal["unverified", "verified", "rejected", "reported"]
DecisionOutcome = Literal["verified", "rejected"]


class UserProfileOut(BaseModel):
    username: str = "Unknown"
    email: str = "Unknown"


class LocationOut(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

    @classmethod
    def from_location(cls, location: Location) -> "LocationOut":
        return cls(latitude=location.latitude, longitude=location.longitude)


class StationOut(BaseModel):
    id: str
    name: str
    description: str
    landmark: str | None = None
    latitude: float
    longitude: float
    status: StationStatus
    added_by: str | None = None
    created_at: datetime
    updated_at: datetime
    profile: UserProfileOut

    @classmethod
    def from_record(cls, record: StationRecord) -> "StationOut":
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            landmark=record.landmark,
            latitude=record.latitude,
            longitude=record.longitude,
            status=record.status,
            added_by=record.added_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
            profile=UserProfileOut(username=record.profile.username, email=record.profile.email),
        )


class StationSearchOut(BaseModel):
    query: str
    stations: list[StationOut] = Field(default_factory=list)
    focus: LocationOut | None = None


class DecisionRequest(BaseModel):
    outcome: DecisionOutcome


class NotificationOut(BaseModel):
    title: str
    description: str
    variant: str = "default"


class DecisionOut(BaseModel):
    station_id: str
    outcome: DecisionOutcome
    status: Literal["succeeded", "failed", "already_in_progress"]
    error: str | None = None
    notification: NotificationOut
    station: StationOut | None = None

    @classmethod
    def from_result(cls, result: DecisionResult) -> "DecisionOut":
        return cls(
            station_id=result.station_id,
            outcome=result.outcome,
            status=result.status.value,
            error=result.error.value if result.error else None,
            notification=NotificationOut(
                title=result.notification.title,
                description=result.notification.description,
                variant=result.notification.variant,
            ),
            station=StationOut.from_record(result.station) if result.station else None,
        )


class CallerOut(BaseModel):
    subject: str
    role: str | None = None
    is_privileged: bool


class DashboardOut(BaseModel):
    query: str
    is_privileged: bool
    pending: list[StationOut] = Field(default_factory=list)
    verified: list[StationOut] = Field(default_factory=list)
