import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from refillia.core.security import get_human_principal
from refillia.schemas.stations import (
    DashboardOut,
    DecisionOut,
    DecisionRequest,
    LocationOut,
    StationOut,
    StationSearchOut,
)
from refillia.services.moderation import DecisionError, DecisionStatus, get_moderation_workflow
from refillia.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    StationRecord,
    get_repository,
)
from refillia.services.search import run_search
from refillia.services.session import DashboardSession
from refillia.services.views import MAP_VIEW, PENDING_VIEW, VERIFIED_VIEW, ViewCache, get_view_cache

router = APIRouter()
logger = logging.getLogger(__name__)

DECISION_ERROR_STATUS = {
    DecisionError.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    DecisionError.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DecisionError.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    DecisionError.CONFLICT: status.HTTP_409_CONFLICT,
    DecisionError.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    DecisionError.SYNC_FAILED: status.HTTP_502_BAD_GATEWAY,
}


async def _load_view(views: ViewCache, name: str) -> list[StationRecord]:
    try:
        return await views.get(name)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        logger.error("malformed station row in view=%s: %s", name, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


@router.get("/pending", response_model=list[StationOut])
async def list_pending(
    principal=Depends(get_human_principal),
    views=Depends(get_view_cache),
) -> list[StationOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    rows = await _load_view(views, PENDING_VIEW)
    return [StationOut.from_record(row) for row in rows]


@router.get("/verified", response_model=list[StationOut])
async def list_verified(
    principal=Depends(get_human_principal),
    views=Depends(get_view_cache),
) -> list[StationOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    rows = await _load_view(views, VERIFIED_VIEW)
    return [StationOut.from_record(row) for row in rows]


@router.get("/map", response_model=list[StationOut])
async def list_map_stations(views=Depends(get_view_cache)) -> list[StationOut]:
    rows = await _load_view(views, MAP_VIEW)
    return [StationOut.from_record(row) for row in rows]


@router.get("/dashboard", response_model=DashboardOut)
async def dashboard(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    views=Depends(get_view_cache),
    workflow=Depends(get_moderation_workflow),
    q: str = Query(default="", max_length=200),
) -> DashboardOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    session = DashboardSession(principal, repository, views, workflow)
    await _load_view(views, PENDING_VIEW)
    await _load_view(views, VERIFIED_VIEW)
    # Local filter only; close() cancels the debounced store search.
    session.set_query(q)
    await session.close()
    return DashboardOut(
        query=q,
        is_privileged=session.is_privileged_caller(),
        pending=[StationOut.from_record(row) for row in session.filtered_pending()],
        verified=[StationOut.from_record(row) for row in session.filtered_verified()],
    )


@router.get("/search", response_model=StationSearchOut)
async def search_stations(
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    q: str = Query(default="", max_length=200),
) -> StationSearchOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    outcome = await run_search(repository.search, q)
    return StationSearchOut(
        query=q,
        stations=[StationOut.from_record(row) for row in outcome.stations],
        focus=LocationOut.from_location(outcome.focus) if outcome.focus else None,
    )


@router.get("/{station_id}", response_model=StationOut)
async def get_station(
    station_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> StationOut:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.fetch_by_id(station_id)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return StationOut.from_record(row)


@router.post("/{station_id}/decision", response_model=DecisionOut)
async def decide_station(
    station_id: str,
    payload: DecisionRequest,
    principal=Depends(get_human_principal),
    workflow=Depends(get_moderation_workflow),
) -> DecisionOut:
    result = await workflow.decide(
        station_id,
        payload.outcome,
        privileged=principal.is_privileged,
        actor_id=principal.actor_id,
    )
    body = DecisionOut.from_result(result)

    if result.status is DecisionStatus.ALREADY_IN_PROGRESS:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body.model_dump(mode="json"))
    if result.error is not None:
        raise HTTPException(status_code=DECISION_ERROR_STATUS[result.error], detail=body.model_dump(mode="json"))

    return body
