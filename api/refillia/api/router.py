from fastapi import APIRouter

from refillia.api.routes import health, me, stations

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(me.router, prefix="/me", tags=["session"])
api_router.include_router(stations.router, prefix="/stations", tags=["moderation"])
