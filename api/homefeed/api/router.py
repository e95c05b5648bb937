from fastapi import APIRouter

from homefeed.api.routes import feed, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(feed.router, prefix="/feed", tags=["feed"])
