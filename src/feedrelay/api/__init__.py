"""API route aggregation.

All routers registered here get mounted in main.py. There is no auth:
every route is open.
"""

from fastapi import APIRouter

from feedrelay.api.health import router as health_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
