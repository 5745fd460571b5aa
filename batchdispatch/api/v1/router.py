"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from batchdispatch.api.v1.health import router as health_router
from batchdispatch.api.v1.runs import router as runs_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(runs_router, tags=["runs"])
