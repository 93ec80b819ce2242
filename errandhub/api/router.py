"""Mount all API routes."""

from fastapi import APIRouter

from errandhub.api.admin import router as admin_router
from errandhub.api.flows import router as flows_router
from errandhub.api.offers import router as offers_router
from errandhub.api.tasks import router as tasks_router
from errandhub.api.workers import router as workers_router

api_router = APIRouter()
api_router.include_router(flows_router, tags=["flows"])
api_router.include_router(tasks_router, tags=["tasks"])
api_router.include_router(offers_router, tags=["offers"])
api_router.include_router(workers_router, tags=["workers"])
api_router.include_router(admin_router, tags=["admin"])
