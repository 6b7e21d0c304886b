"""Mount all API routes."""

from fastapi import APIRouter

from gigledger.api.admin import router as admin_router
from gigledger.api.tasks import router as tasks_router
from gigledger.api.wallet import router as wallet_router

api_router = APIRouter()
api_router.include_router(tasks_router, tags=["tasks"])
api_router.include_router(wallet_router, tags=["wallet"])
api_router.include_router(admin_router, tags=["admin"])
