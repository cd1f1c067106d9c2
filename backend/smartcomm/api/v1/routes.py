"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter

from smartcomm.api.v1.endpoints import communication, cron, health

api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(communication.router)
api_router.include_router(cron.router)
