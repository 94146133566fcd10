from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import system, telemetry, worker

api_router = APIRouter()
api_router.include_router(telemetry.router)
api_router.include_router(worker.router)
api_router.include_router(system.router)

__all__ = ["api_router"]
