from fastapi import APIRouter

from craftmatch.api.routes import admin, agencies, health, labor_requests, messages, realtime

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(labor_requests.router, prefix="/api/labor-requests", tags=["public"])
api_router.include_router(agencies.router, prefix="/api/agencies", tags=["agency"])
api_router.include_router(messages.router, prefix="/api/messages", tags=["messaging"])
api_router.include_router(admin.router, prefix="/api/admin", tags=["admin"])
api_router.include_router(realtime.router, prefix="/api", tags=["realtime"])
