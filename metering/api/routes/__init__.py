from fastapi import APIRouter

from metering.api.routes import admin, health, realtime, subscription, usage

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(realtime.router, tags=["realtime"])
api_router.include_router(usage.router, tags=["usage"])
api_router.include_router(subscription.router, tags=["subscription"])
api_router.include_router(admin.router)
