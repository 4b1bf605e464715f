from fastapi import APIRouter

from creditsync.api.v1 import admin, cron, subscription, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(webhooks.router)
api_router.include_router(cron.router)
api_router.include_router(admin.router)
api_router.include_router(subscription.router)
