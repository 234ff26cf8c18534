"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from filedrop.api import health, uploads, webhooks, api_keys

api_router = APIRouter()

# Include route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(uploads.router, prefix="/uploads", tags=["uploads"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
