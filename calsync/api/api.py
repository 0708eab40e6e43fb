# calsync/api/api.py
from fastapi import APIRouter

from calsync.api.routes import (
    caldav,
    google_auth,
    health,
    integrations,
    outlook_auth,
)

api_router = APIRouter()
api_router.include_router(
    integrations.router, prefix="/integrations", tags=["integrations"]
)
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(caldav.router, prefix="/caldav", tags=["caldav"])
api_router.include_router(
    google_auth.router, prefix="/auth/google", tags=["google_auth"]
)
api_router.include_router(
    outlook_auth.router, prefix="/auth/outlook", tags=["outlook_auth"]
)
