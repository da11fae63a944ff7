"""SessionGuard API Router - aggregates all API routes."""

from fastapi import APIRouter

from sessionguard.api import audit, sessions

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

api_router.include_router(sessions.router)
api_router.include_router(audit.router)
