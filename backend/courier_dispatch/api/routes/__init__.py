"""
API routes module.
"""

from fastapi import APIRouter

from courier_dispatch.api.routes import (
    admin,
    assignments,
    health,
    partners,
)

# Main API router (mounted at /api/v1)
api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(assignments.router)
api_router.include_router(partners.router)
api_router.include_router(admin.router)
