"""API routes."""

from .disputes import router as disputes_router
from .escrows import router as escrows_router
from .jobs import router as jobs_router
from .maintenance import router as maintenance_router
from .notifications import router as notifications_router
from .proposals import router as proposals_router

__all__ = [
    "jobs_router",
    "proposals_router",
    "escrows_router",
    "disputes_router",
    "notifications_router",
    "maintenance_router",
]
