"""API routes."""

from .dev import router as dev_router
from .escrow import router as escrow_router
from .jobs import router as jobs_router

__all__ = ["jobs_router", "escrow_router", "dev_router"]
