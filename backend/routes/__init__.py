"""API route modules for the care records migration backend.

This package contains focused routers that are registered with the main FastAPI app.

Routers:
- migrations: Pipeline lifecycle, progress, approvals, quality reports,
  backups and rollback
"""

from .migrations import router as migrations_router

__all__ = ["migrations_router"]
