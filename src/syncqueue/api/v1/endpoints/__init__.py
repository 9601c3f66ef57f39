"""API endpoint modules for version 1."""

from .sync import router as sync_router

__all__ = ["sync_router"]
