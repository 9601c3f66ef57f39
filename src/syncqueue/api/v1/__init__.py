"""Version 1 API endpoints."""

from .endpoints import sync_router

__all__ = ["sync_router"]
