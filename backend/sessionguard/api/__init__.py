"""API module for SessionGuard."""

from sessionguard.api.router import api_router

__all__ = ["api_router"]
