# src/realtime_channels/api/v1/endpoints/__init__.py
"""API v1 endpoint routers."""

from .system import router as system_router

__all__ = ["system_router"]
