"""Realtime transport: connections, rooms, presence and chat handlers."""

from .manager import Connection, ConnectionManager
from .presence import PresenceRegistry
from .runtime import ChatRuntime

__all__ = ["Connection", "ConnectionManager", "PresenceRegistry", "ChatRuntime"]
