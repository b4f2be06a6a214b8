"""Realtime channels: direct and group messaging over WebSockets."""

__version__ = "1.0.0"
