# src/realtime_channels/schemas/__init__.py
"""Pydantic schemas for realtime payloads and message records."""

from .message import Attachment, ChatMessage, MessageStatus, MessageType

__all__ = ["Attachment", "ChatMessage", "MessageStatus", "MessageType"]
