# src/realtime_channels/models/__init__.py
"""SQLAlchemy models for the realtime channels service."""

from .channel import Channel, ChannelParticipant
from .message import Message, MessageAttachment
from .poll import Poll, PollOption
from .user import User

__all__ = [
    "Channel", "ChannelParticipant",
    "Message", "MessageAttachment",
    "Poll", "PollOption",
    "User",
]
