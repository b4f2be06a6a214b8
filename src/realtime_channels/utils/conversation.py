# src/realtime_channels/utils/conversation.py
"""Deterministic conversation identifiers for pairs of users."""

from __future__ import annotations

from typing import Any

from realtime_channels.errors import InvalidArgumentError

DIRECT_KEY_PREFIX = "direct_"


def conversation_id(user_a: Any, user_b: Any) -> str:
    """Return the order-independent identifier for a two-user conversation.

    Both ids are compared as strings, sorted and joined with ``_`` so that
    ``conversation_id(a, b) == conversation_id(b, a)``.

    Raises:
        InvalidArgumentError: if either id is missing.
    """
    if not user_a or not user_b:
        raise InvalidArgumentError("Both user IDs required")
    return "_".join(sorted((str(user_a), str(user_b))))


def direct_channel_key(user_a: Any, user_b: Any) -> str:
    """Return the unique lookup key of the direct channel between two users."""
    return f"{DIRECT_KEY_PREFIX}{conversation_id(user_a, user_b)}"
