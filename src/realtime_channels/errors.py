"""Exception hierarchy shared by the messaging pipeline."""

from __future__ import annotations


class ChannelsError(RuntimeError):
    """Base exception raised for realtime channel failures."""


class InvalidArgumentError(ChannelsError, ValueError):
    """Raised when a required identifier is missing or malformed."""


class PayloadValidationError(ChannelsError):
    """Raised when an inbound event payload lacks a required field.

    Reported to the caller through the matching ``*:error`` event; no state
    has been changed when this is raised.
    """


class NotAMemberError(ChannelsError):
    """Raised when a user acts on a channel they do not participate in."""


class PermissionDeniedError(ChannelsError):
    """Raised when a participant lacks the role an operation requires."""


class QueueUnavailableError(ChannelsError):
    """Raised when no persistence queue backend is available."""


class PersistenceError(ChannelsError):
    """Raised when the persistence worker reports a failed write."""
