# src/realtime_channels/models/user.py
"""SQLAlchemy model for chat users."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from realtime_channels.db.session import Base
from realtime_channels.db.time import utcnow


def new_id() -> str:
    """Return a fresh string UUID used as a primary key."""
    return str(uuid.uuid4())


class User(Base):
    """A chat identity, resolved or created by display name on connect."""

    __tablename__ = "chat_user"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Soft-deletion: read queries filter on both flags.
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_login: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
