# src/realtime_channels/models/poll.py
"""Models for polls posted into group conversations."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realtime_channels.db.session import Base
from realtime_channels.db.time import utcnow
from realtime_channels.models.user import new_id


class Poll(Base):
    """A question with a fixed list of options."""

    __tablename__ = "poll"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    created_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chat_user.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    options: Mapped[list[PollOption]] = relationship(
        "PollOption", back_populates="poll", cascade="all, delete-orphan"
    )


class PollOption(Base):
    """One selectable answer of a poll."""

    __tablename__ = "poll_option"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    poll_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("poll.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)

    poll: Mapped[Poll] = relationship("Poll", back_populates="options")
