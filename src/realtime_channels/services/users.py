"""User lookup, creation and the abandoned-account sweep."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.db.time import utcnow
from realtime_channels.errors import PayloadValidationError
from realtime_channels.models import ChannelParticipant, User

logger = logging.getLogger(__name__)


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "avatar": user.avatar,
        "isActive": user.is_active,
    }


def resolve_or_create_user(session_factory: sessionmaker[Session], name: str) -> User:
    """Return the user named ``name``, creating it on first sight.

    Refreshes ``last_login`` and re-activates a previously swept account.
    Two connections racing to create the same name converge on one row.
    """
    name = (name or "").strip()
    if not name:
        raise PayloadValidationError("userName is required")

    with session_factory() as db:
        user = db.scalars(select(User).where(User.name == name)).first()
        if user is None:
            try:
                user = User(name=name)
                db.add(user)
                db.commit()
                logger.info("Created user %s (%s)", user.id, name)
            except IntegrityError:
                db.rollback()
                user = db.scalars(select(User).where(User.name == name)).one()
        user.last_login = utcnow()
        user.is_active = True
        user.deleted_at = None
        db.commit()
        db.refresh(user)
        db.expunge(user)
        return user


def get_user(db: Session, user_id: str) -> User | None:
    return db.scalars(
        select(User).where(User.id == user_id, User.is_active.is_(True), User.deleted_at.is_(None))
    ).first()


def list_users(db: Session) -> list[dict[str, Any]]:
    """Return every active user ordered by name."""
    rows = db.scalars(
        select(User)
        .where(User.is_active.is_(True), User.deleted_at.is_(None))
        .order_by(User.name)
    ).all()
    return [serialize_user(u) for u in rows]


def deactivate_abandoned_users(
    db: Session, *, inactivity_years: int, now: datetime | None = None
) -> list[dict[str, Any]]:
    """Deactivate users whose last login is older than ``inactivity_years``.

    Their participation rows are deactivated too. Returns
    ``{id, name, email}`` for every user swept; the caller commits.
    """
    now = now or utcnow()
    threshold = now - timedelta(days=365 * inactivity_years)

    users = db.scalars(
        select(User).where(
            User.last_login < threshold,
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        )
    ).all()
    if not users:
        return []

    ids = [u.id for u in users]
    for user in users:
        user.is_active = False
        user.deleted_at = now

    db.execute(
        update(ChannelParticipant)
        .where(ChannelParticipant.user_id.in_(ids))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    logger.info("Deactivated %d abandoned users", len(ids))
    return [{"id": u.id, "name": u.name, "email": u.email} for u in users]
