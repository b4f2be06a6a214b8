"""Seed users, direct channels, groups and messages from a JSON file.

Expected shape::

    {
      "users": [{"name": "alice", "email": "alice@example.com"}, ...],
      "direct": [["alice", "bob"], ...],
      "groups": [{"name": "team", "owner": "alice", "members": ["bob", "carol"]}],
      "messages": [
        {"from": "alice", "to": "bob", "text": "hi"},
        {"from": "bob", "group": "team", "text": "hello team"}
      ]
    }

Users are referenced by name throughout. Seeding is idempotent for users and
direct channels; groups and messages are appended on every run.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from realtime_channels.core.log_config import configure_logging
from realtime_channels.db.session import SessionLocal
from realtime_channels.services.channels import ensure_direct_channel
from realtime_channels.services.formatter import format_message
from realtime_channels.services.groups import create_group
from realtime_channels.services.users import resolve_or_create_user
from realtime_channels.workers.persistence import PersistenceWorker

logger = logging.getLogger(__name__)


def seed(data: dict[str, Any], session_factory: sessionmaker[Session] = SessionLocal) -> dict[str, int]:
    """Write ``data`` and return how many of each kind were seeded."""
    users: dict[str, dict[str, Any]] = {}
    for entry in data.get("users", []):
        user = resolve_or_create_user(session_factory, entry["name"])
        if entry.get("email") and not user.email:
            with session_factory() as db:
                db.merge(user).email = entry["email"]
                db.commit()
        users[user.name] = {"id": user.id, "name": user.name}

    def user_for(name: str) -> dict[str, Any]:
        if name not in users:
            user = resolve_or_create_user(session_factory, name)
            users[name] = {"id": user.id, "name": user.name}
        return users[name]

    direct = 0
    for first, second in data.get("direct", []):
        ensure_direct_channel(session_factory, user_for(first)["id"], user_for(second)["id"])
        direct += 1

    groups: dict[str, str] = {}
    for entry in data.get("groups", []):
        owner = user_for(entry["owner"])
        with session_factory() as db:
            group = create_group(
                db,
                name=entry["name"],
                description=entry.get("description"),
                created_by=owner["id"],
                member_ids=[user_for(name)["id"] for name in entry.get("members", [])],
                min_members=entry.get("min_members", 3),
            )
            db.commit()
        groups[entry["name"]] = group["id"]

    worker = PersistenceWorker(session_factory)
    messages = 0
    for entry in data.get("messages", []):
        sender = user_for(entry["from"])
        payload: dict[str, Any] = {"message": entry.get("text", ""), "messageType": entry.get("type")}
        if entry.get("group"):
            group_id = groups[entry["group"]]
            payload.update({"groupId": group_id, "channelId": group_id, "isGroup": True})
        else:
            receiver = user_for(entry["to"])
            payload.update(
                {
                    "receiverId": receiver["id"],
                    "receiverName": receiver["name"],
                    "channelId": ensure_direct_channel(session_factory, sender["id"], receiver["id"]),
                }
            )
        record = format_message(payload, sender).to_wire()
        worker.persist(record, is_group=bool(entry.get("group")), publish=False)
        messages += 1

    counts = {"users": len(users), "direct": direct, "groups": len(groups), "messages": messages}
    logger.info("Seeded %s", counts)
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the configured database from a JSON file")
    parser.add_argument("path", type=Path, help="Path to the seed JSON file")
    args = parser.parse_args()

    configure_logging()
    try:
        data = json.loads(args.path.read_text(encoding="utf-8"))
        counts = seed(data)
    except Exception as exc:
        print(f"[seed] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"[seed] {counts}")


if __name__ == "__main__":
    main()
