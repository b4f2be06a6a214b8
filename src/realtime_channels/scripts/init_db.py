"""Create every table straight from the ORM metadata.

Handy for local SQLite databases; deployed databases go through
``realtime_channels.scripts.migrate`` instead.
"""

from realtime_channels.db.session import create_tables, engine


def init_db() -> None:
    """Initialize the database by creating all tables."""
    create_tables(engine)


if __name__ == "__main__":
    init_db()
    print(f"Database initialized at {engine.url.render_as_string(hide_password=True)}.")
