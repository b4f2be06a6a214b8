"""Operational scripts: migrations, database bootstrap and seeding."""
