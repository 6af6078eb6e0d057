"""Database package for Family Hub."""

from family_hub.database.manager import DatabaseManager, db_manager

__all__ = ["DatabaseManager", "db_manager"]
