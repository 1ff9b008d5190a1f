"""Database layer for the compliance sync service."""

from .connection import Base, DatabaseManager, db_manager

__all__ = ["Base", "DatabaseManager", "db_manager"]
