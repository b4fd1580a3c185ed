"""
State database for Dataplane.
"""

from dataplane.database.connection import Base, DatabaseManager

__all__ = ["Base", "DatabaseManager"]
