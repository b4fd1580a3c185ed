"""
Relational database connectors.
"""

from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.database.postgresql import PostgreSQLConnector
from dataplane.connectors.database.mysql import MySQLConnector
from dataplane.connectors.database.mssql import MSSQLConnector
from dataplane.connectors.database.sqlite import SQLiteConnector

__all__ = [
    "SQLConnector",
    "PostgreSQLConnector",
    "MySQLConnector",
    "MSSQLConnector",
    "SQLiteConnector",
]
