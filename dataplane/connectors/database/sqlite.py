"""
SQLite Connector Module.
"""

from typing import List

from sqlalchemy.engine import URL

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import DatabaseInfo, SourceType


class SQLiteConnector(SQLConnector):
    """File-backed SQLite connector, used for local staging and tests."""

    source_type = SourceType.SQLITE
    display_name = "SQLite"
    description = "Embedded file database"
    dialect = "sqlite"
    required_credentials = (("database", "path"),)
    version_query = "SELECT sqlite_version()"

    def build_url(self) -> URL:
        raw = self._credential("url", "connection_string")
        if raw:
            return super().build_url()
        return URL.create("sqlite", database=self._credential("database", "path"))

    async def list_databases(self) -> List[DatabaseInfo]:
        self._ensure_connected()
        return [DatabaseInfo(name="main")]


# Register connector
ConnectorFactory.register(SourceType.SQLITE, SQLiteConnector)
