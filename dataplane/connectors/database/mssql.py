"""
SQL Server / Azure SQL Connector Module.
"""

from typing import Dict

from sqlalchemy.engine import URL

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import SourceType


class MSSQLConnector(SQLConnector):
    """Microsoft SQL Server connector, also serving Azure SQL Database."""

    source_type = SourceType.MSSQL
    display_name = "SQL Server"
    description = "Microsoft SQL Server and Azure SQL Database"
    dialect = "mssql+pyodbc"
    default_port = 1433
    required_credentials = (("server", "host"), ("user", "username"), "password")
    version_query = "SELECT @@VERSION"
    databases_query = "SELECT name FROM sys.databases ORDER BY name"

    def build_url(self) -> URL:
        raw = self._credential("url", "connection_string")
        if raw:
            return super().build_url()
        port = self._credential("port", default=self.default_port)
        return URL.create(
            self.dialect,
            username=self._credential("user", "username"),
            password=self._credential("password"),
            host=self._credential("server", "host"),
            port=int(port) if port else None,
            database=self._credential("database"),
            query=self.url_query(),
        )

    def url_query(self) -> Dict[str, str]:
        query = {"driver": str(self._credential("driver", default="ODBC Driver 18 for SQL Server"))}
        if self._credential("encrypt") is not None:
            query["Encrypt"] = "yes" if self._credential("encrypt") else "no"
        if self._credential("trust_server_certificate"):
            query["TrustServerCertificate"] = "yes"
        return query


# Register connector
ConnectorFactory.register(SourceType.MSSQL, MSSQLConnector)
ConnectorFactory.register(SourceType.AZURE_SQL, MSSQLConnector)
