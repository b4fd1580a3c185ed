"""
Databricks SQL Connector Module.
"""

from typing import List

from sqlalchemy.engine import URL

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import DatabaseInfo, SourceFamily, SourceType


class DatabricksConnector(SQLConnector):
    """
    Databricks SQL warehouse connector.

    Catalogs are exposed as databases. A cold cluster reports
    "cluster is starting", which the warehouse retry policy treats as
    transient.
    """

    family = SourceFamily.WAREHOUSE
    source_type = SourceType.DATABRICKS
    display_name = "Databricks"
    description = "Lakehouse SQL warehouse"
    features = ("schema_discovery", "sql_queries", "incremental_sync", "delta_lake")
    dialect = "databricks"
    required_credentials = ("server_hostname", "http_path", ("token", "access_token"))

    def build_url(self) -> URL:
        raw = self._credential("url", "connection_string")
        if raw:
            return super().build_url()
        query = {"http_path": str(self._credential("http_path"))}
        catalog = self._credential("catalog")
        schema = self._credential("schema")
        if catalog:
            query["catalog"] = str(catalog)
        if schema:
            query["schema"] = str(schema)
        return URL.create(
            self.dialect,
            username="token",
            password=self._credential("token", "access_token"),
            host=self._credential("server_hostname"),
            query=query,
        )

    async def list_databases(self) -> List[DatabaseInfo]:
        result = await self.execute_query("SHOW CATALOGS")
        return [DatabaseInfo(name=str(row[result.columns[0]])) for row in result.rows]


# Register connector
ConnectorFactory.register(SourceType.DATABRICKS, DatabricksConnector)
