"""
Google BigQuery Connector Module.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.engine import URL

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import DatabaseInfo, ForeignKeyInfo, SourceFamily, SourceType


class BigQueryConnector(SQLConnector):
    """
    BigQuery connector.

    Projects are databases and datasets are schemas. BigQuery declares no
    enforced foreign keys, so none are reported.
    """

    family = SourceFamily.WAREHOUSE
    source_type = SourceType.BIGQUERY
    display_name = "BigQuery"
    description = "Google serverless data warehouse"
    features = ("schema_discovery", "sql_queries", "incremental_sync", "nested_types")
    dialect = "bigquery"
    required_credentials = (("project_id", "project"),)

    def build_url(self) -> URL:
        raw = self._credential("url", "connection_string")
        if raw:
            return super().build_url()
        return URL.create(
            self.dialect,
            host=self._credential("project_id", "project"),
            database=self._credential("dataset"),
        )

    def engine_options(self, url: URL) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self._credential("credentials_path", "key_file"):
            options["credentials_path"] = self._credential("credentials_path", "key_file")
        if self._credential("credentials_info", "service_account"):
            options["credentials_info"] = self._credential("credentials_info", "service_account")
        location = self._credential("location")
        if location:
            options["location"] = location
        return options

    async def list_databases(self) -> List[DatabaseInfo]:
        return [DatabaseInfo(name=str(self.engine.url.host))]

    async def list_foreign_keys(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ForeignKeyInfo]:
        self._ensure_connected()
        return []

    async def get_version(self) -> str:
        await self.execute_query(self.ping_query)
        return "BigQuery Standard SQL"


# Register connector
ConnectorFactory.register(SourceType.BIGQUERY, BigQueryConnector)
