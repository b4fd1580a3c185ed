"""
Snowflake Connector Module.
"""

from typing import Any, Dict, List

from sqlalchemy.engine import URL

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import DatabaseInfo, SourceFamily, SourceType


class SnowflakeConnector(SQLConnector):
    """
    Snowflake data warehouse connector.

    Authenticates with a password or a key pair; the warehouse is required
    because every query runs on one.
    """

    family = SourceFamily.WAREHOUSE
    source_type = SourceType.SNOWFLAKE
    display_name = "Snowflake"
    description = "Cloud data warehouse"
    features = ("schema_discovery", "sql_queries", "foreign_keys", "incremental_sync", "time_travel")
    dialect = "snowflake"
    required_credentials = ("account", ("username", "user"), "warehouse", ("password", "private_key"))
    version_query = "SELECT CURRENT_VERSION()"

    def build_url(self) -> URL:
        raw = self._credential("url", "connection_string")
        if raw:
            return super().build_url()
        database = self._credential("database")
        schema = self._credential("schema")
        if database and schema:
            database = f"{database}/{schema}"
        return URL.create(
            self.dialect,
            username=self._credential("username", "user"),
            password=self._credential("password"),
            host=self._credential("account"),
            database=database,
            query=self.url_query(),
        )

    def url_query(self) -> Dict[str, str]:
        query = {"warehouse": str(self._credential("warehouse"))}
        role = self._credential("role")
        if role:
            query["role"] = str(role)
        return query

    def engine_options(self, url: URL) -> Dict[str, Any]:
        options = super().engine_options(url)
        private_key = self._credential("private_key")
        if private_key:
            options["connect_args"] = {"private_key": private_key}
        return options

    async def list_databases(self) -> List[DatabaseInfo]:
        result = await self.execute_query("SHOW DATABASES")
        return [DatabaseInfo(name=str(row.get("name"))) for row in result.rows]


# Register connector
ConnectorFactory.register(SourceType.SNOWFLAKE, SnowflakeConnector)
