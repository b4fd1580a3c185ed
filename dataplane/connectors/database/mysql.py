"""
MySQL Connector Module.
"""

from typing import Dict

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import SourceType


class MySQLConnector(SQLConnector):
    """MySQL / MariaDB connector; databases and schemas are the same namespace."""

    source_type = SourceType.MYSQL
    display_name = "MySQL"
    description = "Popular open source relational database"
    dialect = "mysql+pymysql"
    default_port = 3306
    required_credentials = ("host", ("user", "username"), "password")
    version_query = "SELECT VERSION()"
    databases_query = "SELECT schema_name AS name FROM information_schema.schemata ORDER BY schema_name"

    def url_query(self) -> Dict[str, str]:
        return {"charset": str(self._credential("charset", default="utf8mb4"))}


# Register connector
ConnectorFactory.register(SourceType.MYSQL, MySQLConnector)
