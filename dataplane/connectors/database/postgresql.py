"""
PostgreSQL Connector Module.
"""

from typing import Dict

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import SourceType


class PostgreSQLConnector(SQLConnector):
    """
    PostgreSQL database connector.

    Supports:
    - Schema discovery
    - Incremental sync via timestamp/version columns
    - Foreign key introspection
    """

    source_type = SourceType.POSTGRESQL
    display_name = "PostgreSQL"
    description = "Open source relational database"
    dialect = "postgresql+psycopg2"
    default_port = 5432
    required_credentials = ("host", ("user", "username"), "password", "database")
    databases_query = "SELECT datname AS name FROM pg_database WHERE datistemplate = false ORDER BY datname"

    def url_query(self) -> Dict[str, str]:
        query = {"application_name": "dataplane"}
        ssl_mode = self._credential("ssl_mode", "sslmode")
        if ssl_mode:
            query["sslmode"] = str(ssl_mode)
        return query


# Register connector
ConnectorFactory.register(SourceType.POSTGRESQL, PostgreSQLConnector)
