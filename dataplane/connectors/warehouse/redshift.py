"""
Amazon Redshift Connector Module.
"""

from dataplane.connectors.base import ConnectorFactory
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import SourceFamily, SourceType


class RedshiftConnector(SQLConnector):
    """Amazon Redshift connector over the PostgreSQL wire protocol."""

    family = SourceFamily.WAREHOUSE
    source_type = SourceType.REDSHIFT
    display_name = "Amazon Redshift"
    description = "AWS data warehouse"
    dialect = "redshift+psycopg2"
    default_port = 5439
    required_credentials = ("host", ("user", "username"), "password", "database")
    databases_query = "SELECT datname AS name FROM pg_database WHERE datistemplate = false ORDER BY datname"


# Register connector
ConnectorFactory.register(SourceType.REDSHIFT, RedshiftConnector)
