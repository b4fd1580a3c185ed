"""
Data source connectors.

Importing this package registers every built-in connector with
ConnectorFactory.
"""

from dataplane.connectors.base import BaseConnector, ConnectorFactory
from dataplane.connectors.models import (
    AuthType,
    ColumnInfo,
    ConnectionConfig,
    ConnectionStatus,
    ConnectionTestResult,
    DatabaseInfo,
    ForeignKeyInfo,
    ForeignKeyRef,
    QueryResult,
    SchemaInfo,
    SourceFamily,
    SourceType,
    TableInfo,
    TableRef,
)
from dataplane.connectors.type_mapping import CanonicalType, map_column_type
from dataplane.connectors.database import (
    SQLConnector,
    PostgreSQLConnector,
    MySQLConnector,
    MSSQLConnector,
    SQLiteConnector,
)
from dataplane.connectors.warehouse import (
    SnowflakeConnector,
    RedshiftConnector,
    DatabricksConnector,
    BigQueryConnector,
)
from dataplane.connectors.api import RestAPIConnector, SalesforceConnector, SpendeskConnector, XeroConnector

__all__ = [
    # Base
    "BaseConnector",
    "ConnectorFactory",
    "AuthType",
    "ColumnInfo",
    "ConnectionConfig",
    "ConnectionStatus",
    "ConnectionTestResult",
    "DatabaseInfo",
    "ForeignKeyInfo",
    "ForeignKeyRef",
    "QueryResult",
    "SchemaInfo",
    "SourceFamily",
    "SourceType",
    "TableInfo",
    "TableRef",
    "CanonicalType",
    "map_column_type",
    # Connectors
    "SQLConnector",
    "PostgreSQLConnector",
    "MySQLConnector",
    "MSSQLConnector",
    "SQLiteConnector",
    "SnowflakeConnector",
    "RedshiftConnector",
    "DatabricksConnector",
    "BigQueryConnector",
    "RestAPIConnector",
    "SalesforceConnector",
    "XeroConnector",
    "SpendeskConnector",
]
