"""
Data warehouse connectors.
"""

from dataplane.connectors.warehouse.snowflake import SnowflakeConnector
from dataplane.connectors.warehouse.redshift import RedshiftConnector
from dataplane.connectors.warehouse.databricks import DatabricksConnector
from dataplane.connectors.warehouse.bigquery import BigQueryConnector

__all__ = [
    "SnowflakeConnector",
    "RedshiftConnector",
    "DatabricksConnector",
    "BigQueryConnector",
]
