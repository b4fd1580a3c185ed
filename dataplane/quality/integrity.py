"""
Referential integrity validation across a set of tables.
"""

import logging
from typing import List

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import count_orphans
from dataplane.errors import ConnectorError
from dataplane.quality.models import IntegrityIssue, Severity

logger = logging.getLogger(__name__)


async def validate_integrity(connector: BaseConnector, tables: List[TableRef]) -> List[IntegrityIssue]:
    """
    Anti-join every declared foreign key of the given tables.

    One issue per foreign key with orphaned rows. Foreign keys that cannot
    be checked are logged and skipped.
    """
    if not isinstance(connector, SQLConnector):
        logger.warning(f"Skipping referential integrity on {connector.source_type.value}: needs a SQL source")
        return []

    issues: List[IntegrityIssue] = []
    for table in tables:
        foreign_keys = await connector.list_foreign_keys(database=table.database, schema=table.schema)
        for fk in foreign_keys:
            if fk.from_table != table.table:
                continue
            parent = TableRef(table=fk.to_table, schema=fk.to_schema or table.schema, database=table.database)
            try:
                count, samples = await count_orphans(connector, table, fk.from_column, parent, fk.to_column)
            except ConnectorError as e:
                logger.warning(f"Could not check {table}.{fk.from_column} -> {fk.to_table}.{fk.to_column}: {e}")
                continue
            if count > 0:
                issues.append(IntegrityIssue(
                    table=table.key,
                    column=fk.from_column,
                    referenced_table=fk.to_table,
                    referenced_column=fk.to_column,
                    count=count,
                    description=(
                        f"Found {count} orphaned records in {fk.from_column} "
                        f"referencing {fk.to_table}.{fk.to_column}"
                    ),
                    severity=Severity.ERROR,
                    sample_values=samples,
                ))

    logger.info(f"Integrity validation of {len(tables)} table(s) found {len(issues)} issue(s)")
    return issues
