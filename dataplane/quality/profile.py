"""
Table profiling.

Completeness, uniqueness, timeliness and anomaly detection score a
TableProfile rather than rows. SQL sources are profiled at the source with
aggregate queries, so every figure covers the whole table; other sources
are profiled from a row sample.
"""

import logging
import math
import statistics
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import Float, case, cast, func, or_, select
from sqlalchemy.engine import Connection

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import ColumnInfo, TableRef
from dataplane.connectors.query import reflect_table
from dataplane.connectors.type_mapping import CanonicalType
from dataplane.quality.models import NumericProfile, TableProfile, TableSnapshot, TimestampProfile

logger = logging.getLogger(__name__)

TIMESTAMP_PATTERNS = [
    "updated_at",
    "modified_at",
    "last_modified",
    "timestamp",
    "created_at",
    "inserted_at",
    "date_modified",
    "last_updated",
]

NUMERIC_TYPES = (CanonicalType.NUMBER.value, CanonicalType.FLOAT.value)
SIGMA = 3
MAX_SAMPLES = 10
# Variance below this share of mean^2 is floating point noise
VARIANCE_EPSILON = 1e-12


def key_columns(columns: Sequence[ColumnInfo]) -> List[str]:
    """Uniqueness candidates: primary keys and names containing id or key."""
    return [
        c.name for c in columns
        if c.primary_key or "id" in c.name.lower() or "key" in c.name.lower()
    ]


def find_timestamp_column(columns: Sequence[ColumnInfo]) -> Optional[str]:
    """First column matching a timestamp name pattern whose type is datetime."""
    datetime_columns = [c for c in columns if c.type == CanonicalType.DATETIME.value]
    for pattern in TIMESTAMP_PATTERNS:
        prefix = pattern.split("_")[0]
        for column in datetime_columns:
            name = column.name.lower()
            if name == pattern or prefix in name:
                return column.name
    return None


def as_naive_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _numeric(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def sigma_bounds(mean: float, stddev: float) -> Tuple[float, float]:
    return mean - SIGMA * stddev, mean + SIGMA * stddev


def profile_snapshot(
    snapshot: TableSnapshot,
    freshness_hours: float,
    now: Optional[datetime] = None,
    distributions: bool = True,
) -> TableProfile:
    """Profile the rows held by a snapshot."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=freshness_hours)
    profile = TableProfile(
        table=snapshot.table,
        columns=snapshot.columns,
        row_count=len(snapshot.rows),
        freshness_hours=freshness_hours,
        as_of=now,
    )

    for column in snapshot.columns:
        profile.null_counts[column.name] = sum(1 for v in snapshot.values(column.name) if v is None)

    for name in key_columns(snapshot.columns):
        counts = Counter(v for v in snapshot.values(name) if v is not None)
        profile.duplicate_groups[name] = sum(1 for n in counts.values() if n > 1)

    ts_column = find_timestamp_column(snapshot.columns)
    if ts_column is not None:
        stamps = [s for s in (as_naive_utc(v) for v in snapshot.values(ts_column)) if s is not None]
        profile.timestamp = TimestampProfile(
            column=ts_column,
            count=len(stamps),
            fresh=sum(1 for s in stamps if s >= cutoff),
            latest=max(stamps, default=None),
        )

    if not distributions:
        return profile

    for column in snapshot.columns:
        if column.type in NUMERIC_TYPES:
            values = [float(v) for v in snapshot.values(column.name) if _numeric(v)]
            if len(values) < 2:
                continue
            numeric = NumericProfile(count=len(values), mean=statistics.fmean(values), stddev=statistics.stdev(values))
            if numeric.stddev > 0:
                low, high = sigma_bounds(numeric.mean, numeric.stddev)
                outliers = [v for v in values if v < low or v > high]
                numeric.outlier_count = len(outliers)
                numeric.outlier_samples = list(dict.fromkeys(outliers))[:MAX_SAMPLES]
            profile.numeric[column.name] = numeric
        elif column.type == CanonicalType.STRING.value:
            lengths = Counter(len(v) for v in snapshot.values(column.name) if isinstance(v, str))
            if lengths:
                profile.string_lengths[column.name] = dict(lengths)
    return profile


def _profile_sql(
    conn: Connection,
    table: TableRef,
    columns: Sequence[ColumnInfo],
    freshness_hours: float,
    now: datetime,
) -> TableProfile:
    tbl = reflect_table(conn, table)
    present = [c for c in columns if c.name in tbl.c]
    cutoff = now - timedelta(hours=freshness_hours)

    null_sums = [func.sum(case((tbl.c[c.name].is_(None), 1), else_=0)) for c in present]
    counts = conn.execute(select(func.count(), *null_sums).select_from(tbl)).one()
    profile = TableProfile(
        table=table.key,
        columns=list(columns),
        row_count=int(counts[0]),
        freshness_hours=freshness_hours,
        as_of=now,
        null_counts={c.name: int(n or 0) for c, n in zip(present, counts[1:])},
    )

    for name in key_columns(present):
        col = tbl.c[name]
        groups = select(col).where(col.is_not(None)).group_by(col).having(func.count() > 1).subquery()
        profile.duplicate_groups[name] = int(conn.execute(select(func.count()).select_from(groups)).scalar_one())

    ts_column = find_timestamp_column(present)
    if ts_column is not None:
        col = tbl.c[ts_column]
        count, latest, fresh = conn.execute(
            select(func.count(col), func.max(col), func.sum(case((col >= cutoff, 1), else_=0))).select_from(tbl)
        ).one()
        profile.timestamp = TimestampProfile(
            column=ts_column,
            count=int(count or 0),
            fresh=int(fresh or 0),
            latest=as_naive_utc(latest),
        )

    return profile


def _profile_distributions(conn: Connection, table: TableRef, profile: TableProfile) -> None:
    tbl = reflect_table(conn, table)
    for column in profile.columns:
        if column.name not in tbl.c:
            continue
        col = tbl.c[column.name]
        if column.type in NUMERIC_TYPES:
            value = cast(col, Float)
            count, mean, mean_sq = conn.execute(
                select(func.count(col), func.avg(value), func.avg(value * value)).select_from(tbl)
            ).one()
            count = int(count or 0)
            if count < 2:
                continue
            mean = float(mean)
            variance = max(0.0, float(mean_sq) - mean * mean)
            if variance <= VARIANCE_EPSILON * max(1.0, mean * mean):
                variance = 0.0
            numeric = NumericProfile(count=count, mean=mean, stddev=math.sqrt(variance * count / (count - 1)))
            if numeric.stddev > 0:
                low, high = sigma_bounds(numeric.mean, numeric.stddev)
                outside = or_(value < low, value > high)
                numeric.outlier_count = int(
                    conn.execute(select(func.count()).select_from(tbl).where(outside)).scalar_one()
                )
                numeric.outlier_samples = [
                    float(v) for v in conn.execute(
                        select(value).select_from(tbl).where(outside).distinct().limit(MAX_SAMPLES)
                    ).scalars()
                ]
            profile.numeric[column.name] = numeric
        elif column.type == CanonicalType.STRING.value:
            length = func.length(col)
            rows = conn.execute(
                select(length, func.count()).select_from(tbl).where(col.is_not(None)).group_by(length)
            ).all()
            if rows:
                profile.string_lengths[column.name] = {int(n): int(c) for n, c in rows}


async def profile_table(
    connector: BaseConnector,
    table: TableRef,
    snapshot: TableSnapshot,
    freshness_hours: float,
    now: Optional[datetime] = None,
    distributions: bool = False,
) -> TableProfile:
    """
    Profile a table through its connector.

    SQL sources are aggregated in full at the source; any other source is
    profiled from the rows of the snapshot.
    """
    now = now or datetime.utcnow()
    if isinstance(connector, SQLConnector):
        profile = await connector.run_sync(
            lambda conn: _profile_sql(conn, table, snapshot.columns, freshness_hours, now)
        )
        if distributions:
            try:
                await connector.run_sync(lambda conn: _profile_distributions(conn, table, profile))
            except Exception as e:
                logger.warning(f"Could not profile value distributions of {table}: {e}")
        logger.debug(f"Profiled {table} at the source: {profile.row_count} rows")
        return profile

    logger.debug(f"Profiling {table} from a sample of {len(snapshot.rows)} rows")
    return profile_snapshot(snapshot, freshness_hours, now=now, distributions=distributions)
