"""
SQLAlchemy models for Dataplane state.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from dataplane.database.connection import Base


class SyncCheckpointModel(Base):
    """Last committed watermark per (connection, table)."""

    __tablename__ = "sync_checkpoints"

    connection_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(500), primary_key=True)
    watermark: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes_processed: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class CheckpointClaimModel(Base):
    """Exclusive claim of a checkpoint by a running sync."""

    __tablename__ = "sync_checkpoint_claims"

    connection_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    table_name: Mapped[str] = mapped_column(String(500), primary_key=True)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PipelineExecutionModel(Base):
    """Persisted pipeline execution state."""

    __tablename__ = "pipeline_executions"

    execution_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    pipeline_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    completed_steps: Mapped[list] = mapped_column(JSON, default=list)
    state: Mapped[dict] = mapped_column(JSON, default=dict)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
