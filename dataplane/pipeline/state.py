"""
Pipeline execution state stores.
"""

import asyncio
import copy
from typing import Dict, Optional, Protocol

from sqlalchemy import select

from dataplane.database.connection import DatabaseManager
from dataplane.database.models import PipelineExecutionModel
from dataplane.pipeline.models import PipelineExecutionState


class PipelineStateStore(Protocol):
    async def save(self, state: PipelineExecutionState) -> None:
        ...

    async def get(self, execution_id: str) -> Optional[PipelineExecutionState]:
        ...

    async def latest(self, pipeline_id: str) -> Optional[PipelineExecutionState]:
        ...


class MemoryPipelineStateStore:
    def __init__(self):
        self._states: Dict[str, PipelineExecutionState] = {}

    async def save(self, state: PipelineExecutionState) -> None:
        self._states[state.execution_id] = copy.deepcopy(state)

    async def get(self, execution_id: str) -> Optional[PipelineExecutionState]:
        state = self._states.get(execution_id)
        return copy.deepcopy(state) if state else None

    async def latest(self, pipeline_id: str) -> Optional[PipelineExecutionState]:
        states = [s for s in self._states.values() if s.pipeline_id == pipeline_id]
        if not states:
            return None
        return copy.deepcopy(max(states, key=lambda s: s.start_time))


class SQLPipelineStateStore:
    """Pipeline state on the state database (pipeline_executions)."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or DatabaseManager()

    async def save(self, state: PipelineExecutionState) -> None:
        await asyncio.to_thread(self._save, state)

    def _save(self, state: PipelineExecutionState) -> None:
        with self.db.get_session() as session:
            row = session.get(PipelineExecutionModel, state.execution_id)
            if row is None:
                row = PipelineExecutionModel(execution_id=state.execution_id, pipeline_id=state.pipeline_id)
                session.add(row)
            row.status = state.status.value
            row.completed_steps = list(state.completed_steps)
            row.state = state.to_dict()
            row.start_time = state.start_time
            row.end_time = state.end_time

    async def get(self, execution_id: str) -> Optional[PipelineExecutionState]:
        return await asyncio.to_thread(self._get, execution_id)

    def _get(self, execution_id: str) -> Optional[PipelineExecutionState]:
        with self.db.get_session() as session:
            row = session.get(PipelineExecutionModel, execution_id)
            return PipelineExecutionState.from_dict(row.state) if row else None

    async def latest(self, pipeline_id: str) -> Optional[PipelineExecutionState]:
        return await asyncio.to_thread(self._latest, pipeline_id)

    def _latest(self, pipeline_id: str) -> Optional[PipelineExecutionState]:
        with self.db.get_session() as session:
            row = session.execute(
                select(PipelineExecutionModel)
                .where(PipelineExecutionModel.pipeline_id == pipeline_id)
                .order_by(PipelineExecutionModel.start_time.desc())
                .limit(1)
            ).scalar_one_or_none()
            return PipelineExecutionState.from_dict(row.state) if row else None
