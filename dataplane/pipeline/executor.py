"""
Transformation Pipeline Executor.

Runs a pipeline's steps in dependency order against a SQL connection.
Every step writes to a staging table named <output>__stg_<execution_id>;
downstream steps read upstream staging tables. Staging tables are swapped
onto their outputs only once the whole pipeline has succeeded, so rolling
back is dropping the staging tables.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.registry import ConnectionRegistry
from dataplane.errors import (
    ConnectorError,
    OperationTimeoutError,
    PipelineConfigError,
    StepExecutionError,
)
from dataplane.notifications import EventType, NotificationDispatcher, Notifier
from dataplane.pipeline import tables
from dataplane.pipeline.dag import execution_levels
from dataplane.pipeline.models import (
    ExecutionConfig,
    ExecutionMode,
    Pipeline,
    PipelineExecutionState,
    PipelineStatus,
    StepResult,
    StepStatus,
    TransformationStep,
)
from dataplane.pipeline.runners import StepContext, StepOutput, StepRunner, runner_for
from dataplane.pipeline.state import MemoryPipelineStateStore, PipelineStateStore
from dataplane.pipeline.validation import validate_inputs, validate_results
from dataplane.utils.retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)


class StepErrorClassifier:
    """Retry verdicts for step failures."""

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, (StepExecutionError, ConnectorError)):
            return error.retryable
        return False


class _Run:
    """Mutable bookkeeping for one execution."""

    def __init__(self, pipeline: Pipeline, config: ExecutionConfig, state: PipelineExecutionState,
                 previous: Optional[PipelineExecutionState]):
        self.pipeline = pipeline
        self.config = config
        self.state = state
        self.previous = previous
        self.staged: Dict[str, TableRef] = {}
        self.created: List[TableRef] = []
        self.executed: Set[str] = set()

    def resolve(self, name: str) -> TableRef:
        return self.staged.get(name) or TableRef.parse(name)

    def staging_for(self, step: TransformationStep) -> TableRef:
        output = TableRef.parse(step.output_table)
        return TableRef(
            table=f"{output.table}__stg_{self.state.execution_id}",
            schema=output.schema,
            database=output.database,
        )


class PipelineExecutor:
    """
    Validates, orders and executes transformation pipelines.

    Usage:
        executor = PipelineExecutor(registry)
        state = await executor.execute("warehouse", pipeline, ExecutionConfig())
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        state_store: Optional[PipelineStateStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.registry = registry
        self.state_store = state_store or MemoryPipelineStateStore()
        self.dispatcher = NotificationDispatcher(notifier)

    async def execute(
        self,
        connection_id: str,
        pipeline: Pipeline,
        config: Optional[ExecutionConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineExecutionState:
        """
        Run a pipeline to completion, failure or rollback.

        Raises:
            PipelineConfigError: for an invalid DAG or a non-SQL connection,
                before any step runs
        """
        config = config or ExecutionConfig()
        levels = execution_levels(pipeline.steps)

        async with self.registry.session(connection_id) as connector:
            if not isinstance(connector, SQLConnector):
                raise PipelineConfigError(
                    f"Pipelines need a SQL connection; {connection_id} is {connector.source_type.value}"
                )

        previous = None
        if config.mode == ExecutionMode.INCREMENTAL:
            previous = await self.state_store.latest(pipeline.id)

        state = PipelineExecutionState(
            pipeline_id=pipeline.id,
            execution_id=uuid.uuid4().hex[:12],
            mode=config.mode,
            execution_order=levels,
        )
        await self.state_store.save(state)
        run = _Run(pipeline, config, state, previous)

        logger.info(
            f"Starting pipeline {pipeline.id} execution {state.execution_id} "
            f"({config.mode.value}, {len(pipeline.steps)} steps in {len(levels)} levels)"
        )

        failed = False
        for level in levels:
            if cancel_event is not None and cancel_event.is_set():
                state.cancelled = True
                state.errors.append("Execution cancelled")
                logger.info(f"Pipeline {pipeline.id} cancelled before level {level}")
                failed = True
                break

            semaphore = asyncio.Semaphore(config.parallelism)

            async def _bounded(step_id: str) -> StepResult:
                async with semaphore:
                    return await self._run_step(connection_id, run, pipeline.step(step_id))

            results = await asyncio.gather(*(_bounded(step_id) for step_id in level))
            if any(r.status == StepStatus.FAILED for r in results):
                failed = True
                break

        await self._finish(connection_id, run, failed)
        return state

    async def _run_step(self, connection_id: str, run: _Run, step: TransformationStep) -> StepResult:
        state, config = run.state, run.config
        result = StepResult(step_id=step.id, step_name=step.name)
        state.step_results.append(result)

        try:
            async with self.registry.session(connection_id) as connector:
                fingerprints = await self._fingerprints(connector, run, step)
                if await self._can_skip(connector, run, step, fingerprints):
                    result.status = StepStatus.SKIPPED
                    state.completed_steps.append(step.id)
                    state.input_fingerprints[step.id] = fingerprints
                    logger.info(f"Skipping unchanged step {step.id}")
                    return result

                run.executed.add(step.id)
                staging = run.staging_for(step)
                run.created.append(staging)

                retries = config.max_step_retries if config.retry_failed_steps else 0
                executor = RetryExecutor(
                    RetryConfig(max_attempts=retries + 1, base_delay=config.retry_base_delay),
                    classifier=StepErrorClassifier(),
                )
                output: StepOutput = await executor.async_execute(
                    self._attempt, connector, run, step, staging, result
                )

            result.records_processed = output.records_processed
            result.records_output = output.records_output
            result.status = StepStatus.SUCCESS
            run.staged[step.output_table] = staging
            state.completed_steps.append(step.id)
            state.input_fingerprints[step.id] = fingerprints
            logger.info(f"Step {step.id} produced {output.records_output} rows in {staging}")
        except Exception as e:
            result.status = StepStatus.FAILED
            result.error = str(e)
            state.errors.append(f"{step.id}: {e}")
            logger.error(f"Step {step.id} of pipeline {run.pipeline.id} failed after {result.attempts} attempt(s): {e}")
        finally:
            result.end_time = datetime.utcnow()
            await self.state_store.save(state)
        return result

    async def _attempt(
        self,
        connector: SQLConnector,
        run: _Run,
        step: TransformationStep,
        staging: TableRef,
        result: StepResult,
    ) -> StepOutput:
        result.attempts += 1
        await connector.run_sync(lambda conn: validate_inputs(conn, step, run.resolve))

        runner: StepRunner = runner_for(step)
        ctx = StepContext(
            connector=connector,
            step=step,
            staging=staging,
            resolve=run.resolve,
            execution_id=run.state.execution_id,
        )
        try:
            output = await asyncio.wait_for(runner.run(ctx), timeout=run.config.step_timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"Step '{step.id}' exceeded {run.config.step_timeout}s") from e

        checks = await connector.run_sync(lambda conn: validate_results(conn, step, staging))
        result.validation_results = checks
        critical = [c for c in checks if not c.passed and c.severity == "error"]
        if critical:
            raise StepExecutionError(
                step.id,
                "Critical validation failures: " + ", ".join(f"{c.check_name} ({c.message})" for c in critical),
            )
        return output

    async def _fingerprints(self, connector: BaseConnector, run: _Run, step: TransformationStep) -> Dict[str, str]:
        if not isinstance(connector, SQLConnector):
            return {}

        def _collect(conn) -> Dict[str, str]:
            found = {}
            for name in step.input_tables:
                ref = run.resolve(name)
                if tables.table_exists(conn, ref):
                    found[name] = tables.fingerprint(conn, ref)
            return found

        return await connector.run_sync(_collect)

    async def _can_skip(
        self,
        connector: SQLConnector,
        run: _Run,
        step: TransformationStep,
        fingerprints: Dict[str, str],
    ) -> bool:
        previous = run.previous
        if previous is None or step.id not in previous.completed_steps:
            return False
        if previous.status == PipelineStatus.ROLLED_BACK or previous.mode == ExecutionMode.TEST:
            return False
        if any(dependency in run.executed for dependency in step.dependencies):
            return False
        if previous.input_fingerprints.get(step.id, {}) != fingerprints:
            return False
        output = TableRef.parse(step.output_table)
        return await connector.run_sync(lambda conn: tables.table_exists(conn, output))

    async def _finish(self, connection_id: str, run: _Run, failed: bool) -> None:
        state, config = run.state, run.config
        try:
            async with self.registry.session(connection_id) as connector:
                if failed and config.rollback_on_failure:
                    await self._drop_staging(connector, run.created)
                    state.status = PipelineStatus.ROLLED_BACK
                elif config.discards_outputs:
                    await self._drop_staging(connector, run.created)
                    state.status = PipelineStatus.FAILED if failed else PipelineStatus.COMPLETED
                else:
                    await self._promote(connector, run)
                    state.status = PipelineStatus.FAILED if failed else PipelineStatus.COMPLETED
        except Exception as e:
            state.status = PipelineStatus.FAILED
            state.errors.append(f"Finalizing execution failed: {e}")
            logger.error(f"Finalizing pipeline {run.pipeline.id} execution {state.execution_id} failed: {e}")

        state.end_time = datetime.utcnow()
        await self.state_store.save(state)

        event = {
            PipelineStatus.COMPLETED: EventType.PIPELINE_COMPLETED,
            PipelineStatus.ROLLED_BACK: EventType.PIPELINE_ROLLED_BACK,
        }.get(state.status, EventType.PIPELINE_FAILED)
        log = logger.info if state.status == PipelineStatus.COMPLETED else logger.error
        log(
            f"Pipeline {run.pipeline.id} execution {state.execution_id} {state.status.value}: "
            f"{len(state.completed_steps)}/{len(run.pipeline.steps)} steps completed"
        )
        self.dispatcher.emit(event, connection_id, state.to_dict())

    async def _drop_staging(self, connector: SQLConnector, staging: List[TableRef]) -> None:
        """Drop staging tables in reverse creation order."""
        def _drop(conn) -> None:
            for ref in reversed(staging):
                tables.drop_table(conn, ref)

        await connector.run_sync(_drop)
        logger.info(f"Dropped {len(staging)} staging table(s)")

    async def _promote(self, connector: SQLConnector, run: _Run) -> None:
        """Swap successful staging tables onto their outputs in one transaction."""
        promoted = dict(run.staged)
        leftovers = [ref for ref in run.created if ref not in promoted.values()]

        def _swap(conn) -> None:
            for output, staging in promoted.items():
                tables.replace_table(conn, staging, TableRef.parse(output))
            for ref in leftovers:
                tables.drop_table(conn, ref)

        await connector.run_sync(_swap)
        logger.info(f"Promoted {len(promoted)} staged output(s)")
