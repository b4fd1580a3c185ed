"""
Tests for pipeline DAG ordering and the transformation executor.
"""

import asyncio

import pytest
from sqlalchemy import Column, Integer, MetaData, Table, inspect, text

from dataplane.database.connection import DatabaseManager
from dataplane.errors import PipelineConfigError
from dataplane.notifications import EventType, RecordingNotifier
from dataplane.pipeline import (
    ExecutionConfig,
    ExecutionMode,
    MemoryPipelineStateStore,
    Pipeline,
    PipelineExecutor,
    PipelineStatus,
    SQLPipelineStateStore,
    StepRule,
    StepStatus,
    StepType,
    StepValidation,
    TransformationSpec,
    TransformationStep,
    execution_levels,
    register_transform,
)

FAST = dict(retry_base_delay=0)


def seed_orders(engine):
    metadata = MetaData()
    raw_orders = Table(
        "raw_orders", metadata,
        Column("id", Integer, primary_key=True),
        Column("customer_id", Integer),
        Column("amount", Integer),
    )
    metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(raw_orders.insert(), [
            {"id": 1, "customer_id": 1, "amount": 100},
            {"id": 2, "customer_id": 1, "amount": 50},
            {"id": 3, "customer_id": 2, "amount": 75},
            {"id": 4, "customer_id": 3, "amount": -20},
        ])
    return raw_orders


def table_names(engine):
    return set(inspect(engine).get_table_names())


def sql_step(step_id, query, inputs, output, dependencies=(), validation=None):
    return TransformationStep(
        id=step_id,
        transformation=TransformationSpec(query=query),
        input_tables=list(inputs),
        output_table=output,
        dependencies=list(dependencies),
        validation=validation,
    )


CLEAN = sql_step(
    "a",
    "SELECT id, customer_id, amount FROM {{ raw_orders }} WHERE amount > 0",
    ["raw_orders"], "clean_orders",
)
TOTALS = sql_step(
    "b",
    "SELECT customer_id, SUM(amount) AS total FROM {{ clean_orders }} GROUP BY customer_id",
    ["clean_orders"], "customer_totals", ["a"],
)
BIG = sql_step(
    "c",
    "SELECT customer_id, total FROM {{ customer_totals }} WHERE total > 1000000",
    ["customer_totals"], "big_customers", ["b"],
    validation=StepValidation(row_count_check=True, min_rows=1),
)


class TestDag:
    """Dependency validation and level ordering."""

    def test_diamond_levels(self):
        """Test independent steps share a level."""
        steps = [
            sql_step("a", "SELECT 1", [], "t_a"),
            sql_step("b", "SELECT 1", [], "t_b", ["a"]),
            sql_step("c", "SELECT 1", [], "t_c", ["a"]),
            sql_step("d", "SELECT 1", [], "t_d", ["b", "c"]),
        ]
        assert execution_levels(steps) == [["a"], ["b", "c"], ["d"]]

    def test_cycle(self):
        """Test cycles are rejected."""
        steps = [
            sql_step("a", "SELECT 1", [], "t_a", ["b"]),
            sql_step("b", "SELECT 1", [], "t_b", ["a"]),
        ]
        with pytest.raises(PipelineConfigError, match="Circular dependency"):
            execution_levels(steps)

    def test_unknown_dependency(self):
        """Test dependencies must name steps of the pipeline."""
        with pytest.raises(PipelineConfigError, match="unknown step"):
            execution_levels([sql_step("a", "SELECT 1", [], "t_a", ["ghost"])])

    def test_duplicate_step_ids(self):
        """Test step ids are unique within a pipeline."""
        with pytest.raises(ValueError):
            Pipeline(id="p", steps=[sql_step("a", "SELECT 1", [], "x"), sql_step("a", "SELECT 2", [], "y")])

    def test_sql_step_needs_query(self):
        """Test SQL steps carry a query."""
        with pytest.raises(ValueError):
            TransformationStep(id="a", output_table="x")


class TestPipelineExecutor:
    """Pipelines executed against a SQLite connection."""

    @pytest.mark.asyncio
    async def test_success_promotes_outputs(self, registry, source_engine):
        """Test a successful run swaps staging tables onto their outputs."""
        seed_orders(source_engine)
        notifier = RecordingNotifier()
        executor = PipelineExecutor(registry, notifier=notifier)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS])

        state = await executor.execute("source", pipeline, ExecutionConfig(**FAST))
        await executor.dispatcher.drain()

        assert state.status == PipelineStatus.COMPLETED
        assert state.completed_steps == ["a", "b"]
        assert state.execution_order == [["a"], ["b"]]
        assert table_names(source_engine) == {"raw_orders", "clean_orders", "customer_totals"}
        with source_engine.connect() as conn:
            totals = dict(conn.execute(text("SELECT customer_id, total FROM customer_totals")).all())
        assert totals == {1: 150, 2: 75}
        assert state.result_for("a").records_output == 3
        assert len(notifier.of_type(EventType.PIPELINE_COMPLETED)) == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_validation_failure_rolls_back(self, registry, source_engine):
        """Test a critical validation failure drops every staged output."""
        seed_orders(source_engine)
        notifier = RecordingNotifier()
        executor = PipelineExecutor(registry, notifier=notifier)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS, BIG])

        state = await executor.execute("source", pipeline, ExecutionConfig(max_step_retries=2, **FAST))
        await executor.dispatcher.drain()

        assert state.status == PipelineStatus.ROLLED_BACK
        assert state.completed_steps == ["a", "b"]
        assert any("Critical validation failures" in e for e in state.errors)
        assert state.result_for("c").status == StepStatus.FAILED
        assert state.result_for("c").attempts == 3
        assert table_names(source_engine) == {"raw_orders"}
        assert len(notifier.of_type(EventType.PIPELINE_ROLLED_BACK)) == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_failure_without_rollback_keeps_completed_steps(self, registry, source_engine):
        """Test completed outputs are promoted when rollback is off."""
        seed_orders(source_engine)
        executor = PipelineExecutor(registry)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS, BIG])
        config = ExecutionConfig(rollback_on_failure=False, retry_failed_steps=False, **FAST)

        state = await executor.execute("source", pipeline, config)

        assert state.status == PipelineStatus.FAILED
        assert state.result_for("c").attempts == 1
        assert table_names(source_engine) == {"raw_orders", "clean_orders", "customer_totals"}
        await registry.close()

    @pytest.mark.asyncio
    async def test_test_mode_discards_outputs(self, registry, source_engine):
        """Test mode runs and validates every step but keeps nothing."""
        seed_orders(source_engine)
        executor = PipelineExecutor(registry)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS])

        state = await executor.execute("source", pipeline, ExecutionConfig(mode=ExecutionMode.TEST, **FAST))

        assert state.status == PipelineStatus.COMPLETED
        assert state.completed_steps == ["a", "b"]
        assert table_names(source_engine) == {"raw_orders"}
        await registry.close()

    @pytest.mark.asyncio
    async def test_invalid_pipeline_saves_no_state(self, registry, source_engine):
        """Test configuration errors surface before any state is written."""
        store = MemoryPipelineStateStore()
        executor = PipelineExecutor(registry, store)
        pipeline = Pipeline(id="cyclic", steps=[
            sql_step("a", "SELECT 1", [], "t_a", ["b"]),
            sql_step("b", "SELECT 1", [], "t_b", ["a"]),
        ])

        with pytest.raises(PipelineConfigError):
            await executor.execute("source", pipeline)
        assert await store.latest("cyclic") is None

    @pytest.mark.asyncio
    async def test_missing_input_is_not_retried(self, registry, source_engine):
        """Test a missing input table fails the step on its first attempt."""
        executor = PipelineExecutor(registry)
        pipeline = Pipeline(id="orders", steps=[CLEAN])

        state = await executor.execute("source", pipeline, ExecutionConfig(**FAST))

        assert state.status == PipelineStatus.ROLLED_BACK
        assert state.result_for("a").attempts == 1
        assert "does not exist" in state.result_for("a").error
        await registry.close()

    @pytest.mark.asyncio
    async def test_unsupported_step_type(self, registry, source_engine):
        """Test dbt steps fail without retries."""
        seed_orders(source_engine)
        executor = PipelineExecutor(registry)
        step = TransformationStep(id="dbt_models", type=StepType.DBT, input_tables=["raw_orders"], output_table="marts")

        state = await executor.execute("source", Pipeline(id="dbt", steps=[step]), ExecutionConfig(**FAST))

        result = state.result_for("dbt_models")
        assert result.status == StepStatus.FAILED
        assert result.attempts == 1
        assert "not supported" in result.error
        await registry.close()

    @pytest.mark.asyncio
    async def test_python_transform(self, registry, source_engine):
        """Test registered transforms receive input rows and parameters."""
        seed_orders(source_engine)

        @register_transform("scale_amounts")
        def scale_amounts(inputs, factor=1):
            return [{"id": row["id"], "amount": row["amount"] * factor} for row in inputs["raw_orders"]]

        step = TransformationStep(
            id="scale",
            type=StepType.PYTHON,
            transformation=TransformationSpec(script="scale_amounts", parameters={"factor": 10}),
            input_tables=["raw_orders"],
            output_table="scaled_orders",
        )
        executor = PipelineExecutor(registry)

        state = await executor.execute("source", Pipeline(id="py", steps=[step]), ExecutionConfig(**FAST))

        assert state.status == PipelineStatus.COMPLETED
        assert state.result_for("scale").records_processed == 4
        with source_engine.connect() as conn:
            amounts = conn.execute(text("SELECT amount FROM scaled_orders ORDER BY id")).scalars().all()
        assert amounts == [1000, 500, 750, -200]
        await registry.close()

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, registry, source_engine):
        """Test a transient driver error is retried and the step succeeds."""
        seed_orders(source_engine)
        calls = []

        @register_transform("flaky_copy")
        def flaky_copy(inputs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return inputs["raw_orders"]

        step = TransformationStep(
            id="copy",
            type=StepType.PYTHON,
            transformation=TransformationSpec(script="flaky_copy"),
            input_tables=["raw_orders"],
            output_table="orders_copy",
        )
        executor = PipelineExecutor(registry)

        state = await executor.execute("source", Pipeline(id="flaky", steps=[step]), ExecutionConfig(**FAST))

        assert state.status == PipelineStatus.COMPLETED
        assert state.result_for("copy").attempts == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_warning_rules_do_not_fail_step(self, registry, source_engine):
        """Test warning-severity rules are recorded without failing."""
        seed_orders(source_engine)
        step = sql_step(
            "a", "SELECT * FROM {{ raw_orders }}", ["raw_orders"], "all_orders",
            validation=StepValidation(
                data_type_check=True,
                business_rules=[StepRule(name="positive", rule="amount > 0", severity="warning")],
            ),
        )
        executor = PipelineExecutor(registry)

        state = await executor.execute("source", Pipeline(id="warn", steps=[step]), ExecutionConfig(**FAST))

        checks = {c.check_name: c for c in state.result_for("a").validation_results}
        assert state.status == PipelineStatus.COMPLETED
        assert checks["data_types"].passed
        assert not checks["positive"].passed
        assert checks["positive"].message == "1 rows violate amount > 0"
        await registry.close()

    @pytest.mark.asyncio
    async def test_incremental_skips_unchanged_steps(self, registry, source_engine):
        """Test an incremental run skips steps whose inputs did not change."""
        raw_orders = seed_orders(source_engine)
        executor = PipelineExecutor(registry)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS])
        incremental = ExecutionConfig(mode=ExecutionMode.INCREMENTAL, **FAST)

        await executor.execute("source", pipeline, ExecutionConfig(**FAST))
        unchanged = await executor.execute("source", pipeline, incremental)

        assert unchanged.status == PipelineStatus.COMPLETED
        assert [r.status for r in unchanged.step_results] == [StepStatus.SKIPPED, StepStatus.SKIPPED]

        with source_engine.begin() as conn:
            conn.execute(raw_orders.insert().values(id=5, customer_id=2, amount=25))
        changed = await executor.execute("source", pipeline, incremental)

        assert [r.status for r in changed.step_results] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
        with source_engine.connect() as conn:
            total = conn.execute(text("SELECT total FROM customer_totals WHERE customer_id = 2")).scalar_one()
        assert total == 100
        await registry.close()

    @pytest.mark.asyncio
    async def test_cancel_before_first_level(self, registry, source_engine):
        """Test a cancelled execution runs no steps and leaves no tables."""
        seed_orders(source_engine)
        cancel = asyncio.Event()
        cancel.set()
        executor = PipelineExecutor(registry)

        state = await executor.execute("source", Pipeline(id="orders", steps=[CLEAN]), cancel_event=cancel)

        assert state.cancelled
        assert state.step_results == []
        assert state.status == PipelineStatus.ROLLED_BACK
        assert "Execution cancelled" in state.errors
        assert table_names(source_engine) == {"raw_orders"}
        await registry.close()

    @pytest.mark.asyncio
    async def test_sql_state_store(self, registry, source_engine, tmp_path):
        """Test execution state is persisted after the run."""
        seed_orders(source_engine)
        db = DatabaseManager(f"sqlite:///{tmp_path}/state.db")
        store = SQLPipelineStateStore(db)
        executor = PipelineExecutor(registry, store)
        pipeline = Pipeline(id="orders", steps=[CLEAN, TOTALS])

        state = await executor.execute("source", pipeline, ExecutionConfig(**FAST))
        latest = await store.latest("orders")
        loaded = await store.get(state.execution_id)

        assert latest.execution_id == state.execution_id
        assert latest.status == PipelineStatus.COMPLETED
        assert loaded.completed_steps == ["a", "b"]
        assert loaded.input_fingerprints == state.input_fingerprints
        db.close()
        await registry.close()

    @pytest.mark.asyncio
    async def test_incremental_after_sql_store_reload(self, registry, source_engine, tmp_path):
        """Test skips work from state restored out of the state database."""
        seed_orders(source_engine)
        db = DatabaseManager(f"sqlite:///{tmp_path}/state.db")
        executor = PipelineExecutor(registry, SQLPipelineStateStore(db))
        pipeline = Pipeline(id="orders", steps=[CLEAN])

        await executor.execute("source", pipeline, ExecutionConfig(**FAST))
        state = await executor.execute("source", pipeline, ExecutionConfig(mode=ExecutionMode.INCREMENTAL, **FAST))

        assert state.result_for("a").status == StepStatus.SKIPPED
        with source_engine.connect() as conn:
            rows = conn.execute(text("SELECT count(*) FROM clean_orders")).scalar_one()
        assert rows == 3
        db.close()
        await registry.close()
