"""
Transformation pipelines: DAG ordering, step runners and the executor.
"""

from dataplane.pipeline.dag import execution_levels, topological_order, validate_dag
from dataplane.pipeline.executor import PipelineExecutor
from dataplane.pipeline.models import (
    ExecutionConfig,
    ExecutionMode,
    Pipeline,
    PipelineExecutionState,
    PipelineStatus,
    StepResult,
    StepRule,
    StepStatus,
    StepType,
    StepValidation,
    TransformationSpec,
    TransformationStep,
    ValidationCheck,
)
from dataplane.pipeline.runners import TRANSFORMS, register_transform
from dataplane.pipeline.state import MemoryPipelineStateStore, PipelineStateStore, SQLPipelineStateStore

__all__ = [
    "execution_levels",
    "topological_order",
    "validate_dag",
    "PipelineExecutor",
    "ExecutionConfig",
    "ExecutionMode",
    "Pipeline",
    "PipelineExecutionState",
    "PipelineStatus",
    "StepResult",
    "StepRule",
    "StepStatus",
    "StepType",
    "StepValidation",
    "TransformationSpec",
    "TransformationStep",
    "ValidationCheck",
    "TRANSFORMS",
    "register_transform",
    "MemoryPipelineStateStore",
    "PipelineStateStore",
    "SQLPipelineStateStore",
]
