"""
Data models for transformation pipelines.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from dataplane.config.settings import settings


class StepType(str, Enum):
    SQL = "sql"
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    DBT = "dbt"
    SPARK = "spark"


class ExecutionMode(str, Enum):
    """
    full: run every step.
    incremental: skip steps completed in the last stored state whose inputs
        have not changed.
    test: run and validate every step, then discard the staged outputs.
    """
    FULL = "full"
    INCREMENTAL = "incremental"
    TEST = "test"


class PipelineStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class TransformationSpec(BaseModel):
    query: Optional[str] = None
    script: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StepRule(BaseModel):
    """SQL boolean expression every output row must satisfy."""
    name: str
    rule: str
    severity: str = Field(default="error", pattern="^(error|warning)$")


class StepValidation(BaseModel):
    row_count_check: bool = False
    min_rows: int = Field(default=1, ge=0)
    data_type_check: bool = False
    business_rules: List[StepRule] = Field(default_factory=list)


class TransformationStep(BaseModel):
    """One node of a pipeline DAG."""
    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    type: StepType = StepType.SQL
    transformation: TransformationSpec = Field(default_factory=TransformationSpec)
    input_tables: List[str] = Field(default_factory=list)
    output_table: str = Field(..., min_length=1)
    dependencies: List[str] = Field(default_factory=list)
    validation: Optional[StepValidation] = None

    @model_validator(mode="after")
    def _check_transformation(self) -> "TransformationStep":
        if not self.name:
            self.name = self.id
        if self.type == StepType.SQL and not self.transformation.query:
            raise ValueError(f"SQL step '{self.id}' needs transformation.query")
        if self.type == StepType.PYTHON and not self.transformation.script:
            raise ValueError(f"Python step '{self.id}' needs transformation.script naming a registered transform")
        return self


class Pipeline(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    steps: List[TransformationStep] = Field(..., min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_ids(cls, steps: List[TransformationStep]) -> List[TransformationStep]:
        seen = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        return steps

    def step(self, step_id: str) -> TransformationStep:
        return next(s for s in self.steps if s.id == step_id)


class ExecutionConfig(BaseModel):
    mode: ExecutionMode = ExecutionMode.FULL
    dry_run: bool = False
    parallelism: int = Field(default=1, ge=1)
    retry_failed_steps: bool = True
    max_step_retries: int = Field(default_factory=lambda: settings.pipeline.max_step_retries, ge=0)
    retry_base_delay: float = Field(default_factory=lambda: settings.pipeline.retry_base_delay, ge=0)
    step_timeout: float = Field(default_factory=lambda: settings.pipeline.step_timeout, gt=0)
    rollback_on_failure: bool = True

    @property
    def discards_outputs(self) -> bool:
        return self.dry_run or self.mode == ExecutionMode.TEST


@dataclass
class ValidationCheck:
    check_name: str
    passed: bool
    message: Optional[str] = None
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "passed": self.passed,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class StepResult:
    step_id: str
    step_name: str
    status: StepStatus = StepStatus.FAILED
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    records_processed: int = 0
    records_output: int = 0
    attempts: int = 0
    error: Optional[str] = None
    validation_results: List[ValidationCheck] = field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        if not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "records_output": self.records_output,
            "attempts": self.attempts,
            "error": self.error,
            "validation_results": [v.to_dict() for v in self.validation_results],
        }


@dataclass
class PipelineExecutionState:
    """Progress of one pipeline execution; saved after every step."""
    pipeline_id: str
    execution_id: str
    status: PipelineStatus = PipelineStatus.RUNNING
    mode: ExecutionMode = ExecutionMode.FULL
    completed_steps: List[str] = field(default_factory=list)
    execution_order: List[List[str]] = field(default_factory=list)
    step_results: List[StepResult] = field(default_factory=list)
    input_fingerprints: Dict[str, Dict[str, str]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    start_time: datetime = field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None

    def result_for(self, step_id: str) -> Optional[StepResult]:
        return next((r for r in self.step_results if r.step_id == step_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "execution_id": self.execution_id,
            "status": self.status.value,
            "mode": self.mode.value,
            "completed_steps": list(self.completed_steps),
            "execution_order": self.execution_order,
            "step_results": [r.to_dict() for r in self.step_results],
            "input_fingerprints": self.input_fingerprints,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineExecutionState":
        """Restore the fields needed to resume; step results are not restored."""
        return cls(
            pipeline_id=data["pipeline_id"],
            execution_id=data["execution_id"],
            status=PipelineStatus(data["status"]),
            mode=ExecutionMode(data.get("mode", ExecutionMode.FULL.value)),
            completed_steps=list(data.get("completed_steps", [])),
            execution_order=[list(level) for level in data.get("execution_order", [])],
            input_fingerprints=dict(data.get("input_fingerprints", {})),
            errors=list(data.get("errors", [])),
            cancelled=bool(data.get("cancelled", False)),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]) if data.get("end_time") else None,
        )
