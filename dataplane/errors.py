"""
Error taxonomy for Dataplane.

Connector-level failures always leave a connector wrapped in a
ConnectorError subclass carrying a retryable verdict. Engine-level errors
(checkpoint claims, pipeline configuration) derive from DataPlaneError.
"""

from typing import Any, Dict, Optional


class DataPlaneError(Exception):
    """Base class for all Dataplane errors."""


class ConnectorError(DataPlaneError):
    """Error raised by a connector, tagged with a code and retry verdict."""

    default_code = "CONNECTOR_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "context": self.context,
        }


class ConnectorConnectionError(ConnectorError):
    """A session could not be established or maintained."""

    default_code = "CONNECTION_FAILED"
    default_retryable = True


class AuthenticationError(ConnectorError):
    """Credentials were rejected by the source."""

    default_code = "AUTH_FAILED"
    default_retryable = False


class QueryError(ConnectorError):
    """A query failed; carries the retry classifier's verdict."""

    default_code = "QUERY_FAILED"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        sql: Optional[str] = None,
    ):
        super().__init__(message, code=code, retryable=retryable, context=context)
        self.sql = sql


class RateLimitError(ConnectorError):
    """The source throttled the request."""

    default_code = "RATE_LIMITED"
    default_retryable = True

    def __init__(self, message: str, retry_after_ms: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms


class OperationTimeoutError(ConnectorError):
    """A bounded operation exceeded its time window."""

    default_code = "TIMEOUT"
    default_retryable = True


class ConfigurationError(ConnectorError):
    """Connection or engine configuration is invalid."""

    default_code = "INVALID_CONFIG"
    default_retryable = False


class ValidationError(DataPlaneError):
    """A quality or business rule evaluation itself raised."""

    def __init__(self, message: str, check: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.check = check
        self.cause = cause


class CheckpointClaimedError(DataPlaneError):
    """Another run already holds the checkpoint for a (connection, table)."""

    def __init__(self, connection_id: str, table: str):
        super().__init__(f"Checkpoint for {connection_id}:{table} is claimed by another run")
        self.connection_id = connection_id
        self.table = table


class PipelineConfigError(DataPlaneError):
    """Pipeline definition is invalid (unknown dependency, cycle, bad step)."""


class StepExecutionError(DataPlaneError):
    """A transformation step failed during execution or result validation."""

    def __init__(self, step_id: str, message: str, retryable: bool = True):
        super().__init__(f"Step '{step_id}' failed: {message}")
        self.step_id = step_id
        self.retryable = retryable


class UnsupportedStepError(StepExecutionError):
    """The step type has no runner in this engine."""

    def __init__(self, step_id: str, step_type: str):
        super().__init__(step_id, f"step type '{step_type}' is not supported", retryable=False)
        self.step_type = step_type
