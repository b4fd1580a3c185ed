"""
Retry classification and bounded retry execution for Dataplane.

Each connector family owns a RetryPolicy: a fixed table of error codes and
message substrings that mark a failure as transient. RetryClassifier turns
any raised error into a RetryVerdict, and RetryExecutor retries an async
callable only while the classifier says the failure is retryable.
"""

import asyncio
import errno
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

import httpx
from sqlalchemy import exc as sa_exc

from dataplane.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    RateLimitError,
)

logger = logging.getLogger(__name__)


class RetryVerdict(str, Enum):
    """Classifier outcome."""
    RETRYABLE = "retryable"
    FATAL = "fatal"


class RetryStrategy(Enum):
    """Retry strategy types."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class RetryPolicy:
    """Error-code and message tables for one connector family."""
    family: str
    retryable_codes: FrozenSet[str] = frozenset()
    retryable_messages: Tuple[str, ...] = ()
    fatal_messages: Tuple[str, ...] = ()

    def extend(
        self,
        family: str,
        codes: Iterable[str] = (),
        messages: Iterable[str] = (),
        fatal_messages: Iterable[str] = (),
    ) -> "RetryPolicy":
        return RetryPolicy(
            family=family,
            retryable_codes=self.retryable_codes | frozenset(c.upper() for c in codes),
            retryable_messages=self.retryable_messages + tuple(m.lower() for m in messages),
            fatal_messages=self.fatal_messages + tuple(m.lower() for m in fatal_messages),
        )


COMMON_POLICY = RetryPolicy(
    family="common",
    retryable_codes=frozenset({
        "ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "EPIPE",
        str(errno.ECONNRESET), str(errno.ECONNREFUSED), str(errno.ETIMEDOUT), str(errno.EPIPE),
        "429", "503",
    }),
    retryable_messages=(
        "timeout", "timed out", "connection reset", "connection refused",
        "network error", "socket hang up", "broken pipe", "rate limit",
        "too many requests", "service unavailable", "temporarily unavailable",
    ),
    fatal_messages=(
        "syntax error", "permission denied", "access denied", "authentication",
        "unauthorized", "does not exist", "no such table", "no such column",
        "invalid identifier", "malformed",
    ),
)

RDBMS_POLICY = COMMON_POLICY.extend(
    "rdbms",
    codes=(
        # MySQL lock wait, deadlock, server gone away, lost connection
        "1205", "ER_LOCK_WAIT_TIMEOUT", "1213", "ER_LOCK_DEADLOCK", "2006", "2013",
        # PostgreSQL serialization, deadlock, too many connections, shutdown, connection
        "40001", "40P01", "53300", "57P01", "57P02", "57P03",
        "08000", "08001", "08003", "08006",
    ),
    messages=(
        "lock wait timeout", "deadlock", "database is locked", "server has gone away",
        "lost connection", "too many connections", "could not serialize access",
    ),
)

WAREHOUSE_POLICY = RDBMS_POLICY.extend(
    "warehouse",
    codes=(
        # Redshift
        "1023", "1018", "1017",
        # Snowflake session and network faults
        "390144", "390318", "390400",
        # BigQuery / Databricks HTTP
        "500", "502", "504", "BACKENDERROR", "INTERNALERROR", "RATELIMITEXCEEDED",
    ),
    messages=(
        "cluster is starting", "cluster is restarting", "quota exceeded",
        "backend error", "internal error", "network",
    ),
)

SAAS_POLICY = COMMON_POLICY.extend(
    "saas",
    codes=(
        "REQUEST_LIMIT_EXCEEDED", "SERVER_UNAVAILABLE", "UNABLE_TO_LOCK_ROW",
        "TIMEOUT", "500", "502", "504",
        # Xero X-Rate-Limit-Problem values; the daily limit is not retryable
        "MINUTE", "CONCURRENT", "APPMINUTE",
    ),
    messages=(
        "request limit exceeded", "unable to lock row", "server unavailable",
        "server error", "organisation is offline", "rate limit exceeded",
    ),
)

POLICIES: Dict[str, RetryPolicy] = {
    "rdbms": RDBMS_POLICY,
    "warehouse": WAREHOUSE_POLICY,
    "saas": SAAS_POLICY,
}

AUTH_MESSAGES = (
    "authentication failed", "password authentication", "invalid credentials",
    "access denied for user", "login failed", "invalid_grant", "invalid_client",
    "incorrect username or password", "invalid_session_id",
)

CODE_ATTRIBUTES = ("code", "pgcode", "sqlstate", "sql_state", "errno", "error_code", "status_code", "errorCode")

TRANSIENT_TYPES = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)


def _family_key(family: Any) -> str:
    return str(getattr(family, "value", family)).lower()


def _chain(error: BaseException) -> Iterable[BaseException]:
    """The error, its DBAPI original and its causes."""
    seen: Set[int] = set()
    pending = [error]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.append(getattr(current, "orig", None))
        pending.append(current.__cause__)


def error_codes(error: BaseException) -> Set[str]:
    """Collect every code-like attribute on an error chain as upper-case strings."""
    codes: Set[str] = set()
    for current in _chain(error):
        for attribute in CODE_ATTRIBUTES:
            value = getattr(current, attribute, None)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                codes.add(str(value).upper())
        response = getattr(current, "response", None)
        status_code = getattr(response, "status_code", None)
        if isinstance(status_code, int):
            codes.add(str(status_code))
        args = getattr(current, "args", ())
        if args and isinstance(args[0], int):
            codes.add(str(args[0]))
    return codes


def error_message(error: BaseException) -> str:
    return " | ".join(str(current) for current in _chain(error)).lower()


def is_authentication_error(error: BaseException) -> bool:
    """True when the error reports rejected credentials."""
    if isinstance(error, AuthenticationError):
        return True
    codes = error_codes(error)
    if "401" in codes or "28P01" in codes or "1045" in codes or "18456" in codes:
        return True
    message = error_message(error)
    return any(m in message for m in AUTH_MESSAGES)


class RetryClassifier:
    """Turns a raised error into a RetryVerdict using a family policy."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy

    @classmethod
    def for_family(cls, family: Any) -> "RetryClassifier":
        key = _family_key(family)
        if key not in POLICIES:
            raise ValueError(f"No retry policy for connector family: {key}")
        return cls(POLICIES[key])

    def classify(self, error: BaseException) -> RetryVerdict:
        if isinstance(error, (AuthenticationError, ConfigurationError)):
            return RetryVerdict.FATAL
        if isinstance(error, ConnectorError):
            return RetryVerdict.RETRYABLE if error.retryable else RetryVerdict.FATAL
        if isinstance(error, TRANSIENT_TYPES):
            return RetryVerdict.RETRYABLE
        if getattr(error, "connection_invalidated", False):
            return RetryVerdict.RETRYABLE
        if is_authentication_error(error):
            return RetryVerdict.FATAL
        return self.classify_parts(error_codes(error), error_message(error))

    def classify_parts(self, codes: Iterable[str], message: str) -> RetryVerdict:
        """Classify from a set of error codes and a message."""
        message = message.lower()
        if any(m in message for m in self.policy.fatal_messages):
            return RetryVerdict.FATAL
        if {str(c).upper() for c in codes} & self.policy.retryable_codes:
            return RetryVerdict.RETRYABLE
        if any(m in message for m in self.policy.retryable_messages):
            return RetryVerdict.RETRYABLE
        return RetryVerdict.FATAL

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) == RetryVerdict.RETRYABLE


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1


@dataclass
class RetryExecutor:
    """
    Bounded retry executor.

    Only errors the classifier marks retryable are retried; everything else
    propagates on the first failure.
    """
    config: RetryConfig = field(default_factory=RetryConfig)
    classifier: Optional[RetryClassifier] = None

    def _calculate_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Calculate delay for the given attempt based on strategy with jitter."""
        if self.config.strategy == RetryStrategy.FIXED:
            delay = self.config.base_delay
        elif self.config.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.config.base_delay * (self.config.backoff_multiplier ** attempt)
        else:
            delay = self.config.base_delay * (attempt + 1)

        delay = min(delay, self.config.max_delay)

        if self.config.jitter and delay > 0:
            jitter_amount = delay * self.config.jitter_range
            delay = random.uniform(delay - jitter_amount, delay + jitter_amount)

        if isinstance(error, RateLimitError) and error.retry_after_ms:
            delay = max(delay, error.retry_after_ms / 1000.0)

        return max(0.0, delay)

    def _should_retry(self, exception: BaseException, attempt: int) -> bool:
        """Determine if the exception should trigger a retry."""
        if attempt + 1 >= self.config.max_attempts:
            return False
        if self.classifier is not None:
            return self.classifier.is_retryable(exception)
        if isinstance(exception, ConnectorError):
            return exception.retryable
        return False

    async def async_execute(
        self,
        func: Callable[..., Any],
        *args,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        **kwargs,
    ) -> Any:
        """Execute async function with retry logic."""
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self._should_retry(e, attempt):
                    logger.debug(f"Not retrying after attempt {attempt + 1}: {e}")
                    raise

                delay = self._calculate_delay(attempt, e)
                logger.warning(
                    f"Attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.2f} seconds..."
                )
                if on_retry is not None:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(delay)
                attempt += 1
