"""Remediation handler interface and shared error handling.

A handler implements one action. It must be idempotent: re-running it for
the same scope converges on the same state. Handlers run in a worker thread
under the executor's timeout and return an ActionOutcome; exceptions they
raise are converted to failed outcomes by the executor.

Errors are split into two classes:
- transient: throttling, quota, service unavailability, network failures.
  Retried a bounded number of times via call_with_retry().
- permanent: bad configuration, malformed identifiers, missing resources.
  Never retried.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeVar

from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from ..config import MAX_HANDLER_RETRIES, RETRY_BACKOFF_BASE_SECONDS
from ..results import ActionOutcome

if TYPE_CHECKING:
    from ..executor import ExecutionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
TRANSIENT_ERROR_CODES = frozenset(
    {
        "QuotaExceeded",
        "TooManyRequests",
        "RetryableError",
        "InternalServerError",
        "ServerTimeout",
        "AnotherOperationInProgress",
    }
)


class HandlerConfigurationError(Exception):
    """Raised when a handler's inputs are missing or malformed.

    This is a permanent error and is never retried.
    """

    pass


def is_transient_error(error: BaseException) -> bool:
    """Classify an error as retryable.

    Args:
        error: Exception raised by an Azure SDK call.

    Returns:
        True for throttling, quota, availability and network errors.
    """
    if isinstance(error, HandlerConfigurationError | ResourceNotFoundError):
        return False
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return True
    if isinstance(error, HttpResponseError):
        if error.status_code in TRANSIENT_STATUS_CODES:
            return True
        code = getattr(error.error, "code", None) if error.error is not None else None
        return code in TRANSIENT_ERROR_CODES
    return False


def call_with_retry(
    operation: Callable[[], T],
    *,
    operation_name: str,
    max_attempts: int = MAX_HANDLER_RETRIES,
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run an Azure operation, retrying transient failures with backoff.

    Args:
        operation: Zero-argument callable performing the Azure call.
        operation_name: Human-readable name for logging.
        max_attempts: Total attempts including the first.
        backoff_base_seconds: Base for exponential backoff.
        sleep: Sleep function, time.sleep when None.

    Returns:
        The operation's result.

    Raises:
        The last error if all attempts fail, or the first permanent error.
    """
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_transient_error(e) or attempt >= max_attempts:
                raise

            # Exponential backoff with jitter
            backoff = backoff_base_seconds * (2 ** (attempt - 1))
            wait_time = backoff + random.uniform(0, backoff * 0.2)
            logger.warning(
                f"{operation_name} failed with transient error, retrying",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(e),
                },
            )
            (sleep or time.sleep)(wait_time)
            attempt += 1


class ActionHandler(ABC):
    """A pluggable remediation action."""

    #: Action name referenced from the role-action document.
    name: str = ""

    @abstractmethod
    def execute(self, context: ExecutionContext) -> ActionOutcome:
        """Perform the action against live infrastructure."""

    def plan(self, context: ExecutionContext) -> ActionOutcome:
        """Describe what execute() would do, without mutating anything.

        Called instead of execute() in dry-run mode. Overrides may perform
        read-only queries.
        """
        return ActionOutcome.succeeded(
            self.name,
            f"Dry run: would run {self.name} for {context.event.scope}",
            dry_run=True,
            would_execute=True,
        )

    def require_parameter(self, context: ExecutionContext, key: str) -> str:
        """Fetch a required string parameter for this action.

        Raises:
            HandlerConfigurationError: If the parameter is missing or blank.
        """
        value = context.parameters.get(key)
        if not isinstance(value, str) or not value.strip():
            raise HandlerConfigurationError(f"{self.name}: parameter '{key}' is required")
        return value.strip()
