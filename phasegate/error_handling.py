"""
Error Handling Utilities

Exception taxonomy for the engine and the retry/backoff policy used
when calling unreliable assessors.
"""

import logging
import random
import time
from typing import Callable, Any, Optional, Type
from dataclasses import dataclass

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PhasegateError(Exception):
    """Base exception for engine errors"""
    pass


class ConfigurationError(PhasegateError):
    """Registry or configuration is invalid"""
    pass


class AssessorError(PhasegateError):
    """The assessor could not produce a score"""
    pass


class AssessorTimeoutError(AssessorError):
    """The assessor did not answer in time"""
    pass


class MalformedResponseError(AssessorError):
    """The assessor answered with something that is not a score"""
    pass


class AssessorUnavailableError(AssessorError):
    """The assessor cannot be reached or has nothing to offer"""
    pass


class WorkItemNotFoundError(PhasegateError):
    """No work item with the given id"""
    pass


class GateInProgressError(PhasegateError):
    """Another gate evaluation holds the work item's lease; retry later"""

    def __init__(self, work_item_id: str):
        super().__init__(f"Gate evaluation in progress for work item {work_item_id}")
        self.work_item_id = work_item_id


class PreconditionFailedError(PhasegateError):
    """The requested transition is not valid from the current state"""
    pass


class AwaitingOverrideError(PreconditionFailedError):
    """The current attempt escalated and waits for a human decision"""
    pass


class DuplicateRecordError(PhasegateError):
    """An immutable record with the same key already exists"""
    pass


class ConcurrencyError(PhasegateError):
    """Compare-and-swap update lost against a concurrent writer"""
    pass


# ============================================================================
# RETRY LOGIC
# ============================================================================

@dataclass
class RetryPolicy:
    """Retry policy configuration"""
    max_retries: int = 2
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    exponential_base: float = 3.0
    jitter: bool = False
    retryable_exceptions: tuple[Type[Exception], ...] = (AssessorError, ConnectionError, TimeoutError)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def total_delay_seconds(self) -> float:
        """Upper bound on time spent sleeping between attempts (jitter included)"""
        handler = RetryHandler(RetryPolicy(
            max_retries=self.max_retries,
            initial_delay_ms=self.initial_delay_ms,
            max_delay_ms=self.max_delay_ms,
            exponential_base=self.exponential_base,
            jitter=False,
        ))
        total_ms = sum(handler.calculate_delay(n) for n in range(1, self.max_attempts))
        if self.jitter:
            total_ms *= 1.25
        return total_ms / 1000.0


class RetryHandler:
    """Handles retry logic with exponential backoff and optional jitter"""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize retry handler

        Args:
            policy: Retry policy (uses defaults if not provided)
            sleep: Sleep function, replaceable in tests
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute function with retry logic

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: Last exception if all retries fail
        """
        last_exception = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.policy.retryable_exceptions as e:
                last_exception = e

                if attempt == self.policy.max_attempts:
                    break

                delay_seconds = self.calculate_delay(attempt) / 1000.0
                logger.debug(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt, self.policy.max_attempts, e, delay_seconds
                )
                self._sleep(delay_seconds)

        raise last_exception

    def calculate_delay(self, attempt: int) -> int:
        """
        Calculate delay before the retry that follows `attempt`

        Args:
            attempt: Attempt number (1-indexed)

        Returns:
            Delay in milliseconds
        """
        delay = self.policy.initial_delay_ms * (self.policy.exponential_base ** (attempt - 1))
        delay = min(delay, self.policy.max_delay_ms)

        if self.policy.jitter:
            # Random jitter between 0% and 25% of delay
            delay = delay + random.uniform(0, delay * 0.25)

        return int(delay)
