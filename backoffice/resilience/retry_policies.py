"""Retry policies for compare-and-swap write loops."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
    retry_if_exception_type
)

from backoffice.observability.tracing import get_tracer
from backoffice.observability.metrics import Counter

tracer = get_tracer(__name__)

# Metrics
retry_attempts_total = Counter(
    "backoffice_retry_attempts_total",
    "Total retry attempts",
    ["service", "operation", "attempt"]
)

retry_failures_total = Counter(
    "backoffice_retry_failures_total",
    "Total retry failures after all attempts",
    ["service", "operation", "error_type"]
)


class WriteConflict(Exception):
    """A conditional write matched no row because another writer got there first."""


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 5
    base_delay: float = 0.01
    max_delay: float = 0.5
    exponential_base: float = 2.0
    jitter: bool = True


class RetryPolicy(ABC):
    """Abstract base class for retry policies."""

    def __init__(self, config: RetryConfig, service_name: str = "unknown"):
        self.config = config
        self.service_name = service_name

    @abstractmethod
    def get_tenacity_decorator(self, operation_name: str = "unknown"):
        """Get tenacity decorator for this policy."""


class ExponentialBackoffPolicy(RetryPolicy):
    """Exponential backoff retry policy.

    The last exception is re-raised unchanged once attempts are exhausted,
    so callers handle a ``WriteConflict`` rather than a tenacity wrapper.
    """

    def __init__(
        self,
        config: RetryConfig,
        service_name: str = "unknown",
        retryable_exceptions: tuple = (WriteConflict,)
    ):
        super().__init__(config, service_name)
        self.retryable_exceptions = retryable_exceptions

    def get_tenacity_decorator(self, operation_name: str = "unknown"):
        """Get tenacity decorator with exponential backoff."""
        wait_strategy = wait_exponential(
            multiplier=self.config.base_delay,
            max=self.config.max_delay,
            exp_base=self.config.exponential_base
        )

        if self.config.jitter:
            wait_strategy = wait_random_exponential(
                multiplier=self.config.base_delay,
                max=self.config.max_delay
            )

        return retry(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_strategy,
            retry=retry_if_exception_type(self.retryable_exceptions),
            before_sleep=self._before_sleep_callback(operation_name),
            after=self._after_callback(operation_name),
            reraise=True
        )

    def _before_sleep_callback(self, operation_name: str):
        """Callback before sleep between retries."""
        def callback(retry_state):
            attempt = retry_state.attempt_number
            retry_attempts_total.labels(
                service=self.service_name,
                operation=operation_name,
                attempt=str(attempt)
            ).inc()

            with tracer.start_as_current_span("retry_attempt") as span:
                span.set_attribute("service", self.service_name)
                span.set_attribute("operation", operation_name)
                span.set_attribute("attempt", attempt)
                span.set_attribute("exception", str(retry_state.outcome.exception()))

        return callback

    def _after_callback(self, operation_name: str):
        """Callback after each failed attempt once attempts are exhausted."""
        def callback(retry_state):
            if retry_state.attempt_number < self.config.max_attempts:
                return
            if retry_state.outcome is not None and retry_state.outcome.failed:
                exception = retry_state.outcome.exception()
                retry_failures_total.labels(
                    service=self.service_name,
                    operation=operation_name,
                    error_type=type(exception).__name__
                ).inc()

        return callback


# Predefined retry policies

def create_sequence_retry_policy(max_attempts: int = 5) -> ExponentialBackoffPolicy:
    """Create retry policy for sequence counter compare-and-swap."""
    return ExponentialBackoffPolicy(
        config=RetryConfig(max_attempts=max_attempts, base_delay=0.005, max_delay=0.2),
        service_name="sequence_allocator",
        retryable_exceptions=(WriteConflict,)
    )


def create_charges_retry_policy(max_attempts: int = 5) -> ExponentialBackoffPolicy:
    """Create retry policy for optimistic writes to monthly charge rows."""
    return ExponentialBackoffPolicy(
        config=RetryConfig(max_attempts=max_attempts, base_delay=0.01, max_delay=0.5),
        service_name="billing",
        retryable_exceptions=(WriteConflict,)
    )


# Utility functions for custom retry logic

async def retry_async_operation(
    operation: Callable,
    policy: RetryPolicy,
    operation_name: str = "unknown",
    *args,
    **kwargs
) -> Any:
    """Retry async operation with given policy.

    Args:
        operation: Async function to retry
        policy: Retry policy to use
        operation_name: Name for metrics/logging
        *args: Operation arguments
        **kwargs: Operation keyword arguments

    Returns:
        Operation result

    Raises:
        Exception: Last exception if all retries failed
    """
    decorator = policy.get_tenacity_decorator(operation_name)
    decorated_operation = decorator(operation)

    return await decorated_operation(*args, **kwargs)
