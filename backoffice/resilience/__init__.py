"""
Resilience patterns for concurrent writers.

Conditional writes that lose a race raise ``WriteConflict``; the retry
policies here re-run the whole read-modify-write with jittered backoff.
"""

from .retry_policies import (
    WriteConflict,
    RetryConfig,
    RetryPolicy,
    ExponentialBackoffPolicy,
    create_sequence_retry_policy,
    create_charges_retry_policy,
    retry_async_operation,
)

__all__ = [
    "WriteConflict",
    "RetryConfig",
    "RetryPolicy",
    "ExponentialBackoffPolicy",
    "create_sequence_retry_policy",
    "create_charges_retry_policy",
    "retry_async_operation",
]
