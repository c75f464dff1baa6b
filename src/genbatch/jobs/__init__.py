"""Batch job engine: task model, queue, key rotation, submission and polling."""

from .backoff import BackoffPolicy, compute_backoff_delay, retry_async
from .hashing import build_output_filename, compute_fingerprint
from .key_pool import KeyPool, mask_key
from .models import (
    BaseTask,
    BatchResult,
    KeyPoolEntry,
    QueryResult,
    QueryStatus,
    SubmitPayload,
    SubmitResult,
    TaskOutcome,
    TaskStatus,
    normalize_progress,
)
from .queue import JobQueue

__all__ = [
    "BackoffPolicy",
    "compute_backoff_delay",
    "retry_async",
    "build_output_filename",
    "compute_fingerprint",
    "KeyPool",
    "mask_key",
    "BaseTask",
    "BatchResult",
    "KeyPoolEntry",
    "QueryResult",
    "QueryStatus",
    "SubmitPayload",
    "SubmitResult",
    "TaskOutcome",
    "TaskStatus",
    "normalize_progress",
    "JobQueue",
]
