"""Pydantic models for batch task data structures.

This module defines the task record that flows through the submit/poll/download
lifecycle, the provider-facing payloads and the task state machine.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..errors import InvalidTransitionError


class TaskStatus(str, Enum):
    """Task lifecycle states.

    State transitions:
        pending   → submitted   (provider accepted the job)
        pending   → failed      (fatal submit error or attempts exhausted)
        submitted → running     (provider reports work in progress)
        submitted → succeeded   (result downloaded)
        submitted → failed      (provider failure, no attempts left)
        submitted → timeout     (poll budget exhausted)
        submitted → pending     (provider failure, resubmit)
        running   → same exits as submitted
        * → canceled            (user cancel, non-terminal states only)
    """

    PENDING = "pending"
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


_IN_FLIGHT_EXITS = {
    TaskStatus.RUNNING,
    TaskStatus.SUCCEEDED,
    TaskStatus.FAILED,
    TaskStatus.TIMEOUT,
    TaskStatus.PENDING,
    TaskStatus.CANCELED,
}

ALLOWED_TRANSITIONS: Dict[TaskStatus, set] = {
    TaskStatus.PENDING: {TaskStatus.SUBMITTED, TaskStatus.FAILED, TaskStatus.CANCELED},
    TaskStatus.SUBMITTED: _IN_FLIGHT_EXITS,
    TaskStatus.RUNNING: _IN_FLIGHT_EXITS,
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.TIMEOUT: set(),
    TaskStatus.CANCELED: set(),
}

TERMINAL_STATUSES = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.CANCELED}
)

Ratio = Literal["16:9", "9:16", "1:1", "4:3"]
Translate = Literal["auto", "off", "zh", "en"]


def normalize_progress(value: Any) -> Optional[float]:
    """Coerce a vendor progress value into [0, 1].

    Values above 1 are read as percentages (45 -> 0.45). Non-numeric input
    returns None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    if number > 1:
        number = number / 100.0
    return max(0.0, min(1.0, number))


class SubmitPayload(BaseModel):
    """Provider-neutral generation request."""

    prompt: str = Field(..., description="Text prompt")
    image_url: Optional[str] = Field(default=None, description="Reference image URL")
    ratio: Optional[Ratio] = Field(default=None, description="Output aspect ratio")
    seed: Optional[int] = Field(default=None, description="Deterministic seed")
    watermark: Optional[str] = Field(default=None, description="Watermark text")
    callback_url: Optional[str] = Field(default=None, description="Provider callback URL")
    translate: Optional[Translate] = Field(default=None, description="Prompt translation flag")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Vendor-specific options")


class SubmitResult(BaseModel):
    provider_request_id: str = Field(..., min_length=1)


class QueryStatus(str, Enum):
    """Vendor job status as seen by a poll."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class QueryResult(BaseModel):
    """Normalized answer of a single poll."""

    status: QueryStatus
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @field_validator("progress", mode="before")
    @classmethod
    def _normalize(cls, v: Any) -> Optional[float]:
        return normalize_progress(v)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class BaseTask(BaseModel):
    """A single generation job and everything known about it.

    ``updated_at`` only moves forward and ``attempts`` never exceeds
    ``max_attempts``; both are enforced by :meth:`transition` and
    :meth:`touch`.
    """

    id: str = Field(..., description="Stable id, mirrors the external record number")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Current state")
    progress: float = Field(default=0.0, ge=0.0, le=1.0, description="Fraction complete")
    input: SubmitPayload = Field(..., description="Request sent to the provider")
    provider_request_id: Optional[str] = Field(default=None, description="Vendor job id")
    api_key_name: Optional[str] = Field(default=None, description="Key pool entry used to submit")
    attempts: int = Field(default=0, ge=0, description="Submissions made so far")
    max_attempts: int = Field(default=3, ge=1, description="Submission limit")
    fingerprint: str = Field(default="", description="Hash of the input payload")
    result_url: Optional[str] = Field(default=None, description="Remote asset URL")
    local_path: Optional[str] = Field(default=None, description="Public-relative saved path")
    actual_filename: Optional[str] = Field(default=None, description="Saved file name")
    error_code: Optional[str] = Field(default=None, description="Terminal error code")
    error_message: Optional[str] = Field(default=None, description="Terminal error detail")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last change time")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        validate_assignment = True

    @property
    def is_terminal(self) -> bool:
        return TaskStatus(self.status) in TERMINAL_STATUSES

    def can_transition_to(self, status: TaskStatus) -> bool:
        current = TaskStatus(self.status)
        target = TaskStatus(status)
        if current == target:
            return current not in TERMINAL_STATUSES
        return target in ALLOWED_TRANSITIONS[current]

    def touch(self) -> None:
        """Advance updated_at, never backwards."""
        now = datetime.now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def transition(self, status: TaskStatus, **changes: Any) -> "BaseTask":
        """Move to ``status`` and apply ``changes`` in place.

        Raises:
            InvalidTransitionError: if the edge is not in the state machine
        """
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Task {self.id}: illegal transition {TaskStatus(self.status).value} -> "
                f"{TaskStatus(status).value}"
            )
        attempts = changes.get("attempts", self.attempts)
        max_attempts = changes.get("max_attempts", self.max_attempts)
        if attempts > max_attempts:
            raise InvalidTransitionError(
                f"Task {self.id}: attempts {attempts} exceed max_attempts {max_attempts}"
            )
        for key, value in changes.items():
            setattr(self, key, value)
        self.status = status
        self.touch()
        return self


class KeyPoolEntry(BaseModel):
    """A named API credential."""

    name: str
    api_key: str
    platform: str = ""
    last_used: Optional[datetime] = None


class TaskOutcome(BaseModel):
    """Per-task summary returned by a batch run."""

    task_id: str
    ok: bool
    status: TaskStatus
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    result_url: Optional[str] = None
    local_path: Optional[str] = None

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class BatchResult(BaseModel):
    """Aggregate outcome of ``VideoBatchEngine.run``.

    ``results`` holds one entry per task in enqueue order; ``failed`` is the
    subset that did not succeed.
    """

    results: List[TaskOutcome] = Field(default_factory=list)
    failed: List[TaskOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[TaskOutcome]:
        return [r for r in self.results if r.ok]
