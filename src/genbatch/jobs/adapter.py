"""Conversion between persisted video task records and engine tasks."""

from datetime import datetime
from typing import Any, Dict, Optional

from ..documents import RecordStatus, VideoTaskRecord
from .hashing import compute_fingerprint
from .models import BaseTask, SubmitPayload, TaskStatus

RATIOS = ("16:9", "9:16", "1:1", "4:3")

STATUS_FROM_TASK = {
    TaskStatus.PENDING: RecordStatus.WAITING,
    TaskStatus.SUBMITTED: RecordStatus.GENERATING,
    TaskStatus.RUNNING: RecordStatus.GENERATING,
    TaskStatus.SUCCEEDED: RecordStatus.SUCCEEDED,
    TaskStatus.FAILED: RecordStatus.FAILED,
    TaskStatus.TIMEOUT: RecordStatus.FAILED,
    TaskStatus.CANCELED: RecordStatus.FAILED,
}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Task timestamps are naive local time
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _parse_seed(seeds: Optional[str]) -> Optional[int]:
    if not seeds:
        return None
    try:
        return int(str(seeds).strip())
    except ValueError:
        return None


def record_to_task(record: VideoTaskRecord, preset: Dict[str, Any], max_attempts: int = 3) -> BaseTask:
    """Build an engine task from a stored record.

    Records that are waiting, failed, or submitting start over as pending
    with a fresh attempt budget. Records that are generating or downloading
    and carry a provider request id resume polling instead of being
    resubmitted.
    """
    ratio = record.aspect_ratio if record.aspect_ratio in RATIOS else preset.get("default_ratio")
    extra = dict(preset)
    extra["enable_fallback"] = bool(record.enable_fallback or preset.get("enable_fallback"))

    payload = SubmitPayload(
        prompt=record.prompt,
        image_url=record.image_urls[0] if record.image_urls else None,
        ratio=ratio,
        seed=_parse_seed(record.seeds),
        watermark=record.watermark or None,
        callback_url=record.callback_url or None,
        translate="auto" if record.enable_translation else "off",
        extra=extra,
    )
    fingerprint = compute_fingerprint(payload)

    status = RecordStatus(record.status)
    resume = (
        status in (RecordStatus.GENERATING, RecordStatus.DOWNLOADING)
        and bool(record.provider_request_id)
        and record.fingerprint == fingerprint
    )
    if status == RecordStatus.SUCCEEDED:
        task_status = TaskStatus.SUCCEEDED
    elif resume:
        task_status = TaskStatus.RUNNING
    else:
        task_status = TaskStatus.PENDING

    created_at = _parse_time(record.created_at) or datetime.now()
    updated_at = max(_parse_time(record.updated_at) or created_at, created_at)
    attempts = min(record.attempts, max_attempts) if task_status != TaskStatus.PENDING else 0

    return BaseTask(
        id=record.number,
        status=task_status,
        progress=max(0.0, min(1.0, (record.progress or 0) / 100.0)) if task_status != TaskStatus.PENDING else 0.0,
        input=payload,
        provider_request_id=record.provider_request_id if task_status != TaskStatus.PENDING else None,
        attempts=attempts,
        max_attempts=max_attempts,
        fingerprint=fingerprint,
        result_url=record.remote_url,
        local_path=record.local_path,
        actual_filename=record.actual_filename,
        created_at=created_at,
        updated_at=updated_at,
    )


def apply_task_to_record(record: VideoTaskRecord, task: BaseTask) -> VideoTaskRecord:
    """Copy engine state onto ``record`` in place and return it.

    A task that has a result URL but no local file yet shows as downloading.
    """
    status = STATUS_FROM_TASK[TaskStatus(task.status)]
    if status in (RecordStatus.GENERATING, RecordStatus.SUCCEEDED) and task.result_url and not task.local_path:
        status = RecordStatus.DOWNLOADING

    now = datetime.now().isoformat()
    record.status = status
    record.progress = int(round(task.progress * 100))
    record.provider_request_id = task.provider_request_id or record.provider_request_id
    record.remote_url = task.result_url or record.remote_url
    record.local_path = task.local_path or record.local_path
    record.actual_filename = task.actual_filename or record.actual_filename
    record.error_msg = task.error_message if status == RecordStatus.FAILED else None
    record.fingerprint = task.fingerprint or record.fingerprint
    record.attempts = task.attempts
    record.max_attempts = task.max_attempts
    record.updated_at = task.updated_at.isoformat()

    if status in (RecordStatus.SUCCEEDED, RecordStatus.FAILED):
        record.finished_at = now
    elif status == RecordStatus.GENERATING:
        record.started_at = record.started_at or now
    return record
