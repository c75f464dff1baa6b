"""High-level generation workflows on top of the engine and the orchestrator.

Usage:
    store = DocumentStore("data/app-data.json")
    config = resolve_config()

    # Generate every waiting/failed video task of workflow A on Kie
    result = await workflows.generate_videos(store, config, workflow="A")

    # Generate images for new prompts
    images = await workflows.generate_images(store, config, mode="new")
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from .documents import AppData, RecordStatus, VideoTaskRecord
from .images import ImageJob, ImageOrchestrator, OrchestrationResult
from .jobs.adapter import apply_task_to_record, record_to_task
from .jobs.csv_io import parse_tasks_csv, tasks_to_csv
from .jobs.engine import VideoBatchEngine
from .jobs.key_pool import KeyPool, no_settings_resolver, video_settings_resolver
from .jobs.models import BaseTask, TaskStatus
from .models import GenBatchConfig
from .providers import PROVIDERS, build_preset, get_provider, resolve_provider_key
from .storage import LocalStorage
from .store import DocumentStore

logger = logging.getLogger(__name__)

ELIGIBLE_VIDEO_STATUSES = (
    RecordStatus.WAITING,
    RecordStatus.FAILED,
    RecordStatus.SUBMITTING,
    RecordStatus.GENERATING,
    RecordStatus.DOWNLOADING,
)
IMAGE_MODES = ("new", "selected", "all")


class FailedTaskSummary(BaseModel):
    number: str
    status: str
    error: str


class GenerateVideosResult(BaseModel):
    success: bool
    message: str = ""
    succeeded: List[str] = Field(default_factory=list)
    failed: List[FailedTaskSummary] = Field(default_factory=list)


def select_video_targets(
    data: AppData, workflow: str, numbers: Optional[Sequence[str]] = None
) -> List[VideoTaskRecord]:
    """Records of ``workflow`` that still need work, optionally limited to ``numbers``."""
    records = data.video_tasks
    if numbers:
        wanted = set(numbers)
        records = [r for r in records if r.number in wanted]
    return [
        r for r in records
        if (r.workflow or "A") == workflow and RecordStatus(r.status) in ELIGIBLE_VIDEO_STATUSES
    ]


async def persist_video_tasks(store: DocumentStore, tasks: Sequence[BaseTask]) -> None:
    """Write task state back onto the matching video task records."""
    def apply(data: AppData) -> None:
        for task in tasks:
            record = data.find_video_task(task.id)
            if record is not None:
                apply_task_to_record(record, task)

    await store.update(apply)


async def generate_videos(
    store: DocumentStore,
    config: GenBatchConfig,
    numbers: Optional[Sequence[str]] = None,
    workflow: Optional[str] = None,
    provider: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    sleep=asyncio.sleep,
    on_task_update: Optional[Callable[[BaseTask], None]] = None,
    concurrency: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> GenerateVideosResult:
    """Run the video batch for the selected records and persist every change.

    Concurrency and attempts come from the arguments, else the document's
    API settings, else the config. The batch delay is the larger of the
    configured one and the provider's pace.

    Raises:
        ConfigurationError: no credential for the chosen provider
    """
    provider_key = resolve_provider_key(provider or config.providers.video_provider)
    workflow = workflow or config.providers.workflow
    spec = PROVIDERS[provider_key]
    data = await store.read()

    targets = select_video_targets(data, workflow, numbers)
    if not targets:
        return GenerateVideosResult(success=False, message="No video tasks to generate")

    settings = config.engine.model_copy(update={
        "concurrency": max(1, concurrency or data.api_settings.thread_count or config.engine.concurrency),
        "max_attempts": max(1, max_attempts or data.api_settings.retry_count or config.engine.max_attempts),
        "batch_delay_s": max(config.engine.batch_delay_s, spec.batch_delay_s),
    })

    key_pool = KeyPool(
        store,
        spec.platform_matcher,
        env_var_names=spec.env_var_names,
        settings_resolver=video_settings_resolver if spec.family == "kie" else no_settings_resolver,
        missing_key_message=spec.missing_key_message,
    )
    await key_pool.init()

    base_url = config.providers.kie_base_url if spec.family == "kie" else config.providers.yunwu_base_url
    video_provider = get_provider(
        provider_key, client=client, timeout_s=config.providers.http_timeout_s, base_url=base_url
    )
    storage = LocalStorage(
        data.video_settings.save_path or config.storage.video_dir,
        public_dir=config.storage.public_dir,
        client=client,
    )
    preset = build_preset(workflow, provider_key)

    async def handle_task_update(task: BaseTask) -> None:
        await persist_video_tasks(store, [task])
        if on_task_update is not None:
            on_task_update(task)

    engine = VideoBatchEngine(
        video_provider,
        key_pool,
        storage,
        settings=settings,
        on_task_update=handle_task_update,
        preset=preset,
        sleep=sleep,
    )
    await engine.enqueue(record_to_task(record, preset, settings.max_attempts) for record in targets)
    await engine.run()

    final_tasks = engine.get_tasks()
    await persist_video_tasks(store, final_tasks)

    succeeded = [t.id for t in final_tasks if t.status == TaskStatus.SUCCEEDED]
    failed = [
        FailedTaskSummary(number=t.id, status=t.status, error=t.error_message or "Unknown error")
        for t in final_tasks
        if t.status != TaskStatus.SUCCEEDED
    ]

    if failed and not succeeded:
        return GenerateVideosResult(success=False, message="All video tasks failed", failed=failed)
    if failed:
        return GenerateVideosResult(
            success=True,
            message=f"Some video tasks failed ({len(failed)}/{len(final_tasks)})",
            succeeded=succeeded,
            failed=failed,
        )
    return GenerateVideosResult(
        success=True, message=f"Generated {len(succeeded)} video(s)", succeeded=succeeded
    )


def select_prompt_jobs(data: AppData, mode: str, numbers: Optional[Sequence[str]] = None) -> List[ImageJob]:
    """Build image jobs from prompt records.

    Modes: ``new`` (waiting records), ``selected`` (``numbers``), ``all``.

    Raises:
        ValueError: unknown mode
    """
    if mode not in IMAGE_MODES:
        raise ValueError(f"Unknown mode {mode!r}, expected one of {', '.join(IMAGE_MODES)}")
    if mode == "new":
        prompts = [p for p in data.prompts if RecordStatus(p.status) == RecordStatus.WAITING]
    elif mode == "selected":
        wanted = set(numbers or [])
        prompts = [p for p in data.prompts if p.number in wanted]
    else:
        prompts = list(data.prompts)

    return [
        ImageJob(
            id=p.number,
            prompt=p.prompt,
            ref_images=list(p.ref_images),
            style_id=p.style,
            meta={"prompt_number": p.number},
        )
        for p in prompts
    ]


async def generate_images(
    store: DocumentStore,
    config: GenBatchConfig,
    mode: str = "new",
    numbers: Optional[Sequence[str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    sleep=asyncio.sleep,
    concurrency: Optional[int] = None,
    retry_count: Optional[int] = None,
) -> OrchestrationResult:
    """Generate images for the selected prompt records.

    Concurrency and retries follow the same precedence as videos:
    arguments, then the document's API settings, then the config.

    Raises:
        ConfigurationError: no usable credential
        ValueError: unknown mode
    """
    data = await store.read()
    jobs = select_prompt_jobs(data, mode, numbers)
    if not jobs:
        return OrchestrationResult()

    storage = LocalStorage(
        data.api_settings.save_path or config.storage.image_dir,
        public_dir=config.storage.public_dir,
        client=client,
    )
    orchestrator = ImageOrchestrator(store, storage, settings=config.images, client=client, sleep=sleep)
    logger.info("Generating images mode=%s jobs=%d", mode, len(jobs))
    return await orchestrator.orchestrate(
        jobs,
        concurrency=concurrency or data.api_settings.thread_count or config.images.concurrency,
        retry_count=retry_count if retry_count is not None else data.api_settings.retry_count,
    )


def summarize_video_tasks(data: AppData) -> Dict[str, int]:
    """Count video task records by status."""
    counts = {status.value: 0 for status in RecordStatus}
    for record in data.video_tasks:
        counts[RecordStatus(record.status).value] += 1
    counts["total"] = len(data.video_tasks)
    return counts


def export_video_tasks_csv(data: AppData, workflow: Optional[str] = None, provider: Optional[str] = None) -> str:
    """Render video task records as CSV, all workflows unless ``workflow`` is given."""
    provider_key = resolve_provider_key(provider)
    tasks = [
        record_to_task(record, build_preset(record.workflow or "A", provider_key), record.max_attempts or 3)
        for record in data.video_tasks
        if workflow is None or (record.workflow or "A") == workflow
    ]
    return tasks_to_csv(tasks)


async def import_video_tasks_csv(
    store: DocumentStore,
    text: str,
    workflow: str = "A",
    provider: Optional[str] = None,
) -> List[str]:
    """Create or update video task records from CSV rows.

    A record whose inputs change is reset to waiting so the next run
    regenerates it; unchanged records keep their state.

    Raises:
        ValueError: a row cannot be parsed
    """
    provider_key = resolve_provider_key(provider)
    preset = build_preset(workflow, provider_key)
    tasks = parse_tasks_csv(text, preset)

    def apply(data: AppData) -> None:
        for task in tasks:
            payload = task.input
            record = data.find_video_task(task.id)
            if record is None:
                record = VideoTaskRecord(number=task.id, prompt=payload.prompt)
                data.video_tasks.append(record)
            record.prompt = payload.prompt
            record.image_urls = [payload.image_url] if payload.image_url else []
            record.aspect_ratio = payload.ratio
            record.seeds = None if payload.seed is None else str(payload.seed)
            record.watermark = payload.watermark
            record.callback_url = payload.callback_url
            record.enable_translation = payload.translate != "off"
            record.enable_fallback = bool(payload.extra.get("fallback_model") or preset.get("enable_fallback"))
            record.workflow = workflow

            fingerprint = record_to_task(record, preset, record.max_attempts or 3).fingerprint
            if record.fingerprint != fingerprint:
                record.status = RecordStatus.WAITING
                record.progress = 0
                record.provider_request_id = None
                record.error_msg = None
                record.attempts = 0
                record.fingerprint = fingerprint

    await store.update(apply)
    logger.info("Imported %d video task(s) from CSV workflow=%s", len(tasks), workflow)
    return [task.id for task in tasks]
