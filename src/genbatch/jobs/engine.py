"""Video batch engine: submit → poll → download → finalize.

The engine owns an in-memory JobQueue. Callers enqueue BaseTasks, call
``run()`` once, and receive a BatchResult whose ``results`` list holds one
entry per task in enqueue order. Every state change is pushed to
``on_task_update`` (sync or async); failures of that callback are logged
and never reach the engine.

Only ConfigurationError (no usable credential) propagates out of ``run()``.
Everything else ends up on the task as ``error_code`` / ``error_message``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..errors import ConfigurationError, InvalidTransitionError, StorageError
from ..models import EngineSettings
from ..providers.base import VideoProvider, is_transient_error
from ..storage import LocalStorage
from .backoff import BackoffPolicy
from .csv_io import parse_tasks_csv, tasks_to_csv
from .hashing import build_output_filename, compute_fingerprint
from .key_pool import KeyPool
from .models import (
    BaseTask,
    BatchResult,
    QueryResult,
    QueryStatus,
    TaskOutcome,
    TaskStatus,
)
from .poller import Poller
from .queue import JobQueue, TaskCallback
from .runner import SubmissionRunner

logger = logging.getLogger(__name__)


class VideoBatchEngine:
    """Drive a batch of video tasks against one provider.

    Args:
        provider: Vendor implementation
        key_pool: Credential rotation (initialized lazily by ``run``)
        storage: Where downloaded results are written
        settings: Concurrency, attempts, pacing and poll budget
        on_task_update: Sink for task snapshots after every change
        preset: Workflow defaults used by ``import_csv``
        sleep: Injected for tests
    """

    def __init__(
        self,
        provider: VideoProvider,
        key_pool: KeyPool,
        storage: LocalStorage,
        settings: Optional[EngineSettings] = None,
        on_task_update: Optional[TaskCallback] = None,
        preset: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.key_pool = key_pool
        self.storage = storage
        self.settings = settings or EngineSettings()
        self.preset = dict(preset or {})
        self.sleep = sleep
        self.queue = JobQueue(on_update=on_task_update)
        self._order: List[str] = []
        self._download_backoff = BackoffPolicy.from_config(
            self.settings.backoff, self.settings.download_retries + 1
        )

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    async def enqueue(self, tasks: Iterable[BaseTask]) -> List[BaseTask]:
        """Add tasks without starting work.

        Tasks whose fingerprint matches an already succeeded task are
        skipped.

        Returns:
            The tasks actually inserted
        """
        inserted = []
        for task in tasks:
            if not task.fingerprint:
                task.fingerprint = compute_fingerprint(task.input)

            duplicate = self.queue.find_by_fingerprint(task.fingerprint)
            if (
                duplicate is not None
                and duplicate.id != task.id
                and duplicate.status == TaskStatus.SUCCEEDED
            ):
                logger.info("Skipping task=%s: same input already succeeded as task=%s", task.id, duplicate.id)
                continue

            if task.id not in self.queue:
                self._order.append(task.id)
            await self.queue.add(task)
            inserted.append(task)
        return inserted

    def get_tasks(self) -> List[BaseTask]:
        """Snapshot of all tasks in enqueue order."""
        return [self.queue.get(task_id).model_copy(deep=True) for task_id in self._order]

    async def cancel(self, task_id: str) -> bool:
        """Stop tracking a task. In-flight provider calls are not aborted.

        Returns:
            False if the task is unknown or already terminal
        """
        task = self.queue.get(task_id)
        if task is None or task.is_terminal:
            return False
        await self.queue.update(
            task_id, TaskStatus.CANCELED, error_code="CANCELED", error_message="Canceled by user"
        )
        logger.info("Canceled task=%s", task_id)
        return True

    async def import_csv(self, text: str) -> List[BaseTask]:
        """Parse CSV rows into tasks (preset defaults applied) and enqueue them."""
        tasks = parse_tasks_csv(text, self.preset, max_attempts=self.settings.max_attempts)
        return await self.enqueue(tasks)

    def export_csv(self) -> str:
        return tasks_to_csv(self.get_tasks())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self) -> BatchResult:
        """Process every non-terminal task to a terminal state.

        Raises:
            ConfigurationError: no credential available for the provider
        """
        if not len(self.key_pool):
            await self.key_pool.init()

        semaphore = asyncio.Semaphore(self.settings.concurrency)
        runner = SubmissionRunner(
            self.provider, self.key_pool, self.queue, self.settings, semaphore, sleep=self.sleep
        )
        poller = Poller(self.provider, self.key_pool, self.queue, self.settings, semaphore, sleep=self.sleep)
        pipelines: List[asyncio.Task] = []

        def follow(task_id: str) -> None:
            pipelines.append(asyncio.create_task(self._follow(task_id, runner, poller)))

        pending_ids = []
        for task_id in self._order:
            task = self.queue.get(task_id)
            status = TaskStatus(task.status)
            if status == TaskStatus.PENDING:
                pending_ids.append(task_id)
            elif status in (TaskStatus.SUBMITTED, TaskStatus.RUNNING):
                if task.provider_request_id:
                    follow(task_id)
                else:
                    await self.queue.update(task_id, TaskStatus.PENDING)
                    pending_ids.append(task_id)

        logger.info(
            "Batch start provider=%s pending=%d resumed=%d concurrency=%d",
            self.provider.name, len(pending_ids), len(pipelines), self.settings.concurrency,
        )

        try:
            await runner.submit_in_batches(pending_ids, on_submitted=follow)
        except BaseException:
            for pipeline in pipelines:
                pipeline.cancel()
            raise

        outcomes = await asyncio.gather(*pipelines, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, ConfigurationError):
                raise outcome

        await self.key_pool.drain()
        result = self._build_result()
        logger.info(
            "Batch done total=%d succeeded=%d failed=%d",
            len(result.results), len(result.succeeded), len(result.failed),
        )
        return result

    async def _follow(self, task_id: str, runner: SubmissionRunner, poller: Poller) -> None:
        """Poll a submitted task, resubmitting on provider failure while attempts remain."""
        try:
            while True:
                result = await poller.poll(task_id)
                task = self.queue.get(task_id)
                if task.is_terminal:
                    return

                if result is None:
                    await self.queue.update(
                        task_id,
                        TaskStatus.TIMEOUT,
                        error_code="TIMEOUT",
                        error_message=f"No result after {self.settings.max_polls} polls",
                    )
                    return

                if QueryStatus(result.status) == QueryStatus.SUCCEEDED:
                    if not result.result_url:
                        await self._fail(task_id, "NO_RESULT_URL", "Provider reported success without a result URL")
                        return
                    await self._download(task_id, result.result_url)
                    return

                code = result.error_code or "PROVIDER_ERROR"
                message = result.error_message or "Provider reported failure"
                if task.attempts < task.max_attempts:
                    logger.info(
                        "Provider failure, resubmitting task=%s attempt=%d/%d reason=%s",
                        task_id, task.attempts, task.max_attempts, message,
                    )
                    await self.queue.update(
                        task_id, TaskStatus.PENDING, error_code=code, error_message=message, progress=0.0
                    )
                    if not await runner.submit(task_id):
                        return
                    continue

                await self._fail(task_id, code, message)
                return
        except ConfigurationError:
            raise
        except InvalidTransitionError as e:
            if not self.queue.get(task_id).is_terminal:
                logger.error("State error task=%s: %s", task_id, e)
                await self._fail(task_id, "GENERAL_ERROR", str(e))
        except Exception as e:
            logger.exception("Unexpected pipeline error task=%s", task_id)
            await self._fail(task_id, "GENERAL_ERROR", str(e))

    async def _fail(self, task_id: str, code: str, message: str) -> None:
        task = self.queue.get(task_id)
        if task is not None and not task.is_terminal:
            await self.queue.update(task_id, TaskStatus.FAILED, error_code=code, error_message=message)

    async def _download(self, task_id: str, url: str) -> None:
        task = self.queue.get(task_id)
        await self.queue.update(task_id, result_url=url, progress=1.0)
        filename = build_output_filename(task.id, task.fingerprint, url)

        attempt = 0
        while True:
            try:
                data = await self.storage.download(url)
                saved = await asyncio.to_thread(self.storage.save, data, filename)
                break
            except Exception as e:
                if self.queue.get(task_id).is_terminal:
                    return
                if attempt < self.settings.download_retries and is_transient_error(e):
                    wait = self._download_backoff.delay(attempt)
                    logger.info("Download retry task=%s attempt=%d wait=%.2fs reason=%s", task_id, attempt + 1, wait, e)
                    attempt += 1
                    await self.sleep(wait)
                    continue
                code = e.code if isinstance(e, StorageError) and e.code == "SAVE_FAILED" else "DOWNLOAD_ERROR"
                logger.warning("Download failed task=%s url=%s reason=%s", task_id, url, e)
                await self._fail(task_id, code, str(e))
                return

        if self.queue.get(task_id).is_terminal:
            return
        await self.queue.update(
            task_id,
            TaskStatus.SUCCEEDED,
            progress=1.0,
            local_path=saved.local_path,
            actual_filename=saved.filename,
            error_code=None,
            error_message=None,
        )
        logger.info("Task succeeded task=%s path=%s", task_id, saved.local_path)

    def _build_result(self) -> BatchResult:
        result = BatchResult()
        for task in self.get_tasks():
            outcome = TaskOutcome(
                task_id=task.id,
                ok=task.status == TaskStatus.SUCCEEDED,
                status=task.status,
                error_code=task.error_code,
                error_message=task.error_message,
                result_url=task.result_url,
                local_path=task.local_path,
            )
            result.results.append(outcome)
            if not outcome.ok:
                result.failed.append(outcome)
        return result
