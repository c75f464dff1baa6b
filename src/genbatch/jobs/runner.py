"""Submission side of the batch engine.

Handles:
- Batching pending tasks by concurrency with a pause between batches
- Per-attempt key rotation through the key pool
- Error classification (fatal vs transient vs rate limit)
- Attempt accounting (``attempts`` increments on every submission)
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from ..errors import ConfigurationError
from ..models import EngineSettings
from ..providers.base import VideoProvider, is_rate_limit_error, is_transient_error
from .backoff import BackoffPolicy
from .key_pool import KeyPool
from .models import TaskStatus
from .queue import JobQueue

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i:i + size]) for i in range(0, len(items), max(1, size))]


class SubmissionRunner:
    """Submit tasks to a provider, one attempt per key pick."""

    def __init__(
        self,
        provider: VideoProvider,
        key_pool: KeyPool,
        queue: JobQueue,
        settings: EngineSettings,
        semaphore: asyncio.Semaphore,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.key_pool = key_pool
        self.queue = queue
        self.settings = settings
        self.semaphore = semaphore
        self.sleep = sleep
        self.backoff = BackoffPolicy.from_config(settings.backoff, settings.max_attempts)

    def _is_active(self, task_id: str) -> bool:
        task = self.queue.get(task_id)
        return task is not None and not task.is_terminal

    async def _fail(self, task_id: str, code: str, message: str) -> None:
        if self._is_active(task_id):
            await self.queue.update(task_id, TaskStatus.FAILED, error_code=code, error_message=message)

    async def submit(self, task_id: str) -> bool:
        """Submit a pending task until accepted, failed, or out of attempts.

        Returns:
            True when the task moved to ``submitted``

        Raises:
            ConfigurationError: the key pool has no usable credential
        """
        while True:
            task = self.queue.get(task_id)
            if task is None or task.is_terminal:
                return False

            if task.attempts >= task.max_attempts:
                await self._fail(
                    task_id,
                    task.error_code or "SUBMIT_ERROR",
                    task.error_message or f"Gave up after {task.attempts} attempts",
                )
                return False

            entry = self.key_pool.pick()
            attempt = task.attempts + 1
            await self.queue.update(task_id, attempts=attempt, api_key_name=entry.name)
            logger.info(
                "Submitting task=%s attempt=%d/%d key=%s",
                task_id, attempt, task.max_attempts, entry.name,
            )

            try:
                async with self.semaphore:
                    result = await self.provider.submit_job(task.input, entry.api_key)
            except ConfigurationError:
                raise
            except Exception as e:
                if not self._is_active(task_id):
                    return False

                rate_limited = is_rate_limit_error(e)
                if not rate_limited and not is_transient_error(e):
                    logger.warning("Submit rejected task=%s reason=%s", task_id, e)
                    await self._fail(task_id, "SUBMIT_ERROR", str(e))
                    return False

                code = "RATE_LIMIT" if rate_limited else "SUBMIT_ERROR"
                if attempt >= task.max_attempts:
                    logger.warning(
                        "Submit attempts exhausted task=%s attempts=%d reason=%s", task_id, attempt, e
                    )
                    await self._fail(task_id, code, str(e))
                    return False

                if rate_limited:
                    self.key_pool.report_failure(entry.name)
                    wait = max(self.settings.batch_delay_s, self.settings.rate_limit_delay_s)
                else:
                    wait = self.backoff.delay(attempt - 1)
                logger.info(
                    "Submit failed task=%s attempt=%d/%d code=%s wait=%.1fs reason=%s",
                    task_id, attempt, task.max_attempts, code, wait, e,
                )
                await self.queue.update(task_id, error_code=code, error_message=str(e))
                await self.sleep(wait)
                continue

            if not self._is_active(task_id):
                return False
            await self.queue.update(
                task_id,
                TaskStatus.SUBMITTED,
                provider_request_id=result.provider_request_id,
                progress=0.0,
                error_code=None,
                error_message=None,
            )
            return True

    async def submit_in_batches(
        self,
        task_ids: Sequence[str],
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> List[str]:
        """Submit ``task_ids`` in batches of ``concurrency``.

        ``on_submitted`` fires as soon as each task is accepted, so polling
        starts while later batches are still waiting out ``batch_delay_s``.

        Returns:
            Ids that reached ``submitted``
        """
        accepted: List[str] = []
        batches = chunked(task_ids, self.settings.concurrency)
        for index, batch in enumerate(batches):
            if index > 0 and self.settings.batch_delay_s > 0:
                logger.info("Batch pause %.1fs before batch %d/%d", self.settings.batch_delay_s, index + 1, len(batches))
                await self.sleep(self.settings.batch_delay_s)

            async def submit_one(task_id: str) -> None:
                if await self.submit(task_id):
                    accepted.append(task_id)
                    if on_submitted is not None:
                        on_submitted(task_id)

            await asyncio.gather(*(submit_one(task_id) for task_id in batch))
        return accepted
