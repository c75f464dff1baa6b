"""Polling side of the batch engine."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..errors import ConfigurationError
from ..models import EngineSettings
from ..providers.base import VideoProvider
from .key_pool import KeyPool
from .models import QueryResult, QueryStatus, TaskStatus
from .queue import JobQueue

logger = logging.getLogger(__name__)


class Poller:
    """Poll one submitted task at a time until it settles.

    Polls for a given task are strictly sequential. The credential that
    submitted the task is reused; the pool's current entry is the fallback
    when that name is unknown (tasks resumed from storage).
    """

    def __init__(
        self,
        provider: VideoProvider,
        key_pool: KeyPool,
        queue: JobQueue,
        settings: EngineSettings,
        semaphore: asyncio.Semaphore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.key_pool = key_pool
        self.queue = queue
        self.settings = settings
        self.semaphore = semaphore
        self.sleep = sleep

    async def poll(self, task_id: str) -> Optional[QueryResult]:
        """Poll until the provider reports a final state.

        Returns:
            The succeeded/failed QueryResult, or None when the poll budget is
            exhausted or the task was canceled meanwhile
        """
        for poll_number in range(1, self.settings.max_polls + 1):
            await self.sleep(self.settings.poll_interval_s)

            task = self.queue.get(task_id)
            if task is None or task.is_terminal:
                return None

            entry = self.key_pool.get(task.api_key_name) or self.key_pool.peek()
            try:
                async with self.semaphore:
                    result = await self.provider.query_job(task.provider_request_id, entry.api_key)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.warning("Poll error task=%s poll=%d reason=%s", task_id, poll_number, e)
                continue

            task = self.queue.get(task_id)
            if task is None or task.is_terminal:
                return None

            status = QueryStatus(result.status)
            if status in (QueryStatus.SUCCEEDED, QueryStatus.FAILED):
                logger.info("Poll settled task=%s status=%s polls=%d", task_id, status.value, poll_number)
                return result

            progress = result.progress if result.progress is not None else task.progress
            if status == QueryStatus.RUNNING:
                await self.queue.update(task_id, TaskStatus.RUNNING, progress=progress)
            elif progress != task.progress:
                await self.queue.update(task_id, progress=progress)
            logger.debug("Poll task=%s status=%s progress=%.2f", task_id, status.value, progress)

        logger.warning("Poll budget exhausted task=%s polls=%d", task_id, self.settings.max_polls)
        return None
