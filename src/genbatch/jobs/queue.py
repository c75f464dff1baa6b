"""In-memory task queue with update notifications."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .models import BaseTask, TaskStatus

logger = logging.getLogger(__name__)

TaskCallback = Callable[[BaseTask], Union[None, Awaitable[None]]]


async def notify_safely(callback: Optional[TaskCallback], task: BaseTask) -> None:
    """Invoke a task-update sink; failures are logged, never raised."""
    if callback is None:
        return
    try:
        result = callback(task.model_copy(deep=True))
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Task update callback failed task=%s error=%s", task.id, e)


class JobQueue:
    """Tasks keyed by id, listed in creation order.

    Every ``update`` is validated against the task state machine and then
    forwarded to ``on_update``.
    """

    def __init__(self, on_update: Optional[TaskCallback] = None):
        self._tasks: Dict[str, BaseTask] = {}
        self.on_update = on_update

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    async def add(self, task: BaseTask) -> None:
        self._tasks[task.id] = task
        await notify_safely(self.on_update, task)

    def get(self, task_id: str) -> Optional[BaseTask]:
        return self._tasks.get(task_id)

    def list(self) -> List[BaseTask]:
        return sorted(self._tasks.values(), key=lambda t: t.created_at)

    def find_by_fingerprint(self, fingerprint: str) -> Optional[BaseTask]:
        return next((t for t in self._tasks.values() if t.fingerprint == fingerprint), None)

    async def update(self, task_id: str, status: Optional[TaskStatus] = None, **changes: Any) -> BaseTask:
        """Apply ``changes`` (and a status transition when given) to a task.

        Raises:
            KeyError: unknown task id
            InvalidTransitionError: illegal status change
        """
        task = self._tasks[task_id]
        task.transition(status if status is not None else TaskStatus(task.status), **changes)
        await notify_safely(self.on_update, task)
        return task
