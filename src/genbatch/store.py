"""JSON document store with a single in-process writer.

All reads and writes go through one ``asyncio.Lock``. ``update`` holds the
lock across the whole read-modify-write, so concurrent updates from batch
callbacks never lose each other's changes. Files are replaced atomically
(temp file in the same directory + ``os.replace``).
"""

import asyncio
import inspect
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from .documents import AppData

logger = logging.getLogger(__name__)

UpdateFn = Callable[[AppData], Union[Optional[AppData], Awaitable[Optional[AppData]]]]


class DocumentStore:
    """Read/write the application document at ``path``."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> AppData:
        if not self.path.exists():
            data = AppData()
            self._dump(data)
            logger.info("Created default document path=%s", self.path)
            return data
        with open(self.path, "r", encoding="utf-8") as f:
            raw = f.read()
        if not raw.strip():
            return AppData()
        return AppData.model_validate(json.loads(raw))

    def _dump(self, data: AppData) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = data.model_dump(mode="json", by_alias=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def read(self) -> AppData:
        """Return a fresh copy of the document (waits for pending writes)."""
        async with self._lock:
            return self._load()

    async def write(self, data: AppData) -> None:
        async with self._lock:
            self._dump(data)

    async def update(self, fn: UpdateFn) -> AppData:
        """Apply ``fn`` to the current document and persist the result.

        ``fn`` may mutate the document in place (returning None) or return a
        replacement. Sync and async callables are both accepted.
        """
        async with self._lock:
            data = self._load()
            result: Any = fn(data)
            if inspect.isawaitable(result):
                result = await result
            if result is not None:
                data = result
            self._dump(data)
            return data
