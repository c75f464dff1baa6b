"""Round-robin pool of API credentials for one provider platform."""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Set

from ..documents import AppData
from ..errors import ConfigurationError
from ..store import DocumentStore
from .models import KeyPoolEntry

logger = logging.getLogger(__name__)

PlatformMatcher = Callable[[str], bool]
SettingsResolver = Callable[[AppData], Iterable[KeyPoolEntry]]


def mask_key(api_key: str) -> str:
    """Render a credential safe for logs: first 4 and last 4 characters."""
    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


def video_settings_resolver(data: AppData) -> List[KeyPoolEntry]:
    """Default resolver: the single key stored in the video settings."""
    api_key = (data.video_settings.api_key or "").strip()
    if not api_key:
        return []
    return [KeyPoolEntry(name="videoSettings", api_key=api_key, platform="videoSettings")]


def no_settings_resolver(data: AppData) -> List[KeyPoolEntry]:
    return []


class KeyPool:
    """Credentials merged from the environment, settings and the key library.

    Merge order: environment variables (``env:NAME``), then the settings
    resolver, then key library entries whose lower-cased platform satisfies
    ``platform_matcher``. Duplicate key values keep their first occurrence.

    ``pick`` rotates through the entries and records ``last_used`` in the
    key library without blocking the caller. Entries reported through
    ``report_failure`` are skipped by ``pick`` while an unpenalized entry
    remains.
    """

    def __init__(
        self,
        store: DocumentStore,
        platform_matcher: PlatformMatcher,
        env_var_names: Sequence[str] = ("KIE_API_KEY",),
        settings_resolver: SettingsResolver = video_settings_resolver,
        missing_key_message: str = "No API key configured",
    ):
        self.store = store
        self.platform_matcher = platform_matcher
        self.env_var_names = tuple(env_var_names)
        self.settings_resolver = settings_resolver
        self.missing_key_message = missing_key_message
        self.entries: List[KeyPoolEntry] = []
        self._index = 0
        self._penalized: Set[str] = set()
        self._pending_writes: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self.entries)

    async def init(self) -> "KeyPool":
        """Load and merge credentials.

        Raises:
            ConfigurationError: if no credential is available
        """
        data = await self.store.read()
        merged: List[KeyPoolEntry] = []

        for var_name in self.env_var_names:
            value = (os.environ.get(var_name) or "").strip()
            if value:
                merged.append(KeyPoolEntry(name=f"env:{var_name}", api_key=value, platform="environment"))

        merged.extend(self.settings_resolver(data))

        for entry in data.key_library.values():
            api_key = (entry.api_key or "").strip()
            if api_key and self.platform_matcher((entry.platform or "").lower()):
                merged.append(
                    KeyPoolEntry(name=entry.name, api_key=api_key, platform=entry.platform)
                )

        seen: Set[str] = set()
        self.entries = []
        for entry in merged:
            if entry.api_key in seen:
                continue
            seen.add(entry.api_key)
            self.entries.append(entry)

        self._index = 0
        self._penalized.clear()

        if not self.entries:
            raise ConfigurationError(self.missing_key_message)

        logger.info(
            "Key pool ready entries=%s",
            ", ".join(f"{e.name}({mask_key(e.api_key)})" for e in self.entries),
        )
        return self

    def peek(self) -> KeyPoolEntry:
        """Entry the next ``pick`` would start from, without advancing."""
        if not self.entries:
            raise ConfigurationError("Key pool is not initialized")
        return self.entries[self._index % len(self.entries)]

    def get(self, name: Optional[str]) -> Optional[KeyPoolEntry]:
        return next((e for e in self.entries if e.name == name), None)

    def pick(self) -> KeyPoolEntry:
        if not self.entries:
            raise ConfigurationError("Key pool is not initialized")

        entry = self.peek()
        for offset in range(len(self.entries)):
            candidate = self.entries[(self._index + offset) % len(self.entries)]
            if candidate.name not in self._penalized:
                entry = candidate
                self._index = (self._index + offset) % len(self.entries)
                break

        self._index = (self._index + 1) % len(self.entries)
        entry.last_used = datetime.now()
        self._schedule_last_used(entry)
        return entry

    def report_failure(self, name: str) -> None:
        """Deprioritize ``name`` for the rest of this run."""
        if self.get(name) is not None and name not in self._penalized:
            self._penalized.add(name)
            logger.info("Key penalized name=%s", name)

    def _schedule_last_used(self, entry: KeyPoolEntry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._record_last_used(entry.name, entry.last_used))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _record_last_used(self, name: str, when: datetime) -> None:
        def apply(data: AppData) -> None:
            if name in data.key_library:
                data.key_library[name].last_used = when.isoformat()

        try:
            await self.store.update(apply)
        except Exception as e:
            logger.warning("Could not record key usage name=%s error=%s", name, e)

    async def drain(self) -> None:
        """Wait for outstanding last-used writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))
