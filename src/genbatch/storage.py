"""Local blob storage for generated assets."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import httpx

from .errors import StorageError

logger = logging.getLogger(__name__)


@dataclass
class SavedFile:
    """Where a saved asset ended up."""

    local_path: str  # POSIX, relative to the public root when inside it
    filename: str
    absolute_path: str


class LocalStorage:
    """Download remote assets and write them under ``base_dir``.

    Args:
        base_dir: Output folder (created on first save)
        public_dir: Root that ``SavedFile.local_path`` is expressed against
        client: Shared httpx client; a private one is created when omitted
        timeout_s: Download timeout for the private client
    """

    def __init__(
        self,
        base_dir: Union[str, Path],
        public_dir: Union[str, Path] = "public",
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 300.0,
    ):
        self.base_dir = Path(base_dir)
        self.public_dir = Path(public_dir)
        self._client = client
        self.timeout_s = timeout_s

    async def download(self, url: str) -> bytes:
        """Fetch ``url`` and return the body.

        Raises:
            StorageError: on HTTP errors (transient for 5xx and network errors)
        """
        try:
            if self._client is not None:
                response = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise StorageError(f"Download failed for {url}: {e}", transient=True) from e

        if response.status_code >= 400:
            raise StorageError(
                f"Download failed for {url}: HTTP {response.status_code}",
                transient=response.status_code >= 500,
            )
        return response.content

    def save(self, data: bytes, filename: str) -> SavedFile:
        """Write ``data`` to ``base_dir/filename``, replacing any previous file.

        Raises:
            StorageError: with code SAVE_FAILED when the write fails
        """
        target = self.base_dir / filename
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.part")
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StorageError(f"Cannot write {target}: {e}", code="SAVE_FAILED") from e

        logger.debug("Saved asset path=%s bytes=%d", target, len(data))
        return SavedFile(
            local_path=self.relative_path(target),
            filename=target.name,
            absolute_path=str(target.resolve()),
        )

    def relative_path(self, path: Path) -> str:
        absolute = path.resolve()
        try:
            return absolute.relative_to(self.public_dir.resolve()).as_posix()
        except ValueError:
            return absolute.as_posix()
