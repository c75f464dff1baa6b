"""Fingerprinting for task inputs and output file names.

A fingerprint is the SHA-256 of the canonical JSON form of a payload (sorted
keys, compact separators), so it is independent of field order and stable
across processes. It backs two things: skipping inputs that already produced
a result, and deriving output file names that are identical on every rerun.
"""

import hashlib
import json
import posixpath
import re
from typing import Any, Dict, Union
from urllib.parse import unquote, urlparse

from .models import SubmitPayload

FINGERPRINT_FIELDS = (
    "prompt",
    "image_url",
    "ratio",
    "seed",
    "watermark",
    "callback_url",
    "translate",
    "extra",
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def compute_fingerprint(payload: Union[SubmitPayload, Dict[str, Any]]) -> str:
    """Compute SHA-256 fingerprint of a submit payload.

    Args:
        payload: SubmitPayload or plain dict with the same fields

    Returns:
        64-character hex digest
    """
    if isinstance(payload, SubmitPayload):
        data = payload.model_dump()
    else:
        data = dict(payload)

    canonical = {field: data.get(field) for field in FINGERPRINT_FIELDS}
    if canonical["extra"] is None:
        canonical["extra"] = {}

    payload_json = json.dumps(
        canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(payload_json.encode("utf-8")).hexdigest()


def _basename_from_url(url: str) -> str:
    path = urlparse(url).path if url else ""
    name = posixpath.basename(unquote(path))
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "video"


def build_output_filename(task_id: str, fingerprint: str, url: str, default_ext: str = ".mp4") -> str:
    """Derive the local file name for a task result.

    Format: ``{task_id}_{fingerprint[:8]}_{basename}``, with ``default_ext``
    appended when the URL basename carries no extension.

    >>> build_output_filename("7", "abcdef0123", "https://cdn/x/clip")
    '7_abcdef01_clip.mp4'
    """
    safe_id = _UNSAFE_CHARS.sub("_", str(task_id)) or "task"
    basename = _basename_from_url(url)
    if not posixpath.splitext(basename)[1]:
        basename = f"{basename}{default_ext}"
    return f"{safe_id}_{fingerprint[:8]}_{basename}"
