"""CSV import/export of video tasks."""

import csv
import io
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .hashing import compute_fingerprint
from .models import BaseTask, SubmitPayload

VIDEO_CSV_COLUMNS = (
    "id",
    "prompt",
    "image_url",
    "ratio",
    "seed",
    "watermark",
    "callback_url",
    "translate",
    "fallback_model",
    "note",
)

COLUMN_ALIASES = {
    "imageurl": "image_url",
    "image": "image_url",
    "aspect_ratio": "ratio",
    "aspectratio": "ratio",
    "callback": "callback_url",
    "callbackurl": "callback_url",
    "fallback": "fallback_model",
}

EXTRA_COLUMNS = ("fallback_model", "note")


def normalize_header(header: str) -> Optional[str]:
    """Map a CSV header to a known column, or None for unknown columns."""
    normalized = header.strip().lower()
    if normalized in VIDEO_CSV_COLUMNS:
        return normalized
    return COLUMN_ALIASES.get(normalized)


def parse_tasks_csv(text: str, preset: Optional[Dict[str, Any]] = None, max_attempts: int = 3) -> List[BaseTask]:
    """Build pending tasks from CSV text.

    Unknown columns land in ``input.extra`` under their original header.
    Empty cells fall back to the preset defaults.

    Raises:
        ValueError: a row cannot be turned into a valid payload
    """
    preset = preset or {}
    rows = [row for row in csv.reader(io.StringIO(text.lstrip("\ufeff"))) if any(cell.strip() for cell in row)]
    if len(rows) <= 1:
        return []

    header = rows[0]
    columns = [normalize_header(h) for h in header]
    tasks = []
    for index, row in enumerate(rows[1:], start=1):
        values: Dict[str, str] = {}
        extra: Dict[str, Any] = dict(preset)
        for col_index, original in enumerate(header):
            value = row[col_index].strip() if col_index < len(row) else ""
            column = columns[col_index]
            if column is None:
                extra[original] = value
            elif column in EXTRA_COLUMNS:
                extra[column] = value
            else:
                values[column] = value

        seed = values.get("seed")
        try:
            payload = SubmitPayload(
                prompt=values.get("prompt", ""),
                image_url=values.get("image_url") or None,
                ratio=values.get("ratio") or preset.get("default_ratio"),
                seed=int(seed) if seed else preset.get("default_seed"),
                watermark=values.get("watermark") or preset.get("default_watermark") or None,
                callback_url=values.get("callback_url") or preset.get("default_callback") or None,
                translate=values.get("translate") or preset.get("default_translate"),
                extra=extra,
            )
        except (ValidationError, ValueError) as e:
            raise ValueError(f"CSV row {index}: {e}") from e

        now = datetime.now()
        tasks.append(
            BaseTask(
                id=values.get("id") or f"row_{index}",
                input=payload,
                max_attempts=max_attempts,
                fingerprint=compute_fingerprint(payload),
                created_at=now,
                updated_at=now,
            )
        )
    return tasks


def tasks_to_csv(tasks: List[BaseTask]) -> str:
    """Serialize task inputs with the canonical column set."""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(VIDEO_CSV_COLUMNS), lineterminator="\n")
    writer.writeheader()
    for task in tasks:
        payload = task.input
        writer.writerow({
            "id": task.id,
            "prompt": payload.prompt,
            "image_url": payload.image_url or "",
            "ratio": payload.ratio or "",
            "seed": "" if payload.seed is None else payload.seed,
            "watermark": payload.watermark or "",
            "callback_url": payload.callback_url or "",
            "translate": payload.translate or "",
            "fallback_model": payload.extra.get("fallback_model", ""),
            "note": payload.extra.get("note", ""),
        })
    return buffer.getvalue()
