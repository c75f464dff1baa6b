"""Request message building and response parsing for chat-completions image APIs.

Response content comes in several shapes depending on the platform. The
parser tries, in priority order:
1. Markdown image with an inline data URI: ``![..](data:image/png;base64,...)``
2. A markdown download link: ``[点击下载](https://...)``
3. Markdown image with an http(s) URL
4. Lists of parts (first part that yields an image wins)
5. Structured parts typed ``output_image``/``image`` (``image_base64``,
   ``b64_json``, ``image_url`` as string or ``{"url": ...}``, ``url``), or
   ``text``/``input_text`` parts whose text is parsed again
"""

import base64
import logging
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from ..documents import AppData, ImageReference
from .models import ImageJob

logger = logging.getLogger(__name__)

MARKDOWN_DATA_IMAGE = re.compile(r"!\[[^\]]*\]\((data:image/[^;]+;base64,[^)]+)\)")
DOWNLOAD_LINK = re.compile(r"\[(?:点击下载|download)\]\(([^)]+)\)", re.IGNORECASE)
MARKDOWN_HTTP_IMAGE = re.compile(r"!\[[^\]]*\]\((https?:[^)]+)\)")
INLINE_SCHEMES = ("http://", "https://", "data:")

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/png": ".png",
}
EXTENSION_MIMES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".png": "image/png",
}


@dataclass
class ParsedImage:
    """Exactly one of ``data_uri`` / ``url`` is set."""

    data_uri: Optional[str] = None
    url: Optional[str] = None


def apply_style(prompt: str, style_content: Optional[str]) -> str:
    """Append style text unless the prompt already contains it."""
    style = (style_content or "").strip()
    if not style or style in prompt:
        return prompt
    return f"{prompt}\n{style}"


def resolve_style(job: ImageJob, data: AppData) -> str:
    """Job style, else the custom style text, else the current library style."""
    if job.style_id and job.style_id in data.style_library:
        content = (data.style_library[job.style_id].content or "").strip()
        if content:
            return content
    custom = (data.custom_style_content or "").strip()
    if custom:
        return custom
    current = data.style_library.get(data.current_style) if data.current_style else None
    return (current.content or "").strip() if current else ""


def collect_image_map(data: AppData) -> Dict[str, ImageReference]:
    image_map: Dict[str, ImageReference] = {}
    for references in data.category_links.values():
        for reference in references:
            if reference.name:
                image_map[reference.name] = reference
    return image_map


def extract_image_names(prompt: str, names: Iterable[str]) -> List[str]:
    """Library names mentioned in ``prompt``, longest first."""
    return [name for name in sorted(names, key=len, reverse=True) if name and name in prompt]


def read_local_image(path: str, public_dir: Path) -> Optional[str]:
    """Read an image under the public root as a data URI, or None if unreadable."""
    candidate = Path(path)
    if not candidate.is_file():
        relative = Path(path.lstrip("/"))
        if relative.parts and relative.parts[0] == public_dir.name:
            candidate = public_dir.parent / relative
        else:
            candidate = public_dir / relative
    try:
        raw = candidate.read_bytes()
    except (OSError, ValueError) as e:
        logger.warning("Cannot read reference image path=%s error=%s", candidate, e)
        return None
    mime = EXTENSION_MIMES.get(candidate.suffix.lower(), "image/png")
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def build_message_content(
    job: ImageJob,
    prompt_text: str,
    image_map: Dict[str, ImageReference],
    public_dir: Path,
) -> List[Dict[str, Any]]:
    """User message parts: the prompt text followed by reference images."""
    content: List[Dict[str, Any]] = [{"type": "text", "text": prompt_text}]
    derived = extract_image_names(prompt_text, image_map.keys())

    seen = set()
    for name in [*job.ref_images, *derived]:
        if not name or name in seen:
            continue
        seen.add(name)

        if name.startswith(INLINE_SCHEMES):
            content.append({"type": "image_url", "image_url": {"url": name}})
            continue

        reference = image_map.get(name)
        if reference is None:
            continue
        if reference.path:
            data_uri = read_local_image(reference.path, public_dir)
            if data_uri:
                content.append({"type": "image_url", "image_url": {"url": data_uri}})
        elif reference.url:
            content.append({"type": "image_url", "image_url": {"url": reference.url}})
    return content


def parse_image_from_content(content: Any) -> Optional[ParsedImage]:
    """Find the generated image in a chat completion ``message.content``."""
    if isinstance(content, str):
        match = MARKDOWN_DATA_IMAGE.search(content)
        if match:
            return ParsedImage(data_uri=match.group(1))
        match = DOWNLOAD_LINK.search(content)
        if match:
            return ParsedImage(url=match.group(1))
        match = MARKDOWN_HTTP_IMAGE.search(content)
        if match:
            return ParsedImage(url=match.group(1))
        return None

    if isinstance(content, list):
        for part in content:
            parsed = parse_image_from_content(part)
            if parsed:
                return parsed
        return None

    if isinstance(content, dict):
        part_type = content.get("type")
        if part_type in ("output_image", "image"):
            if content.get("image_base64"):
                value = content["image_base64"]
                return ParsedImage(data_uri=value if value.startswith("data:") else f"data:image/png;base64,{value}")
            if content.get("b64_json"):
                return ParsedImage(data_uri=f"data:image/png;base64,{content['b64_json']}")
            image_url = content.get("image_url")
            if isinstance(image_url, str) and image_url:
                return ParsedImage(url=image_url)
            if isinstance(image_url, dict) and isinstance(image_url.get("url"), str):
                return ParsedImage(url=image_url["url"])
            if content.get("url"):
                return ParsedImage(url=content["url"])
        if part_type in ("text", "input_text") and content.get("text"):
            return parse_image_from_content(content["text"])
    return None


def decode_data_uri(data_uri: str) -> tuple:
    """Split a base64 data URI into ``(bytes, extension)``.

    Raises:
        ValueError: malformed URI or base64 payload
    """
    header, _, payload = data_uri.partition(",")
    if not header.startswith("data:") or not payload:
        raise ValueError("Malformed data URI")
    mime = header[5:].split(";", 1)[0].lower()
    ext = MIME_EXTENSIONS.get(mime, ".png")
    return base64.b64decode(payload, validate=False), ext


def extension_from_url(url: str, default: str = ".png") -> str:
    ext = posixpath.splitext(urlparse(url).path)[1].lower()
    return ext if ext in EXTENSION_MIMES else default
