"""Yunwu Sora-2 video provider."""

import logging
from typing import Any, Dict, Iterable, Optional

from ..errors import PayloadValidationError, ResponseParseError
from ..jobs.backoff import BackoffPolicy
from ..jobs.models import QueryResult, QueryStatus, SubmitPayload, SubmitResult
from .base import HTTP_URL_PATTERN, VideoProvider, is_transient_error

logger = logging.getLogger(__name__)

ORIENTATIONS = {
    "16:9": "landscape",
    "4:3": "landscape",
    "1:1": "square",
    "9:16": "portrait",
}
URL_KEYS = ("url", "download_url", "file_url")


def ratio_to_orientation(ratio: Optional[str]) -> str:
    return ORIENTATIONS.get(ratio or "", "portrait")


def map_status(raw: Optional[str]) -> Optional[QueryStatus]:
    if not raw:
        return None
    value = str(raw).lower()
    if "fail" in value:
        return QueryStatus.FAILED
    if value in ("completed", "success", "succeeded"):
        return QueryStatus.SUCCEEDED
    if "queue" in value:
        return QueryStatus.QUEUED
    return QueryStatus.RUNNING


def _first_url(items: Optional[Iterable[Dict[str, Any]]]) -> Optional[str]:
    if not isinstance(items, list):
        return None
    for item in items:
        if not isinstance(item, dict):
            continue
        for key in URL_KEYS:
            if item.get(key):
                return item[key]
        for asset in item.get("assets") or []:
            if isinstance(asset, dict):
                for key in URL_KEYS:
                    if asset.get(key):
                        return asset[key]
    return None


def extract_video_url(body: Dict[str, Any]) -> Optional[str]:
    if body.get("video_url"):
        return body["video_url"]
    detail = body.get("detail") or {}
    pending = detail.get("pending_info") or {}
    return _first_url(detail.get("generations")) or _first_url(pending.get("generations"))


class YunwuSora2Provider(VideoProvider):
    """Sora-2 through the Yunwu ``/v1/video`` endpoints."""

    name = "yunwu-sora2"
    default_base_url = "http://yunwu.ai"
    default_submit_policy = BackoffPolicy(base_s=0.5, factor=1.6, cap_s=10.0, jitter_s=0.25, max_attempts=3)

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/v1/video/create"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/v1/video/query"

    def build_submit_body(self, payload: SubmitPayload) -> Dict[str, Any]:
        if not payload.prompt:
            raise PayloadValidationError("Prompt is required", provider=self.name)
        if payload.image_url and not HTTP_URL_PATTERN.match(payload.image_url):
            raise PayloadValidationError(f"Invalid image url: {payload.image_url}", provider=self.name)

        extra = payload.extra or {}
        try:
            duration = int(extra.get("default_duration") or 15)
        except (TypeError, ValueError):
            duration = 15
        if duration <= 0:
            duration = 15

        return {
            "model": "sora-2",
            "prompt": payload.prompt,
            "images": [payload.image_url] if payload.image_url else [],
            "orientation": extra.get("default_orientation") or ratio_to_orientation(payload.ratio),
            "size": extra.get("default_size") or "large",
            "duration": duration,
            "watermark": bool(extra.get("default_watermark_enabled", False)),
            "private": bool(extra.get("default_private", True)),
        }

    def parse_submit_response(self, body: Dict[str, Any]) -> SubmitResult:
        task_id = body.get("id")
        if not task_id:
            raise ResponseParseError(f"[{self.name}] no task id in response: {body}", provider=self.name)
        return SubmitResult(provider_request_id=str(task_id))

    async def query_job(self, provider_request_id: str, api_key: str) -> QueryResult:
        try:
            body = await self.request_json(
                "GET", self.query_url, api_key, params={"id": provider_request_id}
            )
        except Exception as e:
            if is_transient_error(e):
                logger.debug("[%s] transient poll failure id=%s error=%s", self.name, provider_request_id, e)
                return QueryResult(status=QueryStatus.RUNNING)
            raise

        detail = body.get("detail") or {}
        pending = detail.get("pending_info") or {}
        top_status = map_status(body.get("status")) or QueryStatus.RUNNING

        if top_status == QueryStatus.SUCCEEDED:
            url = extract_video_url(body)
            if not url:
                return QueryResult(
                    status=QueryStatus.FAILED,
                    error_code="NO_RESULT_URL",
                    error_message="Job completed without a video URL",
                )
            return QueryResult(status=QueryStatus.SUCCEEDED, progress=1, result_url=url)

        failure_message = (
            body.get("error") or pending.get("failure_reason") or detail.get("status") or "Generation failed"
        )
        if top_status == QueryStatus.FAILED:
            return QueryResult(status=QueryStatus.FAILED, error_code="PROVIDER_ERROR", error_message=failure_message)

        detail_status = map_status(detail.get("status")) or map_status(pending.get("status"))
        if detail_status == QueryStatus.FAILED:
            return QueryResult(status=QueryStatus.FAILED, error_code="PROVIDER_ERROR", error_message=failure_message)

        return QueryResult(
            status=QueryStatus.QUEUED if top_status == QueryStatus.QUEUED else QueryStatus.RUNNING,
            progress=pending.get("progress_pct"),
        )
