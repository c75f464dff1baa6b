"""Yunwu Veo3 / Veo3.1 video provider."""

import logging
from typing import Any, Dict, Optional

from ..errors import PayloadValidationError, ResponseParseError
from ..jobs.backoff import BackoffPolicy
from ..jobs.models import QueryResult, QueryStatus, SubmitPayload, SubmitResult
from .base import VideoProvider, is_transient_error

logger = logging.getLogger(__name__)


def is_failed_status(status: Optional[str]) -> bool:
    if not status:
        return False
    lowered = str(status).lower()
    return "failed" in lowered or "error" in lowered


class YunwuVeo3Provider(VideoProvider):
    """``POST /v1/video/create`` + ``GET /v1/video/query?id=``."""

    name = "yunwu-veo3"
    default_base_url = "http://yunwu.ai"
    default_submit_policy = BackoffPolicy(base_s=0.5, factor=1.8, cap_s=10.0, jitter_s=0.25, max_attempts=3)

    def __init__(self, model: str = "veo3-fast", **kwargs: Any):
        super().__init__(**kwargs)
        self.model = model

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/v1/video/create"

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/v1/video/query"

    def build_submit_body(self, payload: SubmitPayload) -> Dict[str, Any]:
        if not payload.prompt:
            raise PayloadValidationError("Prompt is required", provider=self.name)
        if not payload.image_url:
            raise PayloadValidationError("At least one reference image is required", provider=self.name)

        extra = payload.extra or {}
        return {
            "model": extra.get("model") or self.model,
            "prompt": payload.prompt,
            "images": [payload.image_url],
            "aspect_ratio": payload.ratio or extra.get("default_ratio"),
            "enhance_prompt": extra.get("enhance_prompt", True),
            "enable_upsample": extra.get("enable_upsample", True),
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
            if "task_not_exist" in str(e) or is_transient_error(e):
                logger.debug("[%s] poll not ready id=%s error=%s", self.name, provider_request_id, e)
                return QueryResult(status=QueryStatus.QUEUED, progress=0)
            raise

        detail = body.get("detail") or {}
        video_url = detail.get("video_url")
        if video_url:
            return QueryResult(status=QueryStatus.SUCCEEDED, progress=1, result_url=video_url)

        if (
            is_failed_status(detail.get("status"))
            or is_failed_status(detail.get("video_generation_status"))
            or is_failed_status(body.get("status"))
        ):
            return QueryResult(
                status=QueryStatus.FAILED,
                error_code="PROVIDER_ERROR",
                error_message=detail.get("error") or body.get("error") or body.get("message")
                or "Generation failed",
            )

        running = detail.get("running", True)
        if running:
            return QueryResult(status=QueryStatus.RUNNING, progress=0.5)
        return QueryResult(status=QueryStatus.QUEUED, progress=0)
