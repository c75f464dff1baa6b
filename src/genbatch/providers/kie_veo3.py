"""Kie.ai Veo3 video provider."""

import logging
from typing import Any, Dict

from ..errors import (
    PayloadValidationError,
    ProviderError,
    RateLimitError,
    ResponseParseError,
    TransientProviderError,
)
from ..jobs.backoff import BackoffPolicy
from ..jobs.models import QueryResult, QueryStatus, SubmitPayload, SubmitResult
from .base import HTTP_URL_PATTERN, RATE_LIMIT_PATTERN, VideoProvider, is_transient_error

logger = logging.getLogger(__name__)


class KieVeo3Provider(VideoProvider):
    """``POST /api/v1/veo/generate`` + ``GET /api/v1/veo/record-info``.

    Kie answers HTTP 200 with a business ``code`` in the body; anything other
    than 200 is an error (429 and 5xx retried, the rest fatal).
    """

    name = "kie-veo3"
    default_base_url = "https://api.kie.ai"
    default_submit_policy = BackoffPolicy(base_s=0.5, factor=1.8, cap_s=10.0, jitter_s=0.25, max_attempts=4)

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/api/v1/veo/generate"

    @property
    def record_url(self) -> str:
        return f"{self.base_url}/api/v1/veo/record-info"

    def build_submit_body(self, payload: SubmitPayload) -> Dict[str, Any]:
        if not payload.prompt:
            raise PayloadValidationError("Prompt is required", provider=self.name)

        image_urls = [payload.image_url] if payload.image_url else []
        if not image_urls:
            raise PayloadValidationError("imageUrls is required", provider=self.name)
        for url in image_urls:
            if not HTTP_URL_PATTERN.match(url):
                raise PayloadValidationError(f"Invalid image url: {url}", provider=self.name)

        extra = payload.extra or {}
        body: Dict[str, Any] = {
            "prompt": payload.prompt,
            "imageUrls": image_urls,
            "model": extra.get("model") or "veo3_fast",
            "aspectRatio": payload.ratio or extra.get("default_ratio") or "9:16",
            "enableFallback": bool(extra.get("enable_fallback")),
            "enableTranslation": payload.translate != "off",
        }
        if payload.callback_url:
            body["callBackUrl"] = payload.callback_url
        if payload.seed is not None:
            body["seeds"] = payload.seed
        if payload.watermark:
            body["watermark"] = payload.watermark
        return body

    def _check_business_code(self, body: Dict[str, Any]) -> None:
        code = body.get("code")
        if code in (None, 200):
            return
        message = f"[{self.name}] code={code} msg={body.get('msg')}"
        if code == 429 or RATE_LIMIT_PATTERN.search(str(body.get("msg") or "")):
            raise RateLimitError(message, status_code=429, provider=self.name)
        if isinstance(code, int) and code >= 500:
            raise TransientProviderError(message, status_code=code, provider=self.name)
        raise ProviderError(message, status_code=code if isinstance(code, int) else None, provider=self.name)

    def parse_submit_response(self, body: Dict[str, Any]) -> SubmitResult:
        self._check_business_code(body)
        task_id = (body.get("data") or {}).get("taskId")
        if not task_id:
            raise ResponseParseError(f"[{self.name}] no taskId in response: {body}", provider=self.name)
        return SubmitResult(provider_request_id=str(task_id))

    async def query_job(self, provider_request_id: str, api_key: str) -> QueryResult:
        try:
            body = await self.request_json(
                "GET", self.record_url, api_key, params={"taskId": provider_request_id}
            )
        except Exception as e:
            if is_transient_error(e):
                logger.debug("[%s] transient poll failure id=%s error=%s", self.name, provider_request_id, e)
                return QueryResult(status=QueryStatus.QUEUED, progress=0)
            raise

        if body.get("code") != 200:
            return QueryResult(status=QueryStatus.QUEUED, progress=0)

        data = body.get("data") or {}
        success_flag = data.get("successFlag")
        if success_flag == 1:
            urls = (data.get("response") or {}).get("resultUrls") or []
            return QueryResult(
                status=QueryStatus.SUCCEEDED, progress=1, result_url=urls[0] if urls else None
            )

        if data.get("errorMessage") or success_flag in (2, 3):
            return QueryResult(
                status=QueryStatus.FAILED,
                error_code="PROVIDER_ERROR",
                error_message=data.get("errorMessage") or f"Generation failed (successFlag={success_flag})",
            )

        return QueryResult(status=QueryStatus.RUNNING, progress=data.get("progress") or 0)
