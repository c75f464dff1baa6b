"""Abstract video provider and the HTTP plumbing shared by vendors.

Each vendor implements two coroutines: ``submit_job`` and ``query_job``.
Both take the API key explicitly so the engine can rotate credentials.

Failure classification:
- Transient: network errors, timeouts, HTTP 5xx, HTTP 429 (RateLimitError)
- Fatal: HTTP 4xx, vendor business errors, unparseable responses,
  local payload validation
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import (
    ProviderError,
    RateLimitError,
    ResponseParseError,
    StorageError,
    TransientProviderError,
)
from ..jobs.backoff import BackoffPolicy, retry_async
from ..jobs.models import QueryResult, SubmitPayload, SubmitResult

logger = logging.getLogger(__name__)

TRANSIENT_PATTERN = re.compile(
    r"(ECONNRESET|ETIMEDOUT|EAI_AGAIN|ENETUNREACH|ECONNREFUSED|socket|timeout|timed out)",
    re.IGNORECASE,
)
RATE_LIMIT_PATTERN = re.compile(
    r'("code"\s*:\s*429|HTTP 429|call frequency is too high)', re.IGNORECASE
)
HTTP_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitError):
        return True
    return bool(RATE_LIMIT_PATTERN.search(str(error)))


def is_transient_error(error: BaseException) -> bool:
    """Decide whether ``error`` is worth retrying."""
    if isinstance(error, ProviderError):
        return error.transient
    if isinstance(error, StorageError):
        return error.transient
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError, TimeoutError)):
        return True
    return bool(TRANSIENT_PATTERN.search(f"{type(error).__name__}:{error}"))


def truncate(text: str, limit: int = 300) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class VideoProvider(ABC):
    """Submit/poll video generation API.

    Args:
        client: Shared httpx client (tests inject one with a MockTransport)
        timeout_s: Request timeout when no client is injected
        base_url: Override the vendor endpoint root
        submit_policy: Backoff schedule for transient submit failures
    """

    name = "provider"
    default_base_url = ""
    default_submit_policy = BackoffPolicy(base_s=0.5, factor=1.8, cap_s=10.0, jitter_s=0.25, max_attempts=4)

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 60.0,
        base_url: Optional[str] = None,
        submit_policy: Optional[BackoffPolicy] = None,
    ):
        self._client = client
        self.timeout_s = timeout_s
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.submit_policy = submit_policy or self.default_submit_policy

    @abstractmethod
    def build_submit_body(self, payload: SubmitPayload) -> Dict[str, Any]:
        """Validate ``payload`` and translate it into the vendor request body.

        Raises:
            PayloadValidationError: before any network call
        """

    @abstractmethod
    def parse_submit_response(self, body: Dict[str, Any]) -> SubmitResult:
        """Extract the vendor job id from a submit response."""

    @abstractmethod
    async def query_job(self, provider_request_id: str, api_key: str) -> QueryResult:
        """Poll a job once and map the vendor answer into a QueryResult."""

    @property
    @abstractmethod
    def submit_url(self) -> str:
        """Endpoint receiving the submit POST."""

    async def submit_job(self, payload: SubmitPayload, api_key: str) -> SubmitResult:
        """Validate, submit with retry, and return the vendor job id.

        Raises:
            PayloadValidationError: invalid input, no network call made
            TransientProviderError: retries exhausted on a transient failure
            ProviderError: fatal vendor answer
        """
        if not api_key:
            raise ProviderError(f"[{self.name}] API key missing", provider=self.name)
        body = self.build_submit_body(payload)
        logger.info(
            "[%s] Submitting job prompt_len=%d fields=%s",
            self.name, len(payload.prompt), sorted(body.keys()),
        )

        async def attempt(n: int) -> SubmitResult:
            response = await self.request_json("POST", self.submit_url, api_key, json=body)
            return self.parse_submit_response(response)

        result = await retry_async(attempt, self.submit_policy, is_transient_error)
        logger.info("[%s] Job accepted provider_request_id=%s", self.name, result.provider_request_id)
        return result

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            return await client.request(method, url, **kwargs)

    async def request_json(
        self,
        method: str,
        url: str,
        api_key: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send an authorized request and return the decoded JSON object.

        Raises:
            RateLimitError: HTTP 429
            TransientProviderError: network error, timeout, HTTP 5xx
            ProviderError: other HTTP 4xx
            ResponseParseError: body is not a JSON object
        """
        headers = {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}
        try:
            response = await self._send(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"[{self.name}] timeout: {e}", provider=self.name) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"[{self.name}] network error: {type(e).__name__}: {e}", provider=self.name
            ) from e

        status = response.status_code
        text = response.text
        if status == 429:
            raise RateLimitError(
                f"[{self.name}] HTTP 429 {truncate(text)}", status_code=status, provider=self.name
            )
        if status >= 500:
            raise TransientProviderError(
                f"[{self.name}] HTTP {status} {truncate(text)}", status_code=status, provider=self.name
            )
        if status >= 400:
            raise ProviderError(
                f"[{self.name}] HTTP {status} {truncate(text)}",
                code="HTTP_ERROR", status_code=status, provider=self.name,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ResponseParseError(
                f"[{self.name}] unparseable response: {truncate(text)}", provider=self.name
            ) from e
        if not isinstance(data, dict):
            raise ResponseParseError(
                f"[{self.name}] unexpected response shape: {truncate(text)}", provider=self.name
            )
        return data
