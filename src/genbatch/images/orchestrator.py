"""Image orchestrator: batch image generation with key failover.

Flow per round:
1. Resolve a credential (preferred key first, HEAD preflight on its endpoint)
2. Run every pending job under that credential with bounded concurrency,
   retrying each job with backoff
3. Re-run only the failed jobs under the next untried credential

Successful results are never rerun. The final result list follows the
input job order.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx

from ..documents import AppData, RecordStatus
from ..errors import ConfigurationError, GenBatchError, StorageError
from ..jobs.backoff import BackoffPolicy
from ..jobs.key_pool import mask_key
from ..models import ImageSettings
from ..providers.base import is_transient_error
from ..storage import LocalStorage
from ..store import DocumentStore
from .content import (
    apply_style,
    build_message_content,
    collect_image_map,
    decode_data_uri,
    extension_from_url,
    parse_image_from_content,
    resolve_style,
)
from .models import (
    DEFAULT_PLATFORM,
    FALLBACK_PLATFORM,
    PLATFORM_CONFIGS,
    ImageJob,
    ImageResult,
    JobError,
    OrchestrationResult,
    PlatformConfig,
    ResolvedCredential,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant."


class ImageGenerationError(GenBatchError):
    """A single image request failed; ``code`` is the result error code.

    Only ``transient`` failures (5xx, 429) are retried within a round.
    """

    def __init__(self, message: str, code: Optional[str] = None, transient: bool = False):
        super().__init__(message, code)
        self.transient = transient


def is_retryable(error: BaseException) -> bool:
    """Timeouts, transport errors, 5xx and 429 are retried; everything else fails at once."""
    if isinstance(error, ImageGenerationError):
        return error.transient
    return is_transient_error(error)


def classify_error(error: BaseException) -> JobError:
    """Map an exception to the result error code."""
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return JobError(code="TIMEOUT", message=f"Request timed out: {error}")
    if isinstance(error, StorageError):
        code = "SAVE_FAILED" if error.code == "SAVE_FAILED" else "DOWNLOAD_FAILED"
        return JobError(code=code, message=str(error))
    if isinstance(error, GenBatchError):
        return JobError(code=error.code, message=str(error))
    return JobError(code="GENERAL_ERROR", message=str(error) or type(error).__name__)


def public_url(local_path: str) -> str:
    """URL for a saved file; paths outside the public root stay absolute."""
    return local_path if local_path.startswith("/") else f"/{local_path}"


def _now_iso() -> str:
    return datetime.now().isoformat()


class ImageOrchestrator:
    """Generate images for a batch of jobs.

    Args:
        store: Application document (keys, styles, references, prompt records)
        storage: Output location for generated images
        settings: Concurrency, retries, timeouts
        client: Shared httpx client; created per call when omitted
        platforms: Platform name -> endpoint/model table
        sleep: Injected for tests
    """

    def __init__(
        self,
        store: DocumentStore,
        storage: LocalStorage,
        settings: Optional[ImageSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        platforms: Optional[Dict[str, PlatformConfig]] = None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.storage = storage
        self.settings = settings or ImageSettings()
        self.client = client
        self.platforms = platforms or PLATFORM_CONFIGS
        self.sleep = sleep

    async def orchestrate(
        self,
        jobs: List[ImageJob],
        concurrency: Optional[int] = None,
        retry_count: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> OrchestrationResult:
        """Run ``jobs`` to completion across the available credentials.

        Raises:
            ConfigurationError: no credential configured, or none reachable
                when the batch starts
        """
        if not jobs:
            return OrchestrationResult()

        if self.client is not None:
            return await self._orchestrate(self.client, jobs, concurrency, retry_count, timeout_s)
        async with httpx.AsyncClient(timeout=timeout_s or self.settings.timeout_s) as client:
            return await self._orchestrate(client, jobs, concurrency, retry_count, timeout_s)

    async def _orchestrate(
        self,
        client: httpx.AsyncClient,
        jobs: List[ImageJob],
        concurrency: Optional[int],
        retry_count: Optional[int],
        timeout_s: Optional[float],
    ) -> OrchestrationResult:
        attempted: Set[str] = set()
        diagnostics: List[str] = []
        results: Dict[str, ImageResult] = {}
        pending = list(jobs)
        first_round = True

        while pending:
            data = await self.store.read()
            try:
                credential = await self.resolve_credential(client, data, attempted)
            except ConfigurationError as e:
                if first_round:
                    raise
                diagnostics.append(f"No further credential available: {e}")
                logger.warning("Key failover exhausted remaining_jobs=%d", len(pending))
                break
            first_round = False

            diagnostics.extend(credential.diagnostics)
            attempted.add(credential.key_name)

            limit = asyncio.Semaphore(max(1, concurrency or data.api_settings.thread_count or self.settings.concurrency))
            retries = retry_count if retry_count is not None else data.api_settings.retry_count
            timeout = timeout_s or self.settings.timeout_s
            context = _RoundContext(data=data, credential=credential, retries=retries, timeout_s=timeout)

            async def run_job(job: ImageJob) -> ImageResult:
                async with limit:
                    return await self._process_job(client, job, context)

            round_results = await asyncio.gather(*(run_job(job) for job in pending))
            for result in round_results:
                results[result.job_id] = result

            failed_ids = {r.job_id for r in round_results if not r.ok}
            if not failed_ids:
                break
            if len(data.key_library) - len(attempted) <= 0:
                break
            logger.info("Retrying failed jobs on next key failed=%d", len(failed_ids))
            pending = [job for job in pending if job.id in failed_ids]

        ordered = [
            results.get(job.id)
            or ImageResult(job_id=job.id, ok=False, error=JobError(code="CONFIG_ERROR", message="Job was not run"))
            for job in jobs
        ]
        return OrchestrationResult(
            results=ordered,
            failed=[r for r in ordered if not r.ok],
            diagnostics=diagnostics or None,
        )

    async def resolve_credential(
        self,
        client: httpx.AsyncClient,
        data: AppData,
        exclude: Iterable[str] = (),
    ) -> ResolvedCredential:
        """Pick the first reachable key, preferred key first.

        Raises:
            ConfigurationError: no keys, or every candidate failed the preflight
        """
        entries = list(data.key_library.values())
        if not entries:
            raise ConfigurationError("No API key configured")

        preferred = data.api_settings.current_key_name
        if preferred:
            entries.sort(key=lambda e: 0 if e.name == preferred else 1)

        excluded = set(exclude)
        errors: List[str] = []
        for entry in entries:
            if entry.name in excluded:
                continue
            platform = (entry.platform or "").strip() or data.api_settings.api_platform or DEFAULT_PLATFORM
            config = self.platforms.get(platform) or self.platforms.get(FALLBACK_PLATFORM)
            if config is None:
                errors.append(f"{entry.name}: unsupported platform {platform}")
                continue

            try:
                await self._preflight(client, config.url, entry.api_key)
            except httpx.HTTPError as e:
                reason = describe_network_error(e)
                errors.append(f"{entry.name}({platform}): {reason}")
                logger.warning("Endpoint unreachable key=%s platform=%s reason=%s", entry.name, platform, reason)
                continue

            logger.info(
                "Using API key name=%s key=%s platform=%s url=%s",
                entry.name, mask_key(entry.api_key), platform, config.url,
            )
            await self._remember_key(entry.name, platform)
            diagnostics = [*errors, f"Switched to {entry.name} ({platform})"] if errors else []
            return ResolvedCredential(
                key_name=entry.name,
                api_key=entry.api_key,
                platform=platform,
                url=config.url,
                model=config.model,
                diagnostics=diagnostics,
            )

        raise ConfigurationError(
            "No credential could reach its endpoint: " + "; ".join(errors or ["all keys already tried"])
        )

    async def _preflight(self, client: httpx.AsyncClient, url: str, api_key: str) -> None:
        await client.request(
            "HEAD",
            url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=self.settings.preflight_timeout_s,
        )

    async def _remember_key(self, name: str, platform: str) -> None:
        def apply(data: AppData) -> None:
            data.api_settings.current_key_name = name
            data.api_settings.api_platform = platform
            if name in data.key_library:
                data.key_library[name].last_used = _now_iso()

        await self.store.update(apply)

    async def _update_prompt(self, number: Optional[str], **patch: Any) -> None:
        if not number:
            return

        def apply(data: AppData) -> None:
            prompt = data.find_prompt(number)
            if prompt is not None:
                for key, value in patch.items():
                    setattr(prompt, key, value)
                prompt.updated_at = _now_iso()

        try:
            await self.store.update(apply)
        except Exception as e:
            logger.warning("Could not update prompt record number=%s error=%s", number, e)

    async def _process_job(self, client: httpx.AsyncClient, job: ImageJob, context: "_RoundContext") -> ImageResult:
        credential = context.credential
        number = job.prompt_number
        started = time.monotonic()

        await self._update_prompt(number, status=RecordStatus.GENERATING, error_msg="", progress=0)
        policy = BackoffPolicy.from_config(self.settings.backoff, context.retries + 1)

        payload: Optional[Dict[str, Any]] = None
        last_error: Optional[BaseException] = None
        for attempt in range(context.retries + 1):
            try:
                if payload is None:
                    payload = self._build_payload(job, credential, context.data)
                content = await self._request_image(client, credential, payload, context.timeout_s)
                parsed = parse_image_from_content(content)
                if parsed is None:
                    raise ImageGenerationError("No image found in response", code="NO_IMAGE")

                await self._update_prompt(number, status=RecordStatus.DOWNLOADING, progress=90)
                saved = await self._save(job.id, parsed)

                await self._update_prompt(
                    number,
                    status=RecordStatus.SUCCEEDED,
                    local_path=saved.local_path,
                    image_url=parsed.url,
                    actual_filename=saved.filename,
                    progress=100,
                    error_msg="",
                )
                elapsed = int((time.monotonic() - started) * 1000)
                logger.info("Image job done job=%s elapsed_ms=%d platform=%s", job.id, elapsed, credential.platform)
                return ImageResult(
                    job_id=job.id, ok=True, url=public_url(saved.local_path), local_path=saved.local_path,
                    elapsed_ms=elapsed,
                )
            except Exception as e:
                last_error = e
                if attempt >= context.retries or not is_retryable(e):
                    break
                retry_number = attempt + 1
                await self._update_prompt(
                    number,
                    status=RecordStatus.GENERATING,
                    progress=min(80, 20 + retry_number * 10),
                    error_msg=f"Retrying ({retry_number}/{context.retries})...",
                )
                wait = policy.delay(attempt)
                logger.warning(
                    "Image job retry job=%s attempt=%d/%d wait=%.2fs reason=%s",
                    job.id, retry_number, context.retries, wait, e,
                )
                await self.sleep(wait)

        error = classify_error(last_error)
        error.provider = credential.platform
        await self._update_prompt(number, status=RecordStatus.FAILED, error_msg=error.message, progress=0)
        elapsed = int((time.monotonic() - started) * 1000)
        logger.error(
            "Image job failed job=%s code=%s platform=%s reason=%s",
            job.id, error.code, credential.platform, error.message,
        )
        return ImageResult(job_id=job.id, ok=False, error=error, elapsed_ms=elapsed)

    def _build_payload(self, job: ImageJob, credential: ResolvedCredential, data: AppData) -> Dict[str, Any]:
        prompt_text = apply_style(job.prompt, resolve_style(job, data))
        message_content = build_message_content(job, prompt_text, collect_image_map(data), self.storage.public_dir)
        return {
            "model": credential.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": message_content},
            ],
        }

    async def _request_image(
        self,
        client: httpx.AsyncClient,
        credential: ResolvedCredential,
        payload: Dict[str, Any],
        timeout_s: float,
    ) -> Any:
        response = await client.post(
            credential.url,
            json=payload,
            headers={"Authorization": f"Bearer {credential.api_key}"},
            timeout=timeout_s,
        )
        if response.status_code >= 400:
            raise ImageGenerationError(
                f"HTTP status {response.status_code}",
                code="HTTP_ERROR",
                transient=response.status_code >= 500 or response.status_code == 429,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ImageGenerationError(f"Unparseable response: {response.text[:200]}", code="GENERAL_ERROR") from e

        if not isinstance(data, dict):
            raise ImageGenerationError(f"Unexpected response shape: {response.text[:200]}", code="GENERAL_ERROR")

        code = data.get("code")
        if isinstance(code, int) and not isinstance(code, bool) and code != 0:
            message = data.get("msg")
            raise ImageGenerationError(
                f"API error ({code}): {message}" if message else f"API error code {code}", code="HTTP_ERROR"
            )
        provider_error = data.get("error") or {}
        if isinstance(provider_error, dict) and provider_error.get("message"):
            raise ImageGenerationError(provider_error["message"], code="GENERAL_ERROR")

        choices = data.get("choices") or []
        first = choices[0] if choices and isinstance(choices[0], dict) else {}
        content = (first.get("message") or {}).get("content")
        if not content:
            raise ImageGenerationError("Empty response content", code="EMPTY_CONTENT")
        return content

    async def _save(self, job_id: str, parsed) -> Any:
        if parsed.data_uri:
            try:
                raw, ext = decode_data_uri(parsed.data_uri)
            except ValueError as e:
                raise ImageGenerationError(f"Invalid inline image: {e}", code="NO_IMAGE") from e
        else:
            raw = await self.storage.download(parsed.url)
            ext = extension_from_url(parsed.url)
        return await asyncio.to_thread(self.storage.save, raw, f"{job_id}{ext}")


class _RoundContext:
    """State shared by all jobs of one failover round."""

    def __init__(self, data: AppData, credential: ResolvedCredential, retries: int, timeout_s: float):
        self.data = data
        self.credential = credential
        self.retries = max(0, retries)
        self.timeout_s = timeout_s


def describe_network_error(error: BaseException) -> str:
    if isinstance(error, httpx.TimeoutException):
        return "connection timed out"
    if isinstance(error, httpx.ConnectError):
        return f"connection failed: {error}"
    return str(error) or type(error).__name__
