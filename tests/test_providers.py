"""Tests for vendor providers against mocked HTTP endpoints."""

import json

import httpx
import pytest

from genbatch.errors import PayloadValidationError, ProviderError, RateLimitError, TransientProviderError
from genbatch.jobs.backoff import BackoffPolicy
from genbatch.jobs.models import SubmitPayload
from genbatch.providers import (
    KieVeo3Provider,
    YunwuSora2Provider,
    YunwuVeo3Provider,
    build_preset,
    get_provider,
    is_transient_error,
    resolve_provider_key,
)
from genbatch.providers.yunwu_sora2 import extract_video_url, map_status, ratio_to_orientation

NO_WAIT = BackoffPolicy(base_s=0, factor=1, cap_s=0, jitter_s=0, max_attempts=3)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _payload(**kwargs):
    values = {"prompt": "a cat surfing", "image_url": "https://img.test/cat.png", "ratio": "16:9"}
    values.update(kwargs)
    return SubmitPayload(**values)


class TestErrorClassification:
    def test_transient_errors(self):
        assert is_transient_error(TransientProviderError("HTTP 502"))
        assert is_transient_error(httpx.ConnectError("refused"))
        assert is_transient_error(RuntimeError("ETIMEDOUT while reading"))

    def test_fatal_errors(self):
        assert not is_transient_error(ProviderError("HTTP 400 bad request"))
        assert not is_transient_error(PayloadValidationError("Prompt is required"))


class TestKieVeo3:
    def test_submit_body(self):
        provider = KieVeo3Provider()
        body = provider.build_submit_body(
            _payload(seed=7, watermark="@me", translate="off", extra={"model": "veo3", "enable_fallback": True})
        )
        assert body == {
            "prompt": "a cat surfing",
            "imageUrls": ["https://img.test/cat.png"],
            "model": "veo3",
            "aspectRatio": "16:9",
            "enableFallback": True,
            "enableTranslation": False,
            "seeds": 7,
            "watermark": "@me",
        }

    def test_image_required(self):
        with pytest.raises(PayloadValidationError):
            KieVeo3Provider().build_submit_body(_payload(image_url=None))

    def test_image_must_be_http(self):
        with pytest.raises(PayloadValidationError):
            KieVeo3Provider().build_submit_body(_payload(image_url="file:///tmp/cat.png"))

    @pytest.mark.asyncio(loop_scope="function")
    async def test_submit_success(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "kie-1"}})

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http, submit_policy=NO_WAIT)
            result = await provider.submit_job(_payload(), "secret")

        assert result.provider_request_id == "kie-1"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["prompt"] == "a cat surfing"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_validation_failure_makes_no_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http, submit_policy=NO_WAIT)
            with pytest.raises(PayloadValidationError):
                await provider.submit_job(_payload(prompt=""), "secret")
        assert calls == []

    @pytest.mark.asyncio(loop_scope="function")
    async def test_business_rate_limit(self):
        def handler(request):
            return httpx.Response(200, json={"code": 429, "msg": "call frequency is too high"})

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http, submit_policy=NO_WAIT)
            with pytest.raises(RateLimitError):
                await provider.submit_job(_payload(), "secret")

    @pytest.mark.asyncio(loop_scope="function")
    async def test_server_error_retried_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "kie-2"}})

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http, submit_policy=NO_WAIT)
            result = await provider.submit_job(_payload(), "secret")
        assert result.provider_request_id == "kie-2"
        assert len(calls) == 3

    @pytest.mark.asyncio(loop_scope="function")
    async def test_client_error_is_fatal(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="unauthorized")

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http, submit_policy=NO_WAIT)
            with pytest.raises(ProviderError) as exc_info:
                await provider.submit_job(_payload(), "secret")
        assert not exc_info.value.transient
        assert len(calls) == 1

    @pytest.mark.asyncio(loop_scope="function")
    async def test_query_mapping(self):
        answers = {
            "done": {"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn/v.mp4"]}}},
            "bad": {"code": 200, "data": {"successFlag": 2, "errorMessage": "content policy"}},
            "busy": {"code": 200, "data": {"successFlag": 0, "progress": 40}},
            "unknown": {"code": 404, "msg": "not found"},
        }

        def handler(request):
            assert request.url.path == "/api/v1/veo/record-info"
            return httpx.Response(200, json=answers[request.url.params["taskId"]])

        async with _client(handler) as http:
            provider = KieVeo3Provider(client=http)
            done = await provider.query_job("done", "k")
            bad = await provider.query_job("bad", "k")
            busy = await provider.query_job("busy", "k")
            unknown = await provider.query_job("unknown", "k")

        assert done.status == "succeeded" and done.result_url == "https://cdn/v.mp4"
        assert bad.status == "failed" and bad.error_message == "content policy"
        assert busy.status == "running" and busy.progress == pytest.approx(0.4)
        assert unknown.status == "queued"


class TestYunwuVeo3:
    def test_submit_body(self):
        body = YunwuVeo3Provider(model="veo3.1").build_submit_body(_payload())
        assert body["model"] == "veo3.1"
        assert body["images"] == ["https://img.test/cat.png"]
        assert body["aspect_ratio"] == "16:9"
        assert body["enhance_prompt"] is True

    @pytest.mark.asyncio(loop_scope="function")
    async def test_query_mapping(self):
        answers = {
            "done": (200, {"detail": {"video_url": "https://cdn/y.mp4"}}),
            "bad": (200, {"detail": {"status": "video_generation_failed", "error": "nsfw"}}),
            "busy": (200, {"detail": {"running": True}}),
            "missing": (400, {"error": "task_not_exist"}),
        }

        def handler(request):
            status, body = answers[request.url.params["id"]]
            return httpx.Response(status, json=body)

        async with _client(handler) as http:
            provider = YunwuVeo3Provider(client=http)
            done = await provider.query_job("done", "k")
            bad = await provider.query_job("bad", "k")
            busy = await provider.query_job("busy", "k")
            missing = await provider.query_job("missing", "k")

        assert done.status == "succeeded" and done.result_url == "https://cdn/y.mp4"
        assert bad.status == "failed" and bad.error_message == "nsfw"
        assert busy.status == "running" and busy.progress == pytest.approx(0.5)
        assert missing.status == "queued"


class TestYunwuSora2:
    def test_orientation(self):
        assert ratio_to_orientation("16:9") == "landscape"
        assert ratio_to_orientation("1:1") == "square"
        assert ratio_to_orientation(None) == "portrait"

    def test_status_mapping(self):
        assert map_status("completed") == "succeeded"
        assert map_status("FAILED") == "failed"
        assert map_status("queued") == "queued"
        assert map_status("in_progress") == "running"
        assert map_status(None) is None

    def test_extract_video_url_from_generations(self):
        body = {"detail": {"generations": [{"assets": [{"download_url": "https://cdn/s.mp4"}]}]}}
        assert extract_video_url(body) == "https://cdn/s.mp4"

    def test_submit_body(self):
        body = YunwuSora2Provider().build_submit_body(_payload(ratio="9:16", image_url=None))
        assert body["model"] == "sora-2"
        assert body["orientation"] == "portrait"
        assert body["images"] == []
        assert body["duration"] == 15

    @pytest.mark.asyncio(loop_scope="function")
    async def test_completed_without_url_fails(self):
        def handler(request):
            return httpx.Response(200, json={"status": "completed", "detail": {}})

        async with _client(handler) as http:
            result = await YunwuSora2Provider(client=http).query_job("s1", "k")
        assert result.status == "failed"
        assert result.error_code == "NO_RESULT_URL"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_progress_from_pending_info(self):
        def handler(request):
            return httpx.Response(
                200, json={"status": "in_progress", "detail": {"pending_info": {"progress_pct": 0.6}}}
            )

        async with _client(handler) as http:
            result = await YunwuSora2Provider(client=http).query_job("s1", "k")
        assert result.status == "running"
        assert result.progress == pytest.approx(0.6)


class TestRegistry:
    def test_unknown_key_falls_back(self):
        assert resolve_provider_key("nope") == "kie-veo3-fast"
        assert resolve_provider_key(None) == "kie-veo3-fast"

    def test_preset_b_with_yunwu(self):
        preset = build_preset("B", "yunwu-veo3.1-fast")
        assert preset["default_ratio"] == "16:9"
        assert preset["model"] == "veo3.1"
        assert preset["provider"] == "yunwu"

    def test_get_provider(self):
        assert isinstance(get_provider("yunwu-sora2"), YunwuSora2Provider)
        provider = get_provider("yunwu-veo3.1-fast")
        assert isinstance(provider, YunwuVeo3Provider)
        assert provider.model == "veo3.1"
