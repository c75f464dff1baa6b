import asyncio

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from genbatch.api.main import app
from genbatch.jobs.hashing import compute_fingerprint
from genbatch.jobs.models import BaseTask, QueryResult, SubmitPayload, SubmitResult
from genbatch.models import EngineSettings
from genbatch.storage import LocalStorage
from genbatch.store import DocumentStore


class FakeProvider:
    """Scriptable stand-in for a vendor.

    ``on_submit(payload, api_key, n)`` returns a request id or raises.
    ``on_query(request_id, n)`` returns a QueryResult or raises.
    ``n`` counts calls per prompt (submit) or per request id (query).
    """

    name = "fake"

    def __init__(self, on_submit=None, on_query=None):
        self.on_submit = on_submit or (lambda payload, api_key, n: f"req-{payload.prompt}-{n}")
        self.on_query = on_query or (lambda request_id, n: QueryResult(
            status="succeeded", result_url=f"https://cdn.test/{request_id}.mp4"
        ))
        self.submissions = {}
        self.polls = {}
        self.keys_used = []

    async def submit_job(self, payload, api_key):
        n = self.submissions.get(payload.prompt, 0) + 1
        self.submissions[payload.prompt] = n
        self.keys_used.append(api_key)
        return SubmitResult(provider_request_id=self.on_submit(payload, api_key, n))

    async def query_job(self, provider_request_id, api_key):
        n = self.polls.get(provider_request_id, 0) + 1
        self.polls[provider_request_id] = n
        return self.on_query(provider_request_id, n)


def build_task(task_id, prompt=None, image_url="https://img.test/a.png", **kwargs):
    payload = SubmitPayload(prompt=prompt or f"prompt {task_id}", image_url=image_url, ratio="9:16")
    return BaseTask(id=task_id, input=payload, fingerprint=compute_fingerprint(payload), **kwargs)


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def make_task():
    return build_task


@pytest.fixture
def store(tmp_path):
    """Document store backed by a temporary file."""
    return DocumentStore(tmp_path / "data" / "app-data.json")


@pytest.fixture
def sleeps():
    """Record of delays requested through ``fake_sleep``."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return sleep


@pytest.fixture
def fast_settings():
    return EngineSettings(
        concurrency=2,
        max_attempts=3,
        poll_interval_s=0,
        max_polls=5,
        rate_limit_delay_s=30,
        backoff={"base_s": 0, "factor": 1, "cap_s": 0, "jitter_s": 0},
    )


@pytest.fixture
async def download_client():
    """httpx client whose every GET returns a small video body."""

    def handler(request):
        return httpx.Response(200, content=b"video-bytes")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        yield http


@pytest.fixture
def local_storage(tmp_path, download_client):
    public = tmp_path / "public"
    return LocalStorage(public / "generated_videos", public_dir=public, client=download_client)


@pytest.fixture(scope="function")
async def client(tmp_path, monkeypatch):
    monkeypatch.setenv("GENBATCH_DATA_FILE", str(tmp_path / "api-data.json"))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
