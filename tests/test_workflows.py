"""Tests for record/task conversion and the high-level workflows."""

import httpx
import pytest

from genbatch.documents import AppData, KeyEntry, PromptEntry, RecordStatus, VideoTaskRecord
from genbatch.errors import ConfigurationError
from genbatch.jobs.adapter import apply_task_to_record, record_to_task
from genbatch.jobs.models import TaskStatus
from genbatch.models import GenBatchConfig
from genbatch.providers import PRESET_A, build_preset
from genbatch import workflows

NO_WAIT_CONFIG = GenBatchConfig.from_dict({
    "engine": {
        "poll_interval_s": 0,
        "max_polls": 3,
        "backoff": {"base_s": 0, "factor": 1, "cap_s": 0, "jitter_s": 0},
    },
    "images": {"backoff": {"base_s": 0, "factor": 1, "cap_s": 0, "jitter_s": 0}},
})


def _record(number="1", **kwargs):
    values = {"number": number, "prompt": f"prompt {number}", "image_urls": ["https://img.test/1.png"]}
    values.update(kwargs)
    return VideoTaskRecord(**values)


class TestAdapter:
    def test_waiting_record_becomes_pending(self):
        task = record_to_task(_record(aspect_ratio="16:9", seeds="42", enable_translation=True), PRESET_A)
        assert task.status == "pending"
        assert task.input.ratio == "16:9"
        assert task.input.seed == 42
        assert task.input.translate == "auto"
        assert task.input.image_url == "https://img.test/1.png"
        assert task.attempts == 0

    def test_unknown_ratio_uses_preset(self):
        task = record_to_task(_record(aspect_ratio="21:9"), PRESET_A)
        assert task.input.ratio == "9:16"

    def test_generating_record_with_matching_fingerprint_resumes(self):
        fingerprint = record_to_task(_record(), PRESET_A).fingerprint
        record = _record(
            status=RecordStatus.GENERATING, provider_request_id="r1", fingerprint=fingerprint, attempts=1, progress=40
        )
        task = record_to_task(record, PRESET_A)
        assert task.status == "running"
        assert task.provider_request_id == "r1"
        assert task.progress == pytest.approx(0.4)
        assert task.attempts == 1

    def test_changed_input_is_resubmitted(self):
        record = _record(status=RecordStatus.GENERATING, provider_request_id="r1", fingerprint="stale")
        task = record_to_task(record, PRESET_A)
        assert task.status == "pending"
        assert task.provider_request_id is None

    def test_apply_task_status_mapping(self):
        record = _record()
        task = record_to_task(record, PRESET_A)
        task.transition(TaskStatus.SUBMITTED, provider_request_id="r9", attempts=1)

        apply_task_to_record(record, task)
        assert record.status == "generating"
        assert record.provider_request_id == "r9"
        assert record.started_at is not None

        task.transition(TaskStatus.FAILED, error_code="SUBMIT_ERROR", error_message="boom")
        apply_task_to_record(record, task)
        assert record.status == "failed"
        assert record.error_msg == "boom"
        assert record.finished_at is not None

    def test_result_without_file_shows_downloading(self):
        record = _record()
        task = record_to_task(record, PRESET_A)
        task.transition(TaskStatus.SUBMITTED, provider_request_id="r1", attempts=1)
        task.transition(TaskStatus.RUNNING, result_url="https://cdn/v.mp4", progress=1.0)
        apply_task_to_record(record, task)
        assert record.status == "downloading"
        assert record.progress == 100


class TestSelection:
    def test_video_targets_filter_workflow_and_status(self):
        data = AppData(video_tasks=[
            _record("1"),
            _record("2", status=RecordStatus.SUCCEEDED),
            _record("3", workflow="B"),
            _record("4", status=RecordStatus.FAILED),
        ])
        assert [r.number for r in workflows.select_video_targets(data, "A")] == ["1", "4"]
        assert [r.number for r in workflows.select_video_targets(data, "A", ["4"])] == ["4"]
        assert [r.number for r in workflows.select_video_targets(data, "B")] == ["3"]

    def test_downloading_record_is_eligible(self):
        """A record interrupted mid-download is picked up again."""
        data = AppData(video_tasks=[_record("1", status=RecordStatus.DOWNLOADING, provider_request_id="r1")])
        assert [r.number for r in workflows.select_video_targets(data, "A")] == ["1"]

    def test_prompt_modes(self):
        data = AppData(prompts=[
            PromptEntry(number="1", prompt="a"),
            PromptEntry(number="2", prompt="b", status=RecordStatus.SUCCEEDED, style="s1"),
        ])
        assert [j.id for j in workflows.select_prompt_jobs(data, "new")] == ["1"]
        assert [j.id for j in workflows.select_prompt_jobs(data, "all")] == ["1", "2"]
        selected = workflows.select_prompt_jobs(data, "selected", ["2"])
        assert selected[0].style_id == "s1"
        assert selected[0].prompt_number == "2"

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            workflows.select_prompt_jobs(AppData(), "latest")

    def test_summary_counts(self):
        data = AppData(video_tasks=[_record("1"), _record("2", status=RecordStatus.FAILED)])
        counts = workflows.summarize_video_tasks(data)
        assert counts["waiting"] == 1
        assert counts["failed"] == 1
        assert counts["total"] == 2


class TestCsvWorkflows:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_import_creates_and_resets_records(self, store):
        text = "id,prompt,image_url,ratio\nv1,a cat,https://img/1.png,16:9\nv2,a dog,https://img/2.png,\n"
        numbers = await workflows.import_video_tasks_csv(store, text, workflow="B")
        assert numbers == ["v1", "v2"]

        data = await store.read()
        v1 = data.find_video_task("v1")
        assert v1.workflow == "B"
        assert v1.aspect_ratio == "16:9"
        assert v1.status == "waiting"
        assert data.find_video_task("v2").aspect_ratio == "16:9"

        def finish(doc: AppData) -> None:
            doc.find_video_task("v1").status = RecordStatus.SUCCEEDED

        await store.update(finish)
        await workflows.import_video_tasks_csv(store, text, workflow="B")
        assert (await store.read()).find_video_task("v1").status == "succeeded"

        changed = text.replace("a cat", "a tiger")
        await workflows.import_video_tasks_csv(store, changed, workflow="B")
        assert (await store.read()).find_video_task("v1").status == "waiting"

    def test_export(self):
        data = AppData(video_tasks=[_record("1", aspect_ratio="16:9"), _record("2", workflow="B")])
        text = workflows.export_video_tasks_csv(data, workflow="B")
        lines = text.splitlines()
        assert len(lines) == 2
        assert lines[1].startswith("2,prompt 2,https://img.test/1.png,16:9,")


class TestGenerateVideos:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_nothing_to_do(self, store):
        result = await workflows.generate_videos(store, NO_WAIT_CONFIG)
        assert result.success is False
        assert result.message == "No video tasks to generate"

    @pytest.mark.asyncio(loop_scope="function")
    async def test_missing_key(self, store, monkeypatch):
        monkeypatch.delenv("KIE_API_KEY", raising=False)
        await store.update(lambda data: data.video_tasks.append(_record("1")))
        with pytest.raises(ConfigurationError, match="Kie.ai"):
            await workflows.generate_videos(store, NO_WAIT_CONFIG)

    @pytest.mark.asyncio(loop_scope="function")
    async def test_end_to_end_with_kie(self, store, tmp_path, monkeypatch, fake_sleep):
        monkeypatch.delenv("KIE_API_KEY", raising=False)

        def seed(data: AppData) -> None:
            data.video_settings.api_key = "kie-key-00000001"
            data.video_settings.save_path = str(tmp_path / "public" / "videos")
            data.video_tasks.append(_record("1"))
            data.video_tasks.append(_record("2", image_urls=[]))

        await store.update(seed)
        config = NO_WAIT_CONFIG.merge_cli_overrides({})
        config.storage.public_dir = str(tmp_path / "public")

        def handler(request):
            if request.url.path == "/api/v1/veo/generate":
                return httpx.Response(200, json={"code": 200, "data": {"taskId": "kie-1"}})
            if request.url.path == "/api/v1/veo/record-info":
                return httpx.Response(200, json={
                    "code": 200,
                    "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/final.mp4"]}},
                })
            return httpx.Response(200, content=b"mp4")

        seen = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            result = await workflows.generate_videos(
                store, config, client=http, sleep=fake_sleep, on_task_update=lambda t: seen.append(t.id)
            )

        assert result.success is True
        assert result.succeeded == ["1"]
        assert [f.number for f in result.failed] == ["2"]
        assert result.message == "Some video tasks failed (1/2)"
        assert "1" in seen

        data = await store.read()
        done = data.find_video_task("1")
        assert done.status == "succeeded"
        assert done.progress == 100
        assert done.local_path.startswith("videos/1_")
        assert done.remote_url == "https://cdn.test/final.mp4"
        failed = data.find_video_task("2")
        assert failed.status == "failed"
        assert "imageUrls" in failed.error_msg

    @pytest.mark.asyncio(loop_scope="function")
    async def test_interrupted_download_resumes_without_resubmitting(self, store, tmp_path, monkeypatch, fake_sleep):
        monkeypatch.delenv("KIE_API_KEY", raising=False)
        preset = build_preset("A", "kie-veo3-fast")
        fingerprint = record_to_task(_record("1"), preset).fingerprint

        def seed(data: AppData) -> None:
            data.video_settings.api_key = "kie-key-00000001"
            data.video_settings.save_path = str(tmp_path / "public" / "videos")
            data.video_tasks.append(_record(
                "1",
                status=RecordStatus.DOWNLOADING,
                provider_request_id="kie-7",
                fingerprint=fingerprint,
                remote_url="https://cdn.test/final.mp4",
                attempts=1,
                progress=100,
            ))

        await store.update(seed)
        config = NO_WAIT_CONFIG.merge_cli_overrides({})
        config.storage.public_dir = str(tmp_path / "public")
        paths = []
        polled = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path == "/api/v1/veo/record-info":
                polled.append(request.url.params["taskId"])
                return httpx.Response(200, json={
                    "code": 200,
                    "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.test/final.mp4"]}},
                })
            return httpx.Response(200, content=b"mp4")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            result = await workflows.generate_videos(store, config, client=http, sleep=fake_sleep)

        assert result.succeeded == ["1"]
        assert "/api/v1/veo/generate" not in paths
        assert polled == ["kie-7"]
        record = (await store.read()).find_video_task("1")
        assert record.status == "succeeded"
        assert record.attempts == 1
        assert record.local_path.startswith("videos/1_")


class TestGenerateImages:
    @pytest.mark.asyncio(loop_scope="function")
    async def test_generates_new_prompts(self, store, tmp_path, fake_sleep):
        def seed(data: AppData) -> None:
            data.key_library["main"] = KeyEntry(name="main", api_key="yw-key-000001", platform="云雾")
            data.api_settings.save_path = str(tmp_path / "public" / "images")
            data.prompts.append(PromptEntry(number="1", prompt="a cat"))
            data.prompts.append(PromptEntry(number="2", prompt="a dog", status=RecordStatus.SUCCEEDED))

        await store.update(seed)
        config = NO_WAIT_CONFIG.merge_cli_overrides({})
        config.storage.public_dir = str(tmp_path / "public")

        def handler(request):
            if request.method == "HEAD":
                return httpx.Response(200)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "![x](data:image/png;base64,QUJD)"}}]
            })

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            result = await workflows.generate_images(store, config, mode="new", client=http, sleep=fake_sleep)

        assert [r.job_id for r in result.results] == ["1"]
        assert result.results[0].local_path == "images/1.png"
        assert (tmp_path / "public" / "images" / "1.png").read_bytes() == b"ABC"
