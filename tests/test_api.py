"""Tests for the HTTP API: health, task listing, CSV transfer and error mapping."""

import pytest
from httpx import AsyncClient

CSV_TEXT = "id,prompt,image_url\nv1,a cat,https://img/1.png\nv2,a dog,https://img/2.png\n"


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio(loop_scope="function")
async def test_config_defaults_use_env_data_file(client: AsyncClient, tmp_path):
    response = await client.get("/config/defaults")
    assert response.status_code == 200
    data = response.json()
    assert data["storage"]["data_file"] == str(tmp_path / "api-data.json")
    assert data["providers"]["video_provider"] == "kie-veo3-fast"


@pytest.mark.asyncio(loop_scope="function")
async def test_empty_task_list(client: AsyncClient):
    """A fresh data file has no tasks and all-zero counts."""
    response = await client.get("/video-tasks")
    assert response.status_code == 200
    data = response.json()
    assert data["tasks"] == []
    assert data["summary"]["total"] == 0


@pytest.mark.asyncio(loop_scope="function")
async def test_import_then_list_and_export(client: AsyncClient):
    response = await client.post("/video-tasks/import", json={"csv": CSV_TEXT, "workflow": "B"})
    assert response.status_code == 200
    assert response.json() == {"imported": ["v1", "v2"]}

    listing = (await client.get("/video-tasks")).json()
    assert listing["summary"]["waiting"] == 2
    assert [t["number"] for t in listing["tasks"]] == ["v1", "v2"]
    assert listing["tasks"][0]["imageUrls"] == ["https://img/1.png"]

    exported = await client.get("/video-tasks/export", params={"workflow": "B"})
    assert exported.status_code == 200
    lines = exported.text.splitlines()
    assert len(lines) == 3
    assert lines[2].startswith("v2,a dog,https://img/2.png,16:9")


@pytest.mark.asyncio(loop_scope="function")
async def test_import_invalid_row_returns_400(client: AsyncClient):
    response = await client.post("/video-tasks/import", json={"csv": "id,prompt,ratio\nv1,a cat,3:2\n"})
    assert response.status_code == 400
    assert "row 1" in response.json()["detail"]


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_videos_nothing_to_do(client: AsyncClient):
    response = await client.post("/generate/videos", json={})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert data["message"] == "No video tasks to generate"


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_videos_without_key_returns_400(client: AsyncClient, monkeypatch):
    """A missing credential surfaces as a structured 400."""
    monkeypatch.delenv("KIE_API_KEY", raising=False)
    await client.post("/video-tasks/import", json={"csv": CSV_TEXT})

    response = await client.post("/generate/videos", json={"numbers": ["v1"]})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "CONFIG_ERROR"
    assert "Kie.ai" in detail["message"]


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_images_unknown_mode_returns_400(client: AsyncClient):
    response = await client.post("/generate/images", json={"mode": "latest"})
    assert response.status_code == 400
    assert "Unknown mode" in response.json()["detail"]


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_images_nothing_selected(client: AsyncClient):
    response = await client.post("/generate/images", json={"mode": "all"})
    assert response.status_code == 200
    assert response.json() == {"results": [], "failed": [], "diagnostics": None}
