import json
from unittest.mock import patch

import pytest

from genbatch.cli import main


def _write_data(path, **document):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document), encoding="utf-8")


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["genbatch", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_videos_help():
    """Test videos subcommand help."""
    with patch("sys.argv", ["genbatch", "videos", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_rejects_unknown_provider():
    with patch("sys.argv", ["genbatch", "videos", "--provider", "nope"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 2


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["genbatch"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_cli_config_show(tmp_path, capsys):
    data = tmp_path / "app.json"
    with patch("sys.argv", ["genbatch", "--data", str(data), "config", "show"]):
        main()
    captured = capsys.readouterr()
    assert "engine:" in captured.out
    assert str(data) in captured.out


def test_cli_tasks_status(tmp_path, capsys):
    data = tmp_path / "app.json"
    _write_data(data, videoTasks=[
        {"number": "1", "prompt": "a", "status": "succeeded"},
        {"number": "2", "prompt": "b", "status": "failed"},
        {"number": "3", "prompt": "c"},
    ])
    with patch("sys.argv", ["genbatch", "--data", str(data), "tasks", "status"]):
        main()
    out = capsys.readouterr().out
    assert "VIDEO TASK STATUS" in out
    assert "Succeeded:            1" in out
    assert "Waiting:              1" in out
    assert "Total:                3" in out


def test_cli_csv_import_then_export(tmp_path, capsys):
    data = tmp_path / "app.json"
    source = tmp_path / "tasks.csv"
    target = tmp_path / "out.csv"
    source.write_text("id,prompt,image_url\nv1,a cat,https://img/1.png\n", encoding="utf-8")

    with patch("sys.argv", ["genbatch", "--data", str(data), "csv", "import", "--file", str(source)]):
        main()
    assert "Imported 1 task(s)" in capsys.readouterr().out

    with patch("sys.argv", ["genbatch", "--data", str(data), "csv", "export", "--file", str(target)]):
        main()
    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("id,prompt,image_url")
    assert lines[1].startswith("v1,a cat,https://img/1.png,9:16")


def test_cli_csv_import_invalid(tmp_path, capsys):
    source = tmp_path / "bad.csv"
    source.write_text("id,prompt,ratio\nv1,a cat,3:2\n", encoding="utf-8")
    argv = ["genbatch", "--data", str(tmp_path / "app.json"), "csv", "import", "--file", str(source)]
    with patch("sys.argv", argv):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 2
    assert "row 1" in capsys.readouterr().out


def test_cli_videos_nothing_to_do(tmp_path, capsys):
    with patch("sys.argv", ["genbatch", "--data", str(tmp_path / "app.json"), "videos"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "No video tasks to generate" in capsys.readouterr().out


def test_cli_videos_missing_key(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("KIE_API_KEY", raising=False)
    data = tmp_path / "app.json"
    _write_data(data, videoTasks=[{"number": "1", "prompt": "a", "imageUrls": ["https://img/1.png"]}])
    with patch("sys.argv", ["genbatch", "--data", str(data), "videos"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "No Kie.ai API key configured" in capsys.readouterr().out


def test_cli_check_without_keys(tmp_path, capsys, monkeypatch):
    """Test check command when no credential is configured."""
    monkeypatch.delenv("KIE_API_KEY", raising=False)
    monkeypatch.delenv("YUNWU_API_KEY", raising=False)
    with patch("sys.argv", ["genbatch", "--data", str(tmp_path / "app.json"), "check"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "❌ kie" in capsys.readouterr().out


def test_cli_check_with_env_key(tmp_path, capsys, monkeypatch):
    """Test check command when a Kie key is in the environment."""
    monkeypatch.setenv("KIE_API_KEY", "kie-env-key-123456")
    monkeypatch.delenv("YUNWU_API_KEY", raising=False)
    with patch("sys.argv", ["genbatch", "--data", str(tmp_path / "app.json"), "check"]):
        main()
    out = capsys.readouterr().out
    assert "✅ kie: 1 key(s), first env:KIE_API_KEY (kie-...3456)" in out
    assert "❌ yunwu" in out
