import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from tickbot.cli.commands import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _data_dir(monkeypatch, tmp_path) -> Path:
    for name in ("TICKBOT_CONFIG", "TICKBOT_DATA_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("tickbot.config.loader.get_data_dir", lambda: tmp_path)
    return tmp_path


def _schedule_files(tmp_path: Path) -> list[Path]:
    schedules_dir = tmp_path / "schedules"
    return sorted(schedules_dir.glob("*.yaml")) if schedules_dir.exists() else []


def test_schedule_add_writes_yaml_file(tmp_path) -> None:
    result = runner.invoke(
        app,
        ["schedule", "add", "--name", "demo", "--prompt", "hello world", "--cron", "0 9 * * 1", "--agent", "writer"],
    )

    assert result.exit_code == 0, result.stdout
    files = _schedule_files(tmp_path)
    assert len(files) == 1
    payload = yaml.safe_load(files[0].read_text(encoding="utf-8"))
    assert payload["name"] == "demo"
    assert payload["prompt"] == "hello world"
    assert payload["cron"] == "0 9 * * 1"
    assert payload["agent"] == "writer"
    assert "every Monday at 09:00" in result.stdout


def test_schedule_add_rejects_invalid_timezone(tmp_path) -> None:
    result = runner.invoke(
        app,
        ["schedule", "add", "--name", "demo", "--prompt", "hello", "--cron", "0 9 * * *", "--tz", "America/Vancovuer"],
    )

    assert result.exit_code == 1
    assert "Error: unknown timezone 'America/Vancovuer'" in result.stdout
    assert _schedule_files(tmp_path) == []


def test_schedule_add_rejects_invalid_cron(tmp_path) -> None:
    result = runner.invoke(app, ["schedule", "add", "--name", "demo", "--prompt", "hello", "--cron", "*/5 * * * *"])

    assert result.exit_code == 1
    assert "Error: invalid cron expression" in result.stdout
    assert _schedule_files(tmp_path) == []


def test_schedule_add_requires_fields_without_template() -> None:
    result = runner.invoke(app, ["schedule", "add", "--name", "demo"])

    assert result.exit_code == 1
    assert "required" in result.stdout


def test_schedule_add_from_template(tmp_path) -> None:
    result = runner.invoke(app, ["schedule", "add", "--template", "weekly-report"])

    assert result.exit_code == 0, result.stdout
    payload = yaml.safe_load(_schedule_files(tmp_path)[0].read_text(encoding="utf-8"))
    assert payload["cron"] == "0 17 * * 5"
    assert payload["name"] == "Weekly report"

    unknown = runner.invoke(app, ["schedule", "add", "--template", "nope"])
    assert unknown.exit_code == 1
    assert "unknown template 'nope'" in unknown.stdout


def test_schedule_enable_disable_and_remove(tmp_path) -> None:
    runner.invoke(app, ["schedule", "add", "--name", "demo", "--prompt", "hello", "--cron", "0 9 * * *"])
    schedule_file = _schedule_files(tmp_path)[0]
    schedule_id = schedule_file.stem

    result = runner.invoke(app, ["schedule", "enable", schedule_id[:8], "--disable"])
    assert result.exit_code == 0
    assert "disabled" in result.stdout
    assert yaml.safe_load(schedule_file.read_text(encoding="utf-8"))["enabled"] is False

    result = runner.invoke(app, ["schedule", "list"])
    assert "No schedules." in result.stdout

    result = runner.invoke(app, ["schedule", "remove", schedule_id])
    assert result.exit_code == 0
    assert not schedule_file.exists()

    result = runner.invoke(app, ["schedule", "remove", schedule_id])
    assert "not found" in result.stdout


def test_schedule_list_empty() -> None:
    result = runner.invoke(app, ["schedule", "list"])

    assert result.exit_code == 0
    assert "No schedules." in result.stdout


def test_schedule_next_previews_occurrences() -> None:
    result = runner.invoke(app, ["schedule", "next", "0 9 * * *", "--count", "2", "--tz", "UTC"])

    assert result.exit_code == 0
    assert "every day at 09:00" in result.stdout
    assert result.stdout.count("09:00 UTC") == 2


def test_schedule_next_rejects_invalid_expression() -> None:
    result = runner.invoke(app, ["schedule", "next", "61 * * * *"])

    assert result.exit_code == 1
    assert "Error: invalid cron expression '61 * * * *'" in result.stdout


def test_schedule_run_without_executor_reports_failure(tmp_path) -> None:
    runner.invoke(app, ["schedule", "add", "--name", "demo", "--prompt", "hello", "--cron", "0 9 * * *"])
    schedule_id = _schedule_files(tmp_path)[0].stem

    result = runner.invoke(app, ["schedule", "run", schedule_id])

    assert result.exit_code == 1
    assert "no executor configured" in result.stdout
    history = json.loads((tmp_path / "schedule_history.json").read_text(encoding="utf-8"))
    assert history[0]["status"] == "failure"

    result = runner.invoke(app, ["schedule", "history"])
    assert result.exit_code == 0


def test_schedule_templates_lists_builtins() -> None:
    result = runner.invoke(app, ["schedule", "templates"])

    assert result.exit_code == 0
    assert "morning-briefing" in result.stdout


def test_tasks_enqueue_list_and_cancel(tmp_path) -> None:
    result = runner.invoke(
        app,
        ["tasks", "enqueue", "llm_query", "--payload", '{"prompt": "hi"}', "--cap", "llm", "--priority", "high"],
    )
    assert result.exit_code == 0, result.stdout

    snapshot = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    task = snapshot["tasks"][0]
    assert task["type"] == "llm_query"
    assert task["priority"] == "high"
    assert task["required_capabilities"] == ["llm"]

    result = runner.invoke(app, ["tasks", "list"])
    assert result.exit_code == 0

    result = runner.invoke(app, ["tasks", "cancel", task["id"][:8]])
    assert result.exit_code == 0
    snapshot = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert snapshot["tasks"][0]["status"] == "cancelled"

    result = runner.invoke(app, ["tasks", "cancel", task["id"]])
    assert result.exit_code == 1


def test_tasks_enqueue_rejects_unknown_type(tmp_path) -> None:
    result = runner.invoke(app, ["tasks", "enqueue", "teleport"])

    assert result.exit_code == 1
    assert "unknown task type 'teleport'" in result.stdout
    assert not (tmp_path / "tasks.json").exists()


def test_tasks_cleanup_and_sweep() -> None:
    runner.invoke(app, ["tasks", "enqueue", "custom", "--deadline", "2000-01-01T00:00:00Z"])

    result = runner.invoke(app, ["tasks", "sweep"])
    assert result.exit_code == 0
    assert "1 task(s) past deadline" in result.stdout

    result = runner.invoke(app, ["tasks", "cleanup", "--older-than", "0"])
    assert result.exit_code == 0
    assert "Removed 0 task(s)" in result.stdout


def test_status_shows_counts() -> None:
    runner.invoke(app, ["tasks", "enqueue", "notification"])

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "pending=1" in result.stdout
