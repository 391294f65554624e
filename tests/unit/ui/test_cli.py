"""
cogworks — unit tests for the command-line router

File: tests/unit/ui/test_cli.py

Purpose
- Drive the CLI end to end against a filesystem store in a temp directory:
  create, process, approve, status, log, validate and config.
- Exit codes follow the documented contract (0 success, 2 config error,
  4 gated).
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cogworks.main import ExitCode
from cogworks.ui.cli import build_parser, run_cli

PIPELINES = """
version: 1
default_pipeline: reviewed
pipelines:
  reviewed:
    nodes:
      - {id: draft, kind: reasoning, template: draft, inputs: [work_item], outputs: [draft]}
      - {id: review, kind: gate, gate: human, inputs: [draft]}
      - {id: finish, kind: reasoning, template: finish, inputs: [draft], outputs: [summary]}
    edges:
      - {from: draft, to: review}
      - {from: review, to: finish}
"""

CONFIG = """
[engine]
pipelines_file = "pipelines.yaml"

[store]
backend = "filesystem"
root = "state"

[observability]
log_dir = "logs"

[extension]
services = {}
"""


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "pipelines.yaml").write_text(PIPELINES, encoding="utf-8")
    (tmp_path / "cogworks.toml").write_text(CONFIG, encoding="utf-8")
    return tmp_path


def _run(workspace: Path, *argv: str) -> int:
    command, *rest = argv
    return run_cli([command, "--config", str(workspace / "cogworks.toml"), *rest])


def _last_json(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return json.loads(lines[-1])


def test_create_process_approve_complete(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(workspace, "create", "--title", "Add export", "--body", "CSV please", "--trigger") == ExitCode.SUCCESS
    assert capsys.readouterr().out.strip() == "item-1"

    assert _run(workspace, "process", "item-1", "--offline", "--json") == ExitCode.GATED
    first = _last_json(capsys)["result"]
    assert isinstance(first, dict)
    assert first["status"] == "gated"
    assert first["gated"] == ["review"]

    assert _run(workspace, "approve", "item-1", "review") == ExitCode.SUCCESS
    assert "added cogworks:approve:review" in capsys.readouterr().out

    assert _run(workspace, "process", "item-1", "--offline", "--json") == ExitCode.SUCCESS
    second = _last_json(capsys)["result"]
    assert isinstance(second, dict)
    assert second["run_completed"] is True

    assert _run(workspace, "status", "item-1", "--json") == ExitCode.SUCCESS
    status = _last_json(capsys)
    run = status["run"]
    assert isinstance(run, dict)
    assert run["completed"] is True
    assert status["frontier"] is None

    assert _run(workspace, "log", "item-1", "--json") == ExitCode.SUCCESS
    kinds = [artifact["kind"] for artifact in _last_json(capsys)["artifacts"]]  # type: ignore[union-attr]
    assert kinds[:2] == ["classification", "run_started"]
    assert "pending_approval" in kinds
    assert "approval" in kinds
    assert kinds[-1] == "run_completed"
    assert (workspace / "logs" / "cogworks.jsonl").exists()


def test_status_text_before_and_during_a_run(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(workspace, "create", "--title", "Add export", "--trigger")
    capsys.readouterr()

    assert _run(workspace, "status", "item-1") == ExitCode.SUCCESS
    assert capsys.readouterr().out.strip() == "item-1: no run started"

    _run(workspace, "process", "item-1", "--offline")
    capsys.readouterr()
    assert _run(workspace, "status", "item-1") == ExitCode.SUCCESS
    out = capsys.readouterr().out
    assert "Pipeline:         reviewed" in out
    assert "- draft: completed (epoch 0, executions 1)" in out
    assert "- review: awaiting_approval" in out


def test_signal_for_unknown_node_is_a_config_error(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(workspace, "create", "--title", "Add export", "--trigger")
    _run(workspace, "process", "item-1", "--offline")
    capsys.readouterr()

    assert _run(workspace, "reject", "item-1", "deploy") == ExitCode.CONFIG_ERROR
    assert "has no node 'deploy'" in capsys.readouterr().err


def test_missing_item_and_bad_ref(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(workspace, "process", "item-9", "--offline") == ExitCode.CONFIG_ERROR
    assert "does not exist" in capsys.readouterr().err

    assert _run(workspace, "status", "bad ref") == ExitCode.CONFIG_ERROR
    assert "invalid work item ref" in capsys.readouterr().err


def test_validate_reports_catalog(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(workspace, "validate", "--json") == ExitCode.SUCCESS
    payload = _last_json(capsys)

    assert payload["valid"] is True
    assert payload["default_pipeline"] == "reviewed"
    assert payload["pipelines"]["reviewed"]["nodes"] == 3  # type: ignore[index]


def test_validate_rejects_broken_file(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    broken = workspace / "broken.yaml"
    broken.write_text("version: 1\npipelines: {}\n", encoding="utf-8")

    assert _run(workspace, "validate", str(broken), "--json") == ExitCode.CONFIG_ERROR
    payload = _last_json(capsys)
    assert payload["valid"] is False
    assert "expected non-empty mapping of pipelines" in str(payload["error"])


def test_config_is_printed_redacted(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(workspace, "config") == ExitCode.SUCCESS
    printed = json.loads(capsys.readouterr().out)

    assert printed["reasoning"]["api_key_env"] == "<redacted>"
    assert printed["store"]["root"] == (workspace / "state").resolve().as_posix()


def test_missing_config_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["config", "--config", str(tmp_path / "absent.toml")]) == ExitCode.CONFIG_ERROR
    assert "config file not found" in capsys.readouterr().err


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
