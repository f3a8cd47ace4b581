from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

from typer.testing import CliRunner

from job_orchestrator.config import OrchestratorSettings
from job_orchestrator.main import app

runner = CliRunner()


def test_run_command_exit_codes(settings: OrchestratorSettings, write_job: Callable[..., Path]) -> None:
    write_job("ok", arguments={"cmd": "noop"})
    write_job("bad", arguments={"exit": "1"})
    root = str(settings.root)

    passed = runner.invoke(app, ["run", "ok", "--root", root, "--output-format", "json"])
    failed = runner.invoke(app, ["run", "bad", "--root", root, "--output-format", "plain"])
    missing = runner.invoke(app, ["run", "ghost", "--root", root])

    assert passed.exit_code == 0, passed.output
    outcome = json.loads(passed.stdout.strip().splitlines()[-1])
    assert outcome["job_name"] == "ok"
    assert outcome["success"] is True
    assert failed.exit_code == 1, failed.output
    assert missing.exit_code == 2
    history = (settings.root / "logs" / "history.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(history) == 2


def test_batch_command_reports_each_file(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    write_scenario: Callable[..., Path],
) -> None:
    write_scenario("suite/a.yaml")
    write_scenario("suite/b.yaml", login_result="5")
    write_job("suite", collection="suite")

    result = runner.invoke(app, ["batch", "suite", "--root", str(settings.root), "--output-format", "plain"])

    assert result.exit_code == 1, result.output
    assert "a.yaml" in result.output
    assert "b.yaml" in result.output


def test_serve_starts_and_stops(settings: OrchestratorSettings) -> None:
    config = settings.root / "config"
    config.mkdir()
    (config / "schedules.yaml").write_text("- name: nightly\n  cronExpr: '0 0 2 * * *'\n", encoding="utf-8")
    (config / "settings.yaml").write_text("timezone: UTC\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "serve",
            "--root",
            str(settings.root),
            "--duration",
            "0.2",
            "--output-format",
            "json",
            "--log-level",
            "error",
        ],
    )

    assert result.exit_code == 0, result.output
    status = json.loads(result.stdout.strip().splitlines()[-1])
    assert status["running"] is None
    assert status["queue"]["length"] == 0
