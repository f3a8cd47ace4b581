from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

from job_orchestrator.config import OrchestratorSettings, load_settings
from job_orchestrator.models import RunMode
from job_orchestrator.repository import JobRepository
from scenario_engine.errors import ConfigError


def _reason(repository: JobRepository, name: str) -> str:
    with pytest.raises(ConfigError) as excinfo:
        repository.resolve(name)
    return excinfo.value.reason


def test_resolve_plain_job(settings: OrchestratorSettings, write_job: Callable[..., Path]) -> None:
    write_job("ping", arguments={"cmd": "ping", "count": 3}, env={"MODE": "test"})
    repository = JobRepository(settings)

    job = repository.resolve("ping")

    assert job.mode == RunMode.PLAIN
    assert job.executable == settings.root / "binaries" / "fake-binary"
    assert job.arguments == {"cmd": "ping", "count": "3"}
    assert job.descriptor.environment == {"MODE": "test"}
    assert job.descriptor.timeout == 10000
    assert repository.names() == ["ping"]


def test_resolve_detects_scenario_and_batch_collections(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    write_scenario: Callable[..., Path],
) -> None:
    write_scenario("collections/login.yaml")
    write_job("single", type="scenario", collection="collections/login.yaml")
    write_job("many", collection="collections")
    repository = JobRepository(settings)

    single = repository.resolve("single")
    many = repository.resolve("many")

    assert single.mode == RunMode.SCENARIO
    assert single.collection == settings.root / "collections" / "login.yaml"
    assert many.mode == RunMode.BATCH


def test_rejection_reasons(settings: OrchestratorSettings, write_job: Callable[..., Path]) -> None:
    write_job("weird", type="http")
    write_job("nobinary", executable="missing-binary-xyz")
    write_job("nocollection", collection="collections/absent.yaml")
    write_job("scenario_without_collection", type="scenario")
    repository = JobRepository(settings)

    assert _reason(repository, "unknown") == "job_not_found"
    assert _reason(repository, "weird") == "unsupported_type"
    assert _reason(repository, "nobinary") == "binary_not_found"
    assert _reason(repository, "nocollection") == "collection_not_found"
    assert _reason(repository, "scenario_without_collection") == "collection_not_found"


@pytest.mark.skipif(sys.platform == "win32", reason="suffix is kept on Windows")
def test_exe_suffix_is_dropped_off_windows(settings: OrchestratorSettings, write_job: Callable[..., Path]) -> None:
    write_job("legacy", executable="fake-binary.exe")

    job = JobRepository(settings).resolve("legacy")

    assert job.executable.name == "fake-binary"


def test_platform_override_and_binary_base_path(tmp_path: Path, write_job: Callable[..., Path]) -> None:
    settings = OrchestratorSettings(root=tmp_path, binary_base_path={"default": "binaries"})
    write_job(
        "platform",
        arguments={"cmd": "generic"},
        platforms={sys.platform: {"arguments": {"cmd": "native"}}},
    )

    job = JobRepository(settings).resolve("platform")

    assert job.arguments == {"cmd": "native"}
    assert job.executable == tmp_path / "binaries" / "fake-binary"


def test_load_settings_reads_file_and_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config"
    config.mkdir()
    (config / "settings.yaml").write_text("history_keep: 20\nretry_delay: 2\n", encoding="utf-8")
    monkeypatch.setenv("SCENARIO_JOBS_DIR", "custom-jobs")
    monkeypatch.setenv("BINARY_PATH", "/opt/bin")

    settings = load_settings(root=tmp_path)

    assert settings.root == tmp_path
    assert settings.history_keep == 20
    assert settings.retry_delay == 2
    assert settings.jobs_dir == Path("custom-jobs")
    assert settings.binary_path_override == "/opt/bin"

    with pytest.raises(ConfigError):
        load_settings(tmp_path / "missing.yaml")
