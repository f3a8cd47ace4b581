"""Test bootstrap for job-orchestrator."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest
import yaml

APPS_DIR = Path(__file__).resolve().parents[2]
for package in ["job-orchestrator", "scenario-engine"]:
    package_root = APPS_DIR / package
    path_str = str(package_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from job_orchestrator.config import OrchestratorSettings  # noqa: E402

FAKE_BINARY = """\
#!{python}
import sys
import time

raw = sys.argv[1] if len(sys.argv) > 1 else ""
args = dict(pair.split("=", 1) for pair in raw.split(";") if "=" in pair)
if "sleep" in args:
    time.sleep(float(args["sleep"]))
if args.get("cmd") == "login":
    print("RESULT=" + args.get("result", "0"))
    print("SESSION_ID=sess-" + args.get("user", "anon"))
else:
    for key, value in args.items():
        print(key.upper() + "=" + value)
sys.exit(int(args.get("exit", "0")))
"""


class RecordingNotifier:
    """Keeps every alert in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def notify(self, kind: str, payload: Mapping[str, Any]) -> None:
        self.sent.append((kind, dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    binaries = tmp_path / "binaries"
    binaries.mkdir()
    binary = binaries / "fake-binary"
    binary.write_text(FAKE_BINARY.format(python=sys.executable), encoding="utf-8")
    binary.chmod(0o755)
    (tmp_path / "jobs").mkdir()
    return OrchestratorSettings(root=tmp_path, retry_delay=0.05, max_retries=2, cooldown=0.0)


@pytest.fixture
def write_job(settings: OrchestratorSettings) -> Callable[..., Path]:
    def write(name: str, **fields: Any) -> Path:
        data: dict[str, Any] = {"executable": "fake-binary", "timeout": 10000}
        data.update(fields)
        path = settings.root / "jobs" / f"{name}.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return write


@pytest.fixture
def write_scenario(settings: OrchestratorSettings) -> Callable[..., Path]:
    def write(relative: str, login_result: str = "0") -> Path:
        path = settings.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        scenario = {
            "name": path.stem,
            "steps": [
                {
                    "name": "Login",
                    "args": {"cmd": "login", "user": path.stem, "result": login_result},
                    "extract": [{"name": "code", "pattern": "RESULT", "variable": "RESULT_CODE"}],
                    "test": ["RESULT_CODE == 0"],
                }
            ],
        }
        path.write_text(yaml.safe_dump(scenario, sort_keys=False), encoding="utf-8")
        return path

    return write


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
