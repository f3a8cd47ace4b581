"""Orchestrator settings: file, then environment overrides."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from scenario_engine.errors import ConfigError

DEFAULT_SETTINGS_PATH = Path("config/settings.yaml")

ENV_OVERRIDES = {
    "SCENARIO_JOBS_DIR": "jobs_dir",
    "SCENARIO_REPORTS_DIR": "reports_dir",
    "SCENARIO_HISTORY_PATH": "history_path",
    "SCENARIO_SCHEDULES_PATH": "schedules_path",
    "WEBHOOK_URL": "webhook_url",
}


class OrchestratorSettings(BaseModel):
    """Runtime configuration for the job orchestrator."""

    root: Path = Field(default_factory=Path.cwd)
    jobs_dir: Path = Path("jobs")
    reports_dir: Path = Path("reports")
    history_path: Path = Path("logs/history.jsonl")
    schedules_path: Path = Path("config/schedules.yaml")
    binary_base_path: dict[str, str] = Field(default_factory=dict)
    binary_path_override: Optional[str] = None
    history_keep: int = Field(default=500, ge=1)
    timezone: str = "Asia/Seoul"

    retry_delay: float = Field(default=10.0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    cooldown: float = Field(default=1.0, ge=0)
    max_workers: int = Field(default=4, ge=1)

    run_event_alert: bool = False
    alert_on_start: bool = False
    alert_on_success: bool = True
    alert_on_error: bool = True
    webhook_url: Optional[str] = None
    webhook_timeout: float = 10.0

    def resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.root / path


def load_settings(path: Optional[Path] = None, root: Optional[Path] = None) -> OrchestratorSettings:
    """Load settings from YAML/JSON and apply environment overrides.

    A missing file is not an error when no explicit path was given.
    """

    data: dict = {}
    settings_path = path or DEFAULT_SETTINGS_PATH
    if root is not None and not settings_path.is_absolute():
        settings_path = root / settings_path
    if settings_path.exists():
        text = settings_path.read_text(encoding="utf-8")
        try:
            loaded = json.loads(text) if settings_path.suffix == ".json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigError("invalid_settings", f"Settings file {settings_path} is invalid: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError("invalid_settings", f"Settings file {settings_path} must contain a mapping")
        data.update(loaded or {})
    elif path is not None:
        raise ConfigError("settings_not_found", f"Settings file not found: {settings_path}")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field_name] = value
    if os.environ.get("BINARY_PATH"):
        data["binary_path_override"] = os.environ["BINARY_PATH"]
    if root is not None:
        data.setdefault("root", root)

    try:
        return OrchestratorSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError("invalid_settings", str(exc)) from exc
