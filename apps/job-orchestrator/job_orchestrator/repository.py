"""Job descriptor lookup and validation."""

from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from scenario_engine.errors import ConfigError
from scenario_engine.loader import SCENARIO_SUFFIXES

from .config import OrchestratorSettings
from .models import JobDescriptor, JobType, ResolvedJob, RunMode

LOGGER = structlog.get_logger("job_orchestrator")

JOB_SUFFIXES = (".yaml", ".yml", ".json")
DEFAULT_BINARY_DIR = "binaries"


class JobRepository:
    """Reads job files from ``settings.jobs_dir`` and locates their binaries."""

    def __init__(self, settings: OrchestratorSettings) -> None:
        self._settings = settings
        self.jobs_dir = settings.resolve(settings.jobs_dir)

    def names(self) -> list[str]:
        if not self.jobs_dir.is_dir():
            return []
        return sorted(
            path.stem for path in self.jobs_dir.iterdir() if path.is_file() and path.suffix.lower() in JOB_SUFFIXES
        )

    def load(self, name: str) -> JobDescriptor:
        path = self._find(name)
        text = path.read_text(encoding="utf-8")
        try:
            data: Any = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise ConfigError("invalid_job", f"Job file {path} is not valid: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("invalid_job", f"Job file {path} must contain a mapping")
        data.setdefault("name", name)
        job_type = str(data.get("type", JobType.BINARY.value))
        if job_type not in {item.value for item in JobType}:
            raise ConfigError("unsupported_type", f"Job '{name}' has unsupported type '{job_type}'")
        try:
            return JobDescriptor.model_validate(data)
        except ValidationError as exc:
            raise ConfigError("invalid_job", f"Job file {path} is invalid: {exc}") from exc

    def resolve(self, name: str) -> ResolvedJob:
        """Load `name` and check that everything it needs exists."""

        descriptor = self.load(name)
        executable = self.binary_path(descriptor)
        if not executable.exists():
            found = shutil.which(executable.name)
            if not found:
                raise ConfigError("binary_not_found", f"Binary not found: {executable}")
            executable = Path(found)

        collection = None
        mode = RunMode.PLAIN
        if descriptor.collection:
            collection = self._settings.resolve(Path(descriptor.collection))
            if collection.is_dir():
                mode = RunMode.BATCH
            elif collection.is_file() and collection.suffix.lower() in SCENARIO_SUFFIXES:
                mode = RunMode.SCENARIO
            else:
                raise ConfigError("collection_not_found", f"Collection not found: {collection}")
        elif descriptor.type == JobType.SCENARIO:
            raise ConfigError("collection_not_found", f"Scenario job '{name}' has no collection")

        override = descriptor.platforms.get(sys.platform)
        arguments = override.arguments if override and override.arguments is not None else descriptor.arguments

        LOGGER.debug("job_resolved", job=name, mode=mode.value, executable=str(executable))
        return ResolvedJob(
            descriptor=descriptor,
            executable=executable,
            mode=mode,
            collection=collection,
            arguments=dict(arguments),
        )

    def binary_path(self, descriptor: JobDescriptor) -> Path:
        """Locate the executable: ``$BINARY_PATH``, per-platform settings, ``./binaries``."""

        platform = sys.platform
        override = descriptor.platforms.get(platform)
        if descriptor.binary_path and not override:
            return self._settings.resolve(Path(descriptor.binary_path))

        executable = (override.executable if override and override.executable else None) or descriptor.executable
        if not executable:
            raise ConfigError("binary_not_found", f"Job '{descriptor.name}' defines no executable")
        if platform != "win32" and not (override and override.executable):
            executable = executable.replace(".exe", "")

        if self._settings.binary_path_override:
            return Path(self._settings.binary_path_override) / executable
        base_paths = self._settings.binary_base_path
        base = (
            (override.path if override and override.path else None)
            or base_paths.get(platform)
            or base_paths.get("default")
            or DEFAULT_BINARY_DIR
        )
        return self._settings.resolve(Path(base)) / executable

    def _find(self, name: str) -> Path:
        for suffix in JOB_SUFFIXES:
            candidate = self.jobs_dir / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        raise ConfigError("job_not_found", f"Job '{name}' not found in {self.jobs_dir}")
