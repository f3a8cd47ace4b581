"""Scenario loading utilities."""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .expressions import to_string
from .models import Scenario

SCENARIO_SUFFIXES = {".yaml", ".yml"}


def load_scenario(path: Path) -> Scenario:
    """Load and validate a scenario YAML (or JSON) file."""

    if not path.is_file():
        raise ConfigError("collection_not_found", f"Scenario file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError("invalid_scenario", f"Scenario file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("invalid_scenario", f"Scenario file {path} must contain a mapping")
    try:
        return Scenario.model_validate(normalize_scenario(data))
    except ValidationError as exc:
        raise ConfigError("invalid_scenario", f"Scenario file {path} is invalid: {exc}") from exc


def normalize_scenario(data: dict[str, Any]) -> dict[str, Any]:
    """Map the authoring format onto the :class:`Scenario` model."""

    variables = data.get("variables") or {}
    if isinstance(variables, dict):
        variables = [{"key": str(key), "value": _scalar(value)} for key, value in variables.items()]

    steps = []
    for index, step in enumerate(data.get("steps") or [], start=1):
        if not isinstance(step, dict):
            raise ConfigError("invalid_scenario", f"Step {index} must be a mapping")
        arguments = step.get("args", step.get("arguments")) or {}
        steps.append(
            {
                "name": str(step.get("name") or f"Step {index}"),
                "description": step.get("description"),
                "command": step.get("command"),
                "arguments": {str(key): _scalar(value) for key, value in arguments.items()},
                "extractors": [_extractor(entry) for entry in step.get("extract") or []],
                "assertions": [_assertion(entry) for entry in step.get("test") or step.get("tests") or []],
            }
        )

    stop_on_error = data.get("stopOnError", data.get("stop_on_error", True))
    return {
        "info": {
            "name": str(data.get("name") or "Untitled Scenario"),
            "description": data.get("description") or "",
            "version": str(data.get("version") or "1.0.0"),
        },
        "variables": variables,
        "steps": steps,
        "stop_on_error": stop_on_error is not False,
    }


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, float)):
        return to_string(value)
    return str(value)


def _extractor(entry: Any) -> dict[str, Any]:
    if not isinstance(entry, dict):
        raise ConfigError("invalid_scenario", f"Extractor entry must be a mapping: {entry!r}")
    pattern = str(entry.get("pattern") or entry.get("name") or "")
    return {
        "name": str(entry.get("name") or pattern),
        "pattern": pattern,
        "variable": str(entry.get("variable") or entry.get("name") or pattern),
    }


def _assertion(entry: Any) -> dict[str, Any]:
    if isinstance(entry, str):
        return {"name": entry, "assertion": entry}
    if isinstance(entry, dict):
        assertion = str(entry.get("assertion") or entry.get("name") or "")
        return {
            "name": str(entry.get("name") or assertion),
            "assertion": assertion,
            "description": entry.get("description"),
        }
    raise ConfigError("invalid_scenario", f"Test entry must be a string or mapping: {entry!r}")


def matches_pattern(filename: str, pattern: str) -> bool:
    """Case-insensitive glob match anywhere in `filename`."""

    return fnmatch.fnmatchcase(filename.lower(), f"*{pattern.lower()}*")


def discover_scenarios(directory: Path, exclude_patterns: Optional[Iterable[str]] = None) -> list[Path]:
    """List scenario files in `directory`, sorted by name, minus exclusions."""

    if not directory.is_dir():
        raise ConfigError("collection_not_found", f"Scenario directory not found: {directory}")
    patterns = [pattern for pattern in (exclude_patterns or []) if pattern]
    files = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix.lower() not in SCENARIO_SUFFIXES:
            continue
        if any(matches_pattern(path.name, pattern) for pattern in patterns):
            continue
        files.append(path)
    return files
