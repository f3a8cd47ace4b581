"""Append-only run history, trimmed to the newest entries."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import structlog

from .models import JobOutcome

LOGGER = structlog.get_logger("job_orchestrator")


class HistoryStore:
    """JSON-lines history file holding at most ``keep`` entries."""

    def __init__(self, path: Path, keep: int = 500) -> None:
        self.path = path
        self.keep = keep
        self._lock = threading.Lock()

    def read(self) -> list[dict[str, Any]]:
        """Entries oldest first."""
        with self._lock:
            return self._read_unlocked()

    def append(self, outcome: JobOutcome) -> None:
        entry = outcome.model_dump(mode="json")
        with self._lock:
            entries = self._read_unlocked()
            entries.append(entry)
            entries = entries[-self.keep:]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text("".join(json.dumps(item) + "\n" for item in entries), encoding="utf-8")
            tmp.replace(self.path)

    def _read_unlocked(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        for number, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                LOGGER.warning("history_line_invalid", path=str(self.path), line=number)
        return entries
