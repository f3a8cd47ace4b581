"""Cron schedules that feed the schedule queue."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from scenario_engine.errors import ConfigError

LOGGER = structlog.get_logger("job_orchestrator")


class Schedule(BaseModel):
    """A job name fired on a cron expression."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    cron_expr: str = Field(alias="cronExpr")


def normalize_cron_expression(expression: str) -> str:
    """Drop the seconds field of 6-field expressions and validate the result."""

    parts = expression.split()
    if len(parts) == 6:
        parts = parts[1:]
    normalized = " ".join(parts)
    if len(parts) != 5 or not croniter.is_valid(normalized):
        raise ConfigError("invalid_cron", f"Invalid cron expression: {expression!r}")
    return normalized


def load_schedules(path: Path) -> list[Schedule]:
    """Read schedules from YAML/JSON. Entries with invalid expressions are logged and skipped."""

    if not path.exists():
        return []
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError("invalid_schedules", f"Schedules file {path} is invalid: {exc}") from exc
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("invalid_schedules", f"Schedules file {path} must contain a list")

    schedules = []
    for entry in data:
        try:
            schedule = Schedule.model_validate(entry)
        except ValidationError as exc:
            LOGGER.error("schedule_invalid", path=str(path), error=str(exc))
            continue
        try:
            cron_expr = normalize_cron_expression(schedule.cron_expr)
        except ConfigError as exc:
            LOGGER.error("schedule_invalid", path=str(path), name=schedule.name, error=str(exc))
            continue
        schedules.append(schedule.model_copy(update={"cron_expr": cron_expr}))
    return schedules


def save_schedules(path: Path, schedules: Iterable[Schedule]) -> None:
    payload = [item.model_dump(by_alias=True) for item in schedules]
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".json":
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError("invalid_timezone", f"Unknown timezone: {name}") from exc


class CronScheduler:
    """Daemon thread that calls ``enqueue(name)`` whenever a schedule fires."""

    def __init__(
        self,
        schedules: Iterable[Schedule],
        enqueue: Callable[[str], bool],
        timezone: str = "UTC",
    ) -> None:
        self._enqueue = enqueue
        self._tz = resolve_timezone(timezone)
        self._lock = threading.Lock()
        self._changed = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._schedules: dict[str, Schedule] = {}
        self._next: dict[str, datetime] = {}
        for schedule in schedules:
            self.add(schedule)

    def schedules(self) -> list[Schedule]:
        with self._lock:
            return list(self._schedules.values())

    def next_fire_times(self) -> dict[str, datetime]:
        with self._lock:
            return dict(self._next)

    def add(self, schedule: Schedule, now: Optional[datetime] = None) -> Schedule:
        normalized = schedule.model_copy(update={"cron_expr": normalize_cron_expression(schedule.cron_expr)})
        base = now or datetime.now(self._tz)
        with self._lock:
            self._schedules[normalized.name] = normalized
            self._next[normalized.name] = croniter(normalized.cron_expr, base).get_next(datetime)
        LOGGER.info("schedule_added", name=normalized.name, cron=normalized.cron_expr)
        self._changed.set()
        return normalized

    def remove(self, name: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(name, None)
            self._next.pop(name, None)
        if removed is not None:
            LOGGER.info("schedule_removed", name=name)
            self._changed.set()
        return removed is not None

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Fire every schedule due at ``now`` and advance it. Returns the fired names."""

        current = now or datetime.now(self._tz)
        fired = []
        with self._lock:
            for name, due in self._next.items():
                if due <= current:
                    fired.append(name)
                    self._next[name] = croniter(self._schedules[name].cron_expr, current).get_next(datetime)
        for name in fired:
            LOGGER.info("schedule_triggered", name=name)
            self._enqueue(name)
        return fired

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cron-scheduler", daemon=True)
        self._thread.start()
        LOGGER.info("cron_scheduler_started", schedules=len(self._schedules))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._changed.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        LOGGER.info("cron_scheduler_stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.tick()
            with self._lock:
                upcoming = min(self._next.values(), default=None)
            delay = 60.0 if upcoming is None else (upcoming - datetime.now(self._tz)).total_seconds()
            self._changed.wait(timeout=min(max(delay, 0.0), 60.0))
            self._changed.clear()
