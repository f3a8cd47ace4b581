"""Orchestrator lifecycle events, delivered through the engine's EventBus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .models import JobOutcome, Origin, RunningState


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobEvent:
    job_name: str
    at: datetime = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class JobStarted(JobEvent):
    invocation_id: str
    origin: Origin


@dataclass(frozen=True)
class JobRejected(JobEvent):
    reason: str
    origin: Origin


@dataclass(frozen=True)
class JobFinished(JobEvent):
    outcome: JobOutcome


@dataclass(frozen=True)
class RunningStateChanged(JobEvent):
    """The admission gate moved from ``previous`` to ``current``."""

    previous: Optional[RunningState]
    current: Optional[RunningState]
