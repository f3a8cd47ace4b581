"""Job descriptors and orchestrator runtime models."""

from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from scenario_engine.expressions import to_string


class JobType(str, Enum):
    BINARY = "binary"
    SCENARIO = "scenario"


class Origin(str, Enum):
    ADHOC = "adhoc"
    SCHEDULED = "scheduled"
    BATCH = "batch"


class RunMode(str, Enum):
    PLAIN = "plain"
    SCENARIO = "scenario"
    BATCH = "batch"


class PlatformOverride(BaseModel):
    """Per-platform executable location."""

    path: Optional[str] = None
    executable: Optional[str] = None
    arguments: Optional[dict[str, str]] = None


class JobDescriptor(BaseModel):
    """Job definition loaded from ``<jobs_dir>/<name>.yaml``.

    ``timeout`` is expressed in milliseconds, as in existing job files.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: JobType = JobType.BINARY
    description: Optional[str] = None
    executable: Optional[str] = None
    binary_path: Optional[str] = Field(default=None, alias="binaryPath")
    platforms: dict[str, PlatformOverride] = Field(default_factory=dict)
    collection: Optional[str] = None
    timeout: int = 30000
    arguments: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict, alias="env")
    encoding: str = "cp949"
    exclude_patterns: list[str] = Field(default_factory=list, alias="excludePatterns")
    max_parallel: int = Field(default=1, ge=1, alias="maxParallel")

    @field_validator("arguments", "environment", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                str(key): item if isinstance(item, str) else ("" if item is None else to_string(item))
                for key, item in value.items()
            }
        return value


@dataclass(frozen=True)
class ResolvedJob:
    """A validated descriptor with its executable and collection located."""

    descriptor: JobDescriptor
    executable: Path
    mode: RunMode
    collection: Optional[Path] = None
    arguments: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.descriptor.name


@dataclass(frozen=True)
class RunningState:
    job_name: str
    started_at: datetime
    invocation_id: str
    origin: Origin

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "started_at": self.started_at.isoformat(),
            "invocation_id": self.invocation_id,
            "origin": self.origin.value,
        }


@dataclass
class ScheduleQueueItem:
    job_name: str
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0

    @property
    def waiting_time(self) -> float:
        return round(time.time() - self.enqueued_at, 3)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
            "waiting_time": self.waiting_time,
        }


class BatchFileResult(BaseModel):
    """Outcome of one scenario file inside a batch."""

    file: str
    success: bool
    total: int = 0
    passed: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    report_dir: Optional[str] = None


class BatchResult(BaseModel):
    """Aggregated outcome of a directory batch."""

    job_name: str
    directory: str
    files: list[BatchFileResult] = Field(default_factory=list)
    success: bool = True

    @property
    def passed_files(self) -> int:
        return sum(1 for item in self.files if item.success)

    @property
    def failed_files(self) -> int:
        return len(self.files) - self.passed_files


class JobOutcome(BaseModel):
    """Terminal result of one job invocation."""

    job_name: str
    invocation_id: str
    origin: Origin
    mode: Optional[RunMode] = None
    success: bool
    exit_code: Optional[int] = None
    summary: str = ""
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    report_dir: Optional[str] = None
    parsed_fields: dict[str, str] = Field(default_factory=dict)
    batch: Optional[BatchResult] = None
    error: Optional[str] = None


@dataclass
class SubmitResult:
    started: bool
    reason: Optional[str] = None
    invocation_id: Optional[str] = None
    future: Optional["Future[JobOutcome]"] = None

    def wait(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        if self.future is None:
            return None
        return self.future.result(timeout=timeout)
