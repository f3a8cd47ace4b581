"""Scenario and runtime models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScenarioInfo(BaseModel):
    """Descriptive header of a scenario file."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    version: Optional[str] = None


class Variable(BaseModel):
    """Initial scenario variable."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str


class Extractor(BaseModel):
    """Maps a response field or a stdout regex capture into a variable."""

    model_config = ConfigDict(frozen=True)

    name: str
    pattern: str
    variable: str

    @property
    def is_regex(self) -> bool:
        return any(marker in self.pattern for marker in ("\\", "(", "["))


class AssertionSpec(BaseModel):
    """Named assertion attached to a step."""

    model_config = ConfigDict(frozen=True)

    name: str
    assertion: str
    description: Optional[str] = None


class Step(BaseModel):
    """Single invocation of the target executable."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    command: Optional[str] = None
    arguments: dict[str, str] = Field(default_factory=dict)
    extractors: list[Extractor] = Field(default_factory=list)
    assertions: list[AssertionSpec] = Field(default_factory=list)


class Scenario(BaseModel):
    """Ordered list of steps plus the variables they start from."""

    model_config = ConfigDict(frozen=True)

    info: ScenarioInfo
    variables: list[Variable] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)
    stop_on_error: bool = True


class Response(BaseModel):
    """Captured outcome of one process execution."""

    model_config = ConfigDict(frozen=True)

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    parsed_fields: dict[str, str] = Field(default_factory=dict)
    command_string: str = ""


class BreakdownEntry(BaseModel):
    """One operand of a top-level `&&` / `||` chain."""

    expression: str
    passed: bool
    value: str
    operator: Optional[str] = None
    error: Optional[str] = None


class AssertionResult(BaseModel):
    """Evaluation outcome of a single assertion."""

    model_config = ConfigDict(frozen=True)

    name: str
    assertion: str
    passed: bool
    expected: Optional[str] = None
    actual: Optional[str] = None
    operator: Optional[str] = None
    diagnostic: Optional[str] = None
    warning: Optional[str] = None
    breakdown: list[BreakdownEntry] = Field(default_factory=list)
    variables: dict[str, dict[str, Any]] = Field(default_factory=dict)


class StepResult(BaseModel):
    """Runtime result for one step."""

    model_config = ConfigDict(frozen=True)

    step_index: int
    name: str
    command: Optional[str] = None
    command_string: str = ""
    response: Optional[Response] = None
    extracted: dict[str, str] = Field(default_factory=dict)
    assertions: list[AssertionResult] = Field(default_factory=list)
    passed: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: datetime
    finished_at: datetime
    duration_ms: float


class Summary(BaseModel):
    """Step counters for a scenario run."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    duration_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.passed / self.total * 100, 1)


class ScenarioResult(BaseModel):
    """Aggregated runtime summary."""

    model_config = ConfigDict(frozen=True)

    info: ScenarioInfo
    steps: list[StepResult] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    success: bool
    started_at: datetime
    finished_at: datetime
    cancelled: bool = False
    source: Optional[str] = None
