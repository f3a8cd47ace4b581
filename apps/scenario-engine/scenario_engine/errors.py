"""Error taxonomy shared by the scenario engine and the job orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Response


class ConfigError(Exception):
    """Raised when a job, scenario, binary or collection cannot be resolved."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class ProcessError(Exception):
    """Base class for failures of the external executable."""

    def __init__(self, message: str, response: Optional["Response"] = None) -> None:
        self.response = response
        super().__init__(message)


class ProcessSpawnError(ProcessError):
    """The executable could not be started."""


class ProcessExitError(ProcessError):
    """The executable exited with a non-zero code."""

    @property
    def exit_code(self) -> Optional[int]:
        return self.response.exit_code if self.response else None


class ProcessTimeoutError(ProcessError):
    """The executable did not finish before its deadline and was killed."""


class ProcessCancelledError(ProcessError):
    """The executable was killed because the run was cancelled."""


class ExtractionError(Exception):
    """An extractor could not produce a value. Logged, never fatal."""

    def __init__(self, extractor: str, message: str) -> None:
        self.extractor = extractor
        super().__init__(f"{extractor}: {message}")


class QueueError(Exception):
    """A scheduled item exhausted its retries and was dropped."""

    def __init__(self, job_name: str, retry_count: int) -> None:
        self.job_name = job_name
        self.retry_count = retry_count
        super().__init__(f"Job '{job_name}' dropped from schedule queue after {retry_count} retries")
