"""Executes resolved jobs through the scenario engine."""

from __future__ import annotations

import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from scenario_engine.assertions import revalidate
from scenario_engine.errors import ConfigError, ProcessError
from scenario_engine.events import EventBus
from scenario_engine.loader import load_scenario
from scenario_engine.models import ScenarioResult
from scenario_engine.process_adapter import ProcessAdapter, serialize_arguments
from scenario_engine.reports import write_reports
from scenario_engine.runner import ScenarioRunner

from .config import OrchestratorSettings
from .models import JobOutcome, ResolvedJob, RunningState, RunMode

LOGGER = structlog.get_logger("job_orchestrator")


def run_stamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")


class JobExecutor:
    """Runs plain binary jobs and single-scenario jobs."""

    def __init__(self, settings: OrchestratorSettings, bus: Optional[EventBus] = None) -> None:
        self._settings = settings
        self.bus = bus
        self.reports_dir = settings.resolve(settings.reports_dir)

    def adapter_for(self, job: ResolvedJob) -> ProcessAdapter:
        return ProcessAdapter(timeout=job.descriptor.timeout / 1000, encoding=job.descriptor.encoding)

    def environment_for(self, job: ResolvedJob) -> Optional[dict[str, str]]:
        if not job.descriptor.environment:
            return None
        env = dict(os.environ)
        env.update(job.descriptor.environment)
        return env

    def report_dir_for(self, job: ResolvedJob, state: RunningState) -> Path:
        return self.reports_dir / f"{job.name}_{run_stamp(state.started_at)}"

    def run_plain(
        self,
        job: ResolvedJob,
        state: RunningState,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobOutcome:
        """Run the binary once; the job passes iff it exits with code 0."""

        logger = LOGGER.bind(job=job.name, invocation=state.invocation_id)
        adapter = self.adapter_for(job)
        serialized = serialize_arguments(job.arguments)
        timer = time.perf_counter()
        error: Optional[str] = None
        try:
            response = adapter.execute(
                job.executable,
                serialized,
                step_name=job.name,
                cancel_event=cancel_event,
                env=self.environment_for(job),
            )
        except ProcessError as exc:
            response = exc.response
            error = str(exc)
            logger.warning("job_process_failed", error=error, error_type=type(exc).__name__)

        report_dir = self.report_dir_for(job, state)
        report_dir.mkdir(parents=True, exist_ok=True)
        if response is not None:
            (report_dir / "stdout.log").write_text(response.stdout, encoding="utf-8")
            (report_dir / "stderr.log").write_text(response.stderr, encoding="utf-8")

        exit_code = response.exit_code if response is not None else None
        success = error is None and exit_code == 0
        return JobOutcome(
            job_name=job.name,
            invocation_id=state.invocation_id,
            origin=state.origin,
            mode=RunMode.PLAIN,
            success=success,
            exit_code=exit_code,
            summary=f"exit code {exit_code}",
            started_at=state.started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=round((time.perf_counter() - timer) * 1000, 3),
            report_dir=str(report_dir),
            parsed_fields=response.parsed_fields if response is not None else {},
            error=error,
        )

    def run_scenario_file(
        self,
        job: ResolvedJob,
        path: Path,
        report_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> ScenarioResult:
        """Load, run, re-validate and report one scenario file."""

        scenario = load_scenario(path)
        runner = ScenarioRunner(
            scenario,
            executable=job.executable,
            adapter=self.adapter_for(job),
            bus=self.bus,
            env=self.environment_for(job),
            source=str(path),
        )
        result = revalidate(runner.run(cancel_event=cancel_event), scenario)
        write_reports(result, report_dir)
        return result

    def run_scenario(
        self,
        job: ResolvedJob,
        state: RunningState,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobOutcome:
        if job.collection is None:
            raise ConfigError("collection_not_found", f"Job '{job.name}' has no scenario collection")
        report_dir = self.report_dir_for(job, state)
        result = self.run_scenario_file(job, job.collection, report_dir, cancel_event)
        summary = result.summary
        return JobOutcome(
            job_name=job.name,
            invocation_id=state.invocation_id,
            origin=state.origin,
            mode=RunMode.SCENARIO,
            success=result.success,
            exit_code=0 if result.success else 1,
            summary=f"{summary.passed}/{summary.total} steps passed",
            started_at=state.started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=summary.duration_ms,
            report_dir=str(report_dir),
        )
