"""Admission control, execution and completion of job invocations."""

from __future__ import annotations

import dataclasses
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from scenario_engine.errors import ConfigError, QueueError
from scenario_engine.events import EventBus

from . import notifier as alerts
from .batch import BatchRunner
from .config import OrchestratorSettings
from .events import JobFinished, JobRejected, JobStarted, RunningStateChanged
from .executors import JobExecutor
from .history import HistoryStore
from .models import JobOutcome, Origin, ResolvedJob, RunMode, RunningState, ScheduleQueueItem, SubmitResult
from .notifier import Notifier, build_notifier
from .repository import JobRepository
from .schedule_queue import ScheduleQueue

LOGGER = structlog.get_logger("job_orchestrator")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobOrchestrator:
    """Single-flight job runner with a schedule queue and batch mode.

    At most one ad-hoc invocation holds the running slot at a time. Scheduled
    invocations and anything started while batch mode is on bypass that
    check. Every admitted invocation is completed exactly once.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        *,
        repository: Optional[JobRepository] = None,
        executor: Optional[JobExecutor] = None,
        notifier: Optional[Notifier] = None,
        history: Optional[HistoryStore] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        self.repository = repository or JobRepository(settings)
        self.executor = executor or JobExecutor(settings, bus=self.bus)
        self.notifier = notifier or build_notifier(settings)
        self.history = history or HistoryStore(settings.resolve(settings.history_path), keep=settings.history_keep)
        self._lock = threading.Lock()
        self._running: Optional[RunningState] = None
        self._batch_depth = 0
        self._batch_invocations: set[str] = set()
        self._active: dict[str, RunningState] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="job")
        self.queue = ScheduleQueue(
            dispatch=self._dispatch_scheduled,
            is_blocked=self._is_blocked,
            on_drop=self._on_queue_drop,
            retry_delay=settings.retry_delay,
            max_retries=settings.max_retries,
            cooldown=settings.cooldown,
        )

    @property
    def running(self) -> Optional[RunningState]:
        with self._lock:
            return self._running

    @property
    def batch_mode(self) -> bool:
        with self._lock:
            return self._batch_depth > 0

    def start(self) -> None:
        self.queue.start()

    def shutdown(self, wait: bool = True, cancel: bool = False) -> None:
        self.queue.stop()
        if cancel:
            with self._lock:
                events = list(self._cancel_events.values())
            for event in events:
                event.set()
        self._pool.shutdown(wait=wait)
        LOGGER.info("orchestrator_shutdown", cancelled=cancel)

    def submit(self, job_name: str, origin: Origin = Origin.ADHOC) -> SubmitResult:
        try:
            job = self.repository.resolve(job_name)
        except ConfigError as exc:
            return self._reject(job_name, origin, exc.reason, str(exc))
        return self._admit(job, origin)

    def run_batch(self, job_name: str, directory: Optional[Path] = None) -> SubmitResult:
        """Run every scenario file of ``directory`` (default: the job's collection) as one invocation."""

        try:
            job = self.repository.resolve(job_name)
        except ConfigError as exc:
            return self._reject(job_name, Origin.BATCH, exc.reason, str(exc))
        target = Path(directory) if directory is not None else job.collection
        if target is None or not target.is_dir():
            return self._reject(job_name, Origin.BATCH, "collection_not_found", f"Not a directory: {target}")
        return self._admit(dataclasses.replace(job, collection=target, mode=RunMode.BATCH), Origin.BATCH)

    def enqueue(self, job_name: str) -> bool:
        return self.queue.enqueue(job_name)

    def cancel(self, invocation_id: str) -> bool:
        with self._lock:
            event = self._cancel_events.get(invocation_id)
        if event is None:
            return False
        event.set()
        LOGGER.warning("job_cancel_requested", invocation=invocation_id)
        return True

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            running = self._running.as_dict() if self._running else None
            active = [state.as_dict() for state in self._active.values()]
            batch_mode = self._batch_depth > 0
        return {
            "running": running,
            "batch_mode": batch_mode,
            "queue": self.queue.snapshot(),
            "active": active,
        }

    def force_reset(self) -> Optional[RunningState]:
        """Clear the running slot and batch mode. Active invocations still complete normally."""

        with self._lock:
            previous = self._running
            batch_was_on = self._batch_depth > 0
            self._running = None
            self._batch_depth = 0
            self._batch_invocations.clear()
        LOGGER.warning(
            "state_force_reset",
            previous=previous.job_name if previous else None,
            batch_mode=batch_was_on,
        )
        if previous is not None:
            self.bus.publish(RunningStateChanged(previous.job_name, previous=previous, current=None))
        self.notifier.notify(
            alerts.STATE_RESET,
            {
                "job_name": previous.job_name if previous else "-",
                "reason": "forced reset",
                "started_at": previous.started_at.isoformat() if previous else None,
            },
        )
        return previous

    def _reject(self, job_name: str, origin: Origin, reason: str, message: str) -> SubmitResult:
        LOGGER.warning("job_rejected", job=job_name, origin=origin.value, reason=reason, error=message)
        self.bus.publish(JobRejected(job_name, reason=reason, origin=origin))
        return SubmitResult(started=False, reason=reason)

    def _admit(self, job: ResolvedJob, origin: Origin) -> SubmitResult:
        with self._lock:
            if self._running is not None and origin != Origin.SCHEDULED and self._batch_depth == 0:
                holder = self._running.job_name
                admitted = None
            else:
                admitted = RunningState(
                    job_name=job.name,
                    started_at=_now(),
                    invocation_id=uuid.uuid4().hex,
                    origin=origin,
                )
                previous = self._running
                self._running = admitted
                self._active[admitted.invocation_id] = admitted
                if job.mode == RunMode.BATCH:
                    self._batch_invocations.add(admitted.invocation_id)
                    self._batch_depth += 1
                cancel_event = threading.Event()
                self._cancel_events[admitted.invocation_id] = cancel_event
        if admitted is None:
            return self._reject(job.name, origin, "already_running", f"Job '{holder}' is running")

        logger = LOGGER.bind(job=job.name, invocation=admitted.invocation_id)
        logger.info("job_admitted", origin=origin.value, mode=job.mode.value)
        self.bus.publish(JobStarted(job.name, invocation_id=admitted.invocation_id, origin=origin))
        self.bus.publish(RunningStateChanged(job.name, previous=previous, current=admitted))
        self.notifier.notify(
            alerts.START,
            {
                "job_name": job.name,
                "invocation_id": admitted.invocation_id,
                "origin": origin.value,
                "collection": str(job.collection) if job.collection else None,
                "started_at": admitted.started_at.isoformat(),
            },
        )
        try:
            future = self._pool.submit(self._execute, job, admitted, cancel_event)
        except RuntimeError as exc:
            logger.error("job_submit_failed", error=str(exc))
            self._complete(admitted, self._failed_outcome(job, admitted, str(exc)))
            return SubmitResult(started=False, reason="shutdown", invocation_id=admitted.invocation_id)
        return SubmitResult(started=True, invocation_id=admitted.invocation_id, future=future)

    def _execute(self, job: ResolvedJob, state: RunningState, cancel_event: threading.Event) -> JobOutcome:
        logger = LOGGER.bind(job=job.name, invocation=state.invocation_id)
        logger.info("job_started", mode=job.mode.value, executable=str(job.executable))
        try:
            if job.mode == RunMode.PLAIN:
                outcome = self.executor.run_plain(job, state, cancel_event)
            elif job.mode == RunMode.SCENARIO:
                outcome = self.executor.run_scenario(job, state, cancel_event)
            else:
                outcome = self._execute_batch(job, state, cancel_event)
        except Exception as exc:
            logger.exception("job_crashed")
            outcome = self._failed_outcome(job, state, f"{type(exc).__name__}: {exc}")
        self._complete(state, outcome)
        return outcome

    def _execute_batch(self, job: ResolvedJob, state: RunningState, cancel_event: threading.Event) -> JobOutcome:
        timer = time.perf_counter()
        try:
            if job.collection is None:
                raise ConfigError("collection_not_found", f"Job '{job.name}' has no scenario collection")
            report_root = self.executor.report_dir_for(job, state)
            runner = BatchRunner(
                lambda path, report_dir: self.executor.run_scenario_file(job, path, report_dir, cancel_event)
            )
            batch = runner.run(
                job.name,
                job.collection,
                report_root,
                exclude_patterns=job.descriptor.exclude_patterns,
                max_parallel=job.descriptor.max_parallel,
                cancel_event=cancel_event,
            )
        finally:
            with self._lock:
                self._leave_batch(state.invocation_id)
        return JobOutcome(
            job_name=job.name,
            invocation_id=state.invocation_id,
            origin=state.origin,
            mode=RunMode.BATCH,
            success=batch.success,
            exit_code=0 if batch.success else 1,
            summary=f"{batch.passed_files}/{len(batch.files)} files passed",
            started_at=state.started_at,
            finished_at=_now(),
            duration_ms=round((time.perf_counter() - timer) * 1000, 3),
            report_dir=str(report_root),
            batch=batch,
        )

    def _failed_outcome(self, job: ResolvedJob, state: RunningState, error: str) -> JobOutcome:
        finished = _now()
        return JobOutcome(
            job_name=job.name,
            invocation_id=state.invocation_id,
            origin=state.origin,
            mode=job.mode,
            success=False,
            summary="execution error",
            started_at=state.started_at,
            finished_at=finished,
            duration_ms=round((finished - state.started_at).total_seconds() * 1000, 3),
            error=error,
        )

    def _complete(self, state: RunningState, outcome: JobOutcome) -> None:
        with self._lock:
            if self._active.pop(state.invocation_id, None) is None:
                return
            self._cancel_events.pop(state.invocation_id, None)
            self._leave_batch(state.invocation_id)
            previous = self._running
            if previous is not None and previous.invocation_id == state.invocation_id:
                self._running = max(self._active.values(), key=lambda item: item.started_at, default=None)
            current = self._running

        logger = LOGGER.bind(job=state.job_name, invocation=state.invocation_id)
        logger.info("job_finished", success=outcome.success, summary=outcome.summary, duration_ms=outcome.duration_ms)
        self.bus.publish(JobFinished(state.job_name, outcome=outcome))
        self.bus.publish(RunningStateChanged(state.job_name, previous=previous, current=current))
        try:
            self.history.append(outcome)
        except OSError as exc:
            logger.error("history_write_failed", error=str(exc))
        self.notifier.notify(
            alerts.SUCCESS if outcome.success else alerts.ERROR,
            {
                "job_name": state.job_name,
                "invocation_id": state.invocation_id,
                "origin": state.origin.value,
                "summary": outcome.summary,
                "error": outcome.error,
                "duration_ms": outcome.duration_ms,
                "started_at": outcome.started_at.isoformat(),
                "finished_at": outcome.finished_at.isoformat(),
            },
        )
        self.queue.wake()

    def _leave_batch(self, invocation_id: str) -> None:
        """Drop one batch-mode reference; caller holds the lock. Idempotent per invocation."""
        if invocation_id in self._batch_invocations:
            self._batch_invocations.discard(invocation_id)
            self._batch_depth = max(0, self._batch_depth - 1)

    def _is_blocked(self, job_name: str) -> bool:
        with self._lock:
            if self._batch_depth > 0:
                return False
            return any(state.job_name == job_name for state in self._active.values())

    def _dispatch_scheduled(self, item: ScheduleQueueItem) -> SubmitResult:
        return self.submit(item.job_name, Origin.SCHEDULED)

    def _on_queue_drop(self, item: ScheduleQueueItem, exc: QueueError) -> None:
        self.notifier.notify(
            alerts.QUEUE_DROPPED,
            {"job_name": item.job_name, "reason": str(exc), "retry_count": item.retry_count},
        )
