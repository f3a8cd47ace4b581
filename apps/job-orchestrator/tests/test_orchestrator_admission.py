from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

from job_orchestrator.config import OrchestratorSettings
from job_orchestrator.events import JobFinished, JobRejected, JobStarted, RunningStateChanged
from job_orchestrator.executors import JobExecutor
from job_orchestrator.models import Origin, RunMode, RunningState, SubmitResult
from job_orchestrator.orchestrator import JobOrchestrator
from job_orchestrator.repository import JobRepository
from scenario_engine.errors import ConfigError
from scenario_engine.events import StepCompleted, StepStarted


def _orchestrator(settings: OrchestratorSettings, notifier: Any) -> JobOrchestrator:
    return JobOrchestrator(settings, notifier=notifier)


def test_concurrent_adhoc_submits_admit_exactly_one(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    notifier: Any,
) -> None:
    write_job("slow", arguments={"sleep": "0.5"})
    orchestrator = _orchestrator(settings, notifier)
    barrier = threading.Barrier(2)
    results: list[SubmitResult] = []
    lock = threading.Lock()

    def submit() -> None:
        barrier.wait()
        result = orchestrator.submit("slow")
        with lock:
            results.append(result)

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    started = [result for result in results if result.started]
    rejected = [result for result in results if not result.started]
    assert len(started) == 1
    assert len(rejected) == 1
    assert rejected[0].reason == "already_running"

    outcome = started[0].wait(timeout=10)
    orchestrator.shutdown()
    assert outcome is not None and outcome.success
    assert orchestrator.running is None
    assert notifier.kinds().count("success") == 1


def test_scheduled_runs_bypass_the_running_slot(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    notifier: Any,
) -> None:
    write_job("slow", arguments={"sleep": "0.5"})
    write_job("quick", arguments={"cmd": "noop"})
    orchestrator = _orchestrator(settings, notifier)

    adhoc = orchestrator.submit("slow")
    blocked = orchestrator.submit("quick")
    scheduled = orchestrator.submit("quick", Origin.SCHEDULED)

    assert adhoc.started
    assert not blocked.started and blocked.reason == "already_running"
    assert scheduled.started
    scheduled.wait(timeout=10)
    adhoc.wait(timeout=10)
    orchestrator.shutdown()

    status = orchestrator.get_status()
    assert status["running"] is None
    assert status["active"] == []
    assert notifier.kinds().count("start") == 2
    assert notifier.kinds().count("success") == 2


def test_invalid_jobs_are_rejected_with_reason(settings: OrchestratorSettings, notifier: Any) -> None:
    orchestrator = _orchestrator(settings, notifier)
    rejections: list[JobRejected] = []
    orchestrator.bus.subscribe(rejections.append, JobRejected)

    result = orchestrator.submit("missing")
    orchestrator.shutdown()

    assert not result.started
    assert result.reason == "job_not_found"
    assert rejections[0].reason == "job_not_found"
    assert notifier.sent == []


def test_completion_records_history_and_events(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    notifier: Any,
) -> None:
    write_job("failing", arguments={"code": "E42", "exit": "4"})
    orchestrator = _orchestrator(settings, notifier)
    events: list[object] = []
    orchestrator.bus.subscribe(events.append)

    outcome = orchestrator.submit("failing").wait(timeout=10)
    orchestrator.shutdown()

    assert outcome is not None
    assert not outcome.success
    assert outcome.mode == RunMode.PLAIN
    assert outcome.exit_code == 4
    assert outcome.parsed_fields["code"] == "E42"
    assert outcome.report_dir and (Path(outcome.report_dir) / "stdout.log").exists()

    history = orchestrator.history.read()
    assert len(history) == 1
    assert history[0]["job_name"] == "failing"
    assert history[0]["success"] is False
    assert notifier.kinds() == ["start", "error"]

    kinds = [type(event) for event in events]
    assert kinds[0] is JobStarted
    assert JobFinished in kinds
    assert kinds.count(RunningStateChanged) == 2


def test_scenario_job_writes_reports(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    write_scenario: Callable[..., Path],
    notifier: Any,
) -> None:
    write_scenario("collections/login.yaml")
    write_job("login", type="scenario", collection="collections/login.yaml")
    orchestrator = _orchestrator(settings, notifier)

    outcome = orchestrator.submit("login").wait(timeout=10)
    orchestrator.shutdown()

    assert outcome is not None and outcome.success
    assert outcome.mode == RunMode.SCENARIO
    assert outcome.summary == "1/1 steps passed"
    assert (Path(outcome.report_dir or "") / "summary.json").exists()


def test_force_reset_clears_slot_and_late_completion_is_harmless(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    notifier: Any,
) -> None:
    write_job("slow", arguments={"sleep": "0.5"})
    write_job("quick", arguments={"cmd": "noop"})
    orchestrator = _orchestrator(settings, notifier)

    first = orchestrator.submit("slow")
    previous = orchestrator.force_reset()
    second = orchestrator.submit("quick")

    assert previous is not None and previous.job_name == "slow"
    assert second.started
    second.wait(timeout=10)
    first.wait(timeout=10)
    orchestrator.shutdown()

    assert orchestrator.running is None
    assert "state_reset" in notifier.kinds()
    assert notifier.kinds().count("success") == 2
    assert len(orchestrator.history.read()) == 2


def test_scenario_job_streams_step_events_on_orchestrator_bus(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
    write_scenario: Callable[..., Path],
    notifier: Any,
) -> None:
    write_scenario("collections/login.yaml")
    write_job("login", type="scenario", collection="collections/login.yaml")
    orchestrator = _orchestrator(settings, notifier)
    started: list[StepStarted] = []
    completed: list[StepCompleted] = []
    orchestrator.bus.subscribe(started.append, StepStarted)
    orchestrator.bus.subscribe(completed.append, StepCompleted)

    outcome = orchestrator.submit("login").wait(timeout=10)
    orchestrator.shutdown()

    assert outcome is not None and outcome.success
    assert [event.step_name for event in started] == ["Login"]
    assert len(completed) == 1
    assert completed[0].result.extracted == {"RESULT_CODE": "0"}


def test_scenario_execution_without_collection_raises_config_error(
    settings: OrchestratorSettings,
    write_job: Callable[..., Path],
) -> None:
    write_job("plain", arguments={"cmd": "noop"})
    job = JobRepository(settings).resolve("plain")
    state = RunningState(
        job_name="plain",
        started_at=datetime.now(timezone.utc),
        invocation_id="inv-1",
        origin=Origin.ADHOC,
    )

    with pytest.raises(ConfigError) as excinfo:
        JobExecutor(settings).run_scenario(job, state)

    assert excinfo.value.reason == "collection_not_found"
