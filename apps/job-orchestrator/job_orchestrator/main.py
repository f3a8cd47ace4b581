"""CLI entrypoint for the job orchestrator."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    engine_root = current_file.parents[2] / "scenario-engine"
    for candidate in (package_root, engine_root):
        if str(candidate) not in sys.path:
            sys.path.insert(0, str(candidate))
    __package__ = "job_orchestrator"

from scenario_engine.errors import ConfigError
from scenario_engine.logging_utils import configure_logging
from scenario_engine.output_config import OutputFormat, get_log_format, get_output_format

from .config import OrchestratorSettings, load_settings
from .cron import CronScheduler, load_schedules
from .models import JobOutcome, SubmitResult
from .orchestrator import JobOrchestrator

app = typer.Typer(help="Run binary and scenario jobs with single-flight admission.")

REJECTED_EXIT_CODE = 2


def _settings(settings_path: Optional[Path], root: Optional[Path]) -> OrchestratorSettings:
    try:
        return load_settings(settings_path, root)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _print_outcome(outcome: JobOutcome, output_format: OutputFormat) -> None:
    if output_format == OutputFormat.JSON:
        typer.echo(outcome.model_dump_json())
        return
    console = Console(no_color=output_format == OutputFormat.PLAIN, highlight=False)
    status = "[green]PASS[/green]" if outcome.success else "[red]FAIL[/red]"
    console.print(f"{status} {outcome.job_name} ({outcome.summary}) in {outcome.duration_ms / 1000:.2f}s")
    if outcome.batch is not None:
        for item in outcome.batch.files:
            mark = "[green]✓[/green]" if item.success else "[red]✗[/red]"
            detail = f" - {item.error}" if item.error else f" {item.passed}/{item.total}"
            console.print(f"  {mark} {item.file}{detail}")
    if outcome.error:
        console.print(f"[red]{outcome.error}[/red]")
    if outcome.report_dir:
        console.print(f"Reports: {outcome.report_dir}")


def _finish(result: SubmitResult, job: str, output_format: OutputFormat) -> None:
    if not result.started:
        typer.echo(f"Job '{job}' rejected: {result.reason}", err=True)
        raise typer.Exit(code=REJECTED_EXIT_CODE)
    outcome = result.wait()
    if outcome is None:
        raise RuntimeError(f"Job '{job}' was admitted without a result future")
    _print_outcome(outcome, output_format)
    if not outcome.success:
        raise typer.Exit(code=1)


@app.command()
def run(
    job: str = typer.Argument(..., help="Job name, looked up in the jobs directory."),
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Settings YAML/JSON file."),
    root: Optional[Path] = typer.Option(None, help="Project root for relative paths (default: cwd)."),
    output_format: Optional[str] = typer.Option(None, "--output-format", help="auto, rich, plain or json."),
    log_level: str = typer.Option("warning", help="Log level for structured logs."),
) -> None:
    """Submit one job and wait for its outcome."""

    configure_logging(log_level, get_log_format(output_format), logger_name="job_orchestrator")
    orchestrator = JobOrchestrator(_settings(settings_path, root))
    try:
        _finish(orchestrator.submit(job), job, get_output_format(output_format))
    finally:
        orchestrator.shutdown()


@app.command()
def batch(
    job: str = typer.Argument(..., help="Job whose binary runs every scenario file."),
    directory: Optional[Path] = typer.Option(
        None,
        file_okay=False,
        help="Scenario directory (default: the job's collection).",
    ),
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Settings YAML/JSON file."),
    root: Optional[Path] = typer.Option(None, help="Project root for relative paths (default: cwd)."),
    output_format: Optional[str] = typer.Option(None, "--output-format", help="auto, rich, plain or json."),
    log_level: str = typer.Option("warning", help="Log level for structured logs."),
) -> None:
    """Run a directory of scenario files as one batch invocation."""

    configure_logging(log_level, get_log_format(output_format), logger_name="job_orchestrator")
    orchestrator = JobOrchestrator(_settings(settings_path, root))
    try:
        _finish(orchestrator.run_batch(job, directory), job, get_output_format(output_format))
    finally:
        orchestrator.shutdown()


@app.command()
def serve(
    settings_path: Optional[Path] = typer.Option(None, "--settings", help="Settings YAML/JSON file."),
    root: Optional[Path] = typer.Option(None, help="Project root for relative paths (default: cwd)."),
    duration: Optional[float] = typer.Option(
        None,
        min=0,
        help="Stop after this many seconds (default: run until interrupted).",
    ),
    log_level: str = typer.Option("info", help="Log level for structured logs."),
    output_format: Optional[str] = typer.Option(None, "--output-format", help="auto, rich, plain or json."),
) -> None:
    """Start the schedule queue worker and the cron scheduler."""

    configure_logging(log_level, get_log_format(output_format), logger_name="job_orchestrator")
    settings = _settings(settings_path, root)
    try:
        schedules = load_schedules(settings.resolve(settings.schedules_path))
        orchestrator = JobOrchestrator(settings)
        scheduler = CronScheduler(schedules, orchestrator.enqueue, timezone=settings.timezone)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc

    orchestrator.start()
    scheduler.start()
    stop = threading.Event()
    try:
        stop.wait(timeout=duration)
    except KeyboardInterrupt:
        typer.echo("Interrupted, shutting down", err=True)
    finally:
        scheduler.stop()
        orchestrator.shutdown(cancel=True)
    if get_output_format(output_format) == OutputFormat.JSON:
        typer.echo(json.dumps(orchestrator.get_status()))


def main() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
