"""Console progress for scenario runs, driven by runner events."""

import json
import os
import sys
from typing import Callable, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table
from rich.text import Text

from .events import (
    EventBus,
    ScenarioFinished,
    ScenarioStarted,
    StepCompleted,
    StepFailed,
    StepStarted,
)
from .models import ScenarioResult, StepResult
from .output_config import OutputFormat

CI_MARKERS = ("CI", "JENKINS_HOME", "GITLAB_CI", "GITHUB_ACTIONS", "TRAVIS")


def wants_rich(output_format: OutputFormat) -> bool:
    """Rich output only for interactive terminals outside CI unless forced."""
    if output_format == OutputFormat.RICH:
        return True
    if output_format in (OutputFormat.PLAIN, OutputFormat.JSON):
        return False
    return sys.stdout.isatty() and not any(marker in os.environ for marker in CI_MARKERS)


class ConsoleReporter:
    """
    Renders scenario progress in one of three styles.

    - rich: live progress bar plus a step table (exit code, extracted values, verdict)
    - plain: one line per step, suited to CI logs and redirected output
    - json: one JSON object per lifecycle event
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO):
        self.output_format = output_format
        self.use_rich = wants_rich(output_format)
        self.console: Optional[Console] = Console() if self.use_rich else None
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._live: Optional[Live] = None
        self._table: Optional[Table] = None

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """Subscribe to runner events; returns a callable that detaches again."""
        if self.output_format == OutputFormat.JSON:
            subscriptions = [bus.subscribe(self._emit_event)]
        else:
            subscriptions = [
                bus.subscribe(self._scenario_started, ScenarioStarted),
                bus.subscribe(self._step_started, StepStarted),
                bus.subscribe(self._step_finished, StepCompleted),
                bus.subscribe(self._step_finished, StepFailed),
                bus.subscribe(self._scenario_finished, ScenarioFinished),
            ]

        def detach() -> None:
            for unsubscribe in subscriptions:
                unsubscribe()

        return detach

    def _emit_event(self, event: object) -> None:
        if isinstance(event, ScenarioStarted):
            payload = {"total_steps": event.total_steps, "source": event.source}
        elif isinstance(event, StepStarted):
            payload = {"step": event.step_index, "name": event.step_name, "command": event.command_string}
        elif isinstance(event, (StepCompleted, StepFailed)):
            result = event.result
            payload = {
                "step": result.step_index,
                "name": result.name,
                "passed": result.passed,
                "exit_code": result.response.exit_code if result.response else None,
                "extracted": result.extracted,
                "duration_ms": result.duration_ms,
                "error": failure_reason(result),
            }
        elif isinstance(event, ScenarioFinished):
            summary = event.result.summary
            payload = {
                "success": event.result.success,
                "cancelled": event.result.cancelled,
                "total": summary.total,
                "passed": summary.passed,
                "failed": summary.failed,
                "duration_ms": summary.duration_ms,
            }
        else:
            return
        name = type(event).__name__
        print(json.dumps({"event": name, "scenario": getattr(event, "scenario", None), **payload}), flush=True)

    def _scenario_started(self, event: ScenarioStarted) -> None:
        if not self.use_rich:
            print(f"Scenario: {event.scenario} ({event.total_steps} steps)")
            if event.source:
                print(f"Source: {event.source}")
            print("=" * 72)
            return

        self._table = Table(show_header=True, header_style="bold cyan", expand=False)
        self._table.add_column("#", style="dim", justify="right", width=4)
        self._table.add_column("Step", width=36)
        self._table.add_column("Exit", justify="right", width=5)
        self._table.add_column("Extracted", width=30)
        self._table.add_column("Result", width=8)
        self._table.add_column("Time", justify="right", width=9)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=self.console,
        )
        self._task = self._progress.add_task(event.scenario, total=event.total_steps or None)
        self._live = Live(Group(self._progress, self._table), console=self.console, refresh_per_second=8)
        self._live.start()

    def _step_started(self, event: StepStarted) -> None:
        if self.use_rich and self._progress is not None and self._task is not None:
            self._progress.update(self._task, description=f"{event.scenario}: {event.step_name}")
        elif not self.use_rich:
            print(f"[{event.step_index:>2}] {event.step_name}", end=" ", flush=True)

    def _step_finished(self, event: StepCompleted | StepFailed) -> None:
        result = event.result
        reason = failure_reason(result)
        exit_code = "-" if result.response is None else str(result.response.exit_code)
        if not self.use_rich:
            verdict = "PASS" if result.passed else "FAIL"
            print(f"{verdict} exit={exit_code} {result.duration_ms:.0f}ms")
            for key, value in result.extracted.items():
                print(f"     {key} = {value}")
            if reason:
                print(f"     ! {reason}")
            return

        if self._table is None or self._progress is None:
            return
        extracted = ", ".join(f"{key}={value}" for key, value in result.extracted.items()) or "-"
        verdict = Text("PASS", style="bold green") if result.passed else Text("FAIL", style="bold red")
        self._table.add_row(str(result.step_index), result.name, exit_code, extracted, verdict, f"{result.duration_ms:.0f}ms")
        if reason:
            self._table.add_row("", Text(reason, style="red"), "", "", "", "")
        if self._task is not None:
            self._progress.advance(self._task)

    def _scenario_finished(self, event: ScenarioFinished) -> None:
        result = event.result
        if self._live is not None:
            self._live.stop()
            self._live = None
        if self.use_rich and self.console is not None:
            self.console.print(self._summary_panel(result))
            return
        summary = result.summary
        print("=" * 72)
        state = "CANCELLED" if result.cancelled else ("PASS" if result.success else "FAIL")
        print(
            f"{state}: {summary.passed}/{summary.total} steps passed "
            f"({summary.success_rate:.1f}%) in {summary.duration_ms:.0f}ms"
        )

    @staticmethod
    def _summary_panel(result: ScenarioResult) -> Panel:
        summary = result.summary
        body = Text()
        body.append(f"Steps {summary.total}  ", style="bold")
        body.append(f"passed {summary.passed}  ", style="green")
        body.append(f"failed {summary.failed}  ", style="red" if summary.failed else "green")
        body.append(f"{summary.duration_ms:.0f}ms", style="cyan")
        if result.cancelled:
            title, color = "CANCELLED", "yellow"
        elif result.success:
            title, color = "PASS", "green"
        else:
            title, color = "FAIL", "red"
        return Panel(body, title=Text(f"{result.info.name}: {title}", style=f"bold {color}"), border_style=color)

    def print_error(self, message: str) -> None:
        if self.console is not None:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        if self.console is not None:
            self.console.print(f"[dim]{message}[/]")
        elif self.output_format != OutputFormat.JSON:
            print(message)


def failure_reason(result: StepResult) -> Optional[str]:
    """Process error, or the failed assertions with their diagnostics."""
    if result.error:
        return result.error
    failed = [item for item in result.assertions if not item.passed]
    if not failed:
        return None
    return "; ".join(item.diagnostic or f"{item.name}: expected {item.expected}, actual {item.actual}" for item in failed)
