"""CLI entrypoint for the scenario runner."""

from __future__ import annotations

import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    package_root = current_file.parents[1]
    if str(package_root) not in sys.path:
        sys.path.insert(0, str(package_root))
    __package__ = "scenario_engine"

from .assertions import revalidate
from .console_reporter import ConsoleReporter
from .errors import ConfigError
from .loader import discover_scenarios, load_scenario
from .logging_utils import configure_logging
from .models import Scenario, ScenarioResult, Variable
from .output_config import get_log_format, get_output_format
from .process_adapter import ProcessAdapter
from .reports import write_reports
from .runner import ScenarioRunner

app = typer.Typer(help="Run YAML scenarios against a command-line binary.")

DEFAULT_OUTPUT_DIR = Path("runs")
BINARY_ENV_VAR = "BINARY_PATH"


def _parse_variables(pairs: list[str]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in pairs:
        if "=" not in item:
            raise typer.BadParameter("Variable overrides must be in key=value format")
        key, value = item.split("=", 1)
        key = key.strip()
        if not key:
            raise typer.BadParameter("Variable name cannot be empty")
        result[key] = value
    return result


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9_-]+", "-", value.lower()).strip("-") or "scenario"


def _collect_files(paths: list[Path], exclude: list[str]) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(discover_scenarios(path, exclude))
        else:
            files.append(path)
    return files


def _apply_overrides(scenario: Scenario, overrides: dict[str, str]) -> Scenario:
    if not overrides:
        return scenario
    variables = [item for item in scenario.variables if item.key not in overrides]
    variables.extend(Variable(key=key, value=value) for key, value in overrides.items())
    return scenario.model_copy(update={"variables": variables})


def run_scenario_file(
    path: Path,
    *,
    executable: Path,
    run_dir: Path,
    adapter: ProcessAdapter,
    reporter: Optional[ConsoleReporter] = None,
    overrides: Optional[dict[str, str]] = None,
) -> ScenarioResult:
    """Load, execute, re-validate and report one scenario file."""

    scenario = _apply_overrides(load_scenario(path), overrides or {})
    runner = ScenarioRunner(scenario, executable=executable, adapter=adapter, source=str(path))
    detach = reporter.attach(runner.bus) if reporter else None
    try:
        result = runner.run()
    finally:
        if detach:
            detach()
    result = revalidate(result, scenario)
    write_reports(result, run_dir)
    return result


@app.command()
def run(
    scenario: list[Path] = typer.Option(
        ...,
        "--scenario",
        "-s",
        exists=True,
        readable=True,
        help="Scenario YAML file(s) or directories of scenario files.",
    ),
    binary: Optional[Path] = typer.Option(
        None,
        help=f"Executable under test. Defaults to ${BINARY_ENV_VAR}.",
    ),
    output_dir: Path = typer.Option(
        DEFAULT_OUTPUT_DIR,
        help="Destination root directory for run artifacts.",
    ),
    run_id: Optional[str] = typer.Option(
        None,
        help="Run identifier; defaults to a UTC timestamp.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        help="Per-step timeout in seconds (default: $SCENARIO_TIMEOUT or 30).",
    ),
    encoding: Optional[str] = typer.Option(
        None,
        help="Output code page used on Windows (default: cp949).",
    ),
    exclude: list[str] = typer.Option(
        [],
        "--exclude",
        "-x",
        help="Case-insensitive filename patterns skipped when scanning directories.",
    ),
    var: list[str] = typer.Option(
        [],
        "--var",
        "-v",
        help="Scenario variable overrides as key=value.",
    ),
    output_format: Optional[str] = typer.Option(
        None,
        "--output-format",
        help="Console output: auto, rich, plain or json (default: $CONSOLE_OUTPUT_FORMAT).",
    ),
    log_level: str = typer.Option("warning", help="Log level for structured logs."),
) -> None:
    """Execute scenarios and write summary, event, JUnit and text reports."""

    configure_logging(log_level, get_log_format(output_format))
    overrides = _parse_variables(var)

    executable = binary or (Path(os.environ[BINARY_ENV_VAR]) if os.environ.get(BINARY_ENV_VAR) else None)
    if executable is None:
        raise typer.BadParameter(f"Provide --binary or set ${BINARY_ENV_VAR}")
    if not executable.exists():
        raise typer.BadParameter(f"Binary not found: {executable}")

    try:
        files = _collect_files(scenario, exclude)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if not files:
        raise typer.BadParameter("No scenario files found")

    run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    run_root = output_dir / run_id
    adapter = ProcessAdapter(timeout=timeout, encoding=encoding)
    reporter = ConsoleReporter(output_format=get_output_format(output_format))

    failed = 0
    for path in files:
        run_dir = run_root if len(files) == 1 else run_root / _slug(path.stem)
        try:
            result = run_scenario_file(
                path,
                executable=executable,
                run_dir=run_dir,
                adapter=adapter,
                reporter=reporter,
                overrides=overrides,
            )
        except ConfigError as exc:
            reporter.print_error(str(exc))
            failed += 1
            continue
        if not result.success:
            failed += 1

    reporter.print_info(f"Reports written to {run_root}")
    if failed:
        raise typer.Exit(code=1)


def main() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
