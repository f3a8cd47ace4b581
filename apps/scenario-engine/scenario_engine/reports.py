"""Run artifacts: JSON summary, per-step event log, JUnit XML and a text report."""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import ScenarioResult, StepResult


@dataclass
class RunArtifacts:
    run_dir: Path
    events_file: Path
    summary_file: Path
    junit_file: Path
    text_file: Path


def prepare_artifacts(run_dir: Path) -> RunArtifacts:
    run_dir.mkdir(parents=True, exist_ok=True)
    return RunArtifacts(
        run_dir=run_dir,
        events_file=run_dir / "events.jsonl",
        summary_file=run_dir / "summary.json",
        junit_file=run_dir / "results.junit.xml",
        text_file=run_dir / "report.txt",
    )


def write_reports(result: ScenarioResult, run_dir: Path) -> RunArtifacts:
    """Write every artifact for `result` into `run_dir`."""

    artifacts = prepare_artifacts(run_dir)
    artifacts.summary_file.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    with artifacts.events_file.open("w", encoding="utf-8") as handle:
        for step in result.steps:
            handle.write(json.dumps(_serialize_step_result(step)) + "\n")
    write_junit(result, artifacts.junit_file)
    artifacts.text_file.write_text(generate_text_report(result), encoding="utf-8")
    return artifacts


def write_junit(result: ScenarioResult, junit_file: Path) -> None:
    failures = [step for step in result.steps if not step.passed and step.error is None]
    errors = [step for step in result.steps if step.error is not None]
    suite = ET.Element(
        "testsuite",
        attrib={
            "name": result.info.name,
            "tests": str(len(result.steps)),
            "failures": str(len(failures)),
            "errors": str(len(errors)),
            "time": str(result.summary.duration_ms / 1000),
        },
    )
    for step in result.steps:
        case = ET.SubElement(
            suite,
            "testcase",
            attrib={
                "classname": result.info.name,
                "name": step.name,
                "time": str(step.duration_ms / 1000),
            },
        )
        if step.error is not None:
            error = ET.SubElement(
                case,
                "error",
                attrib={"message": step.error, "type": step.error_type or "ProcessError"},
            )
            error.text = step.response.stderr if step.response else step.error
        elif not step.passed:
            failed = [item for item in step.assertions if not item.passed]
            failure = ET.SubElement(
                case,
                "failure",
                attrib={"message": ", ".join(item.name for item in failed) or "Step failed"},
            )
            failure.text = "\n".join(
                f"{item.assertion}: expected {item.expected}, actual {item.actual}" for item in failed
            )
    tree = ET.ElementTree(suite)
    tree.write(junit_file, encoding="utf-8", xml_declaration=True)


def generate_text_report(result: ScenarioResult) -> str:
    summary = result.summary
    lines = [
        "Scenario Execution Report",
        "=========================",
        f"Scenario: {result.info.name}",
        f"Description: {result.info.description or 'No description'}",
        f"Start Time: {result.started_at.isoformat()}",
        f"End Time: {result.finished_at.isoformat()}",
        f"Duration: {summary.duration_ms:.0f}ms",
        f"Result: {'PASS' if result.success else 'FAIL'}",
    ]
    if result.cancelled:
        lines.append("Cancelled: yes")
    lines += [
        "",
        "Summary:",
        f"  Total Steps: {summary.total}",
        f"  Passed: {summary.passed}",
        f"  Failed: {summary.failed}",
        f"  Success Rate: {summary.success_rate:.1f}%",
        "",
        "Step Details:",
        "=============",
    ]
    for step in result.steps:
        lines.append(f"{step.step_index}. {step.name}")
        lines.append(f"   Command: {step.command or step.command_string}")
        lines.append(f"   Status: {'PASS' if step.passed else 'FAIL'}")
        if step.response is not None:
            lines.append(f"   Duration: {step.response.duration_ms:.0f}ms")
            lines.append(f"   Exit Code: {step.response.exit_code}")
            for key, value in step.response.parsed_fields.items():
                lines.append(f"   {key}: {value}")
        if step.assertions:
            lines.append("   Tests:")
            for item in step.assertions:
                lines.append(f"     - {item.name}: {'PASS' if item.passed else 'FAIL'}")
                if not item.passed:
                    lines.append(f"       Error: Expected: {item.expected}, Actual: {item.actual}")
                    if item.diagnostic:
                        lines.append(f"       Detail: {item.diagnostic}")
                if item.warning:
                    lines.append(f"       Warning: {item.warning}")
        if step.extracted:
            lines.append("   Extracted Variables:")
            for key, value in step.extracted.items():
                lines.append(f"     {key}: {value}")
        if step.error:
            lines.append(f"   Error: {step.error}")
        lines.append("")
    return "\n".join(lines)


def _serialize_step_result(result: StepResult) -> dict[str, Any]:
    return {
        "step_index": result.step_index,
        "step_name": result.name,
        "status": "passed" if result.passed else "failed",
        "started_at": result.started_at.isoformat(),
        "finished_at": result.finished_at.isoformat(),
        "duration_ms": result.duration_ms,
        "command_string": result.command_string,
        "exit_code": result.response.exit_code if result.response else None,
        "extracted": result.extracted,
        "assertions": [
            {"name": item.name, "assertion": item.assertion, "passed": item.passed} for item in result.assertions
        ],
        "error": result.error,
    }
