"""Directory batches: many scenario files under one job invocation."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

import structlog

from scenario_engine.errors import ConfigError
from scenario_engine.loader import discover_scenarios
from scenario_engine.models import ScenarioResult

from .models import BatchFileResult, BatchResult

LOGGER = structlog.get_logger("job_orchestrator")

ScenarioCallable = Callable[[Path, Path], ScenarioResult]


class BatchRunner:
    """Runs every scenario file of a directory, isolating per-file failures."""

    def __init__(self, run_file: ScenarioCallable) -> None:
        self._run_file = run_file

    def run(
        self,
        job_name: str,
        directory: Path,
        report_root: Path,
        *,
        exclude_patterns: Optional[list[str]] = None,
        max_parallel: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        logger = LOGGER.bind(job=job_name, directory=str(directory))
        files = discover_scenarios(directory, exclude_patterns)
        logger.info("batch_started", files=len(files), max_parallel=max_parallel)

        def run_one(path: Path) -> BatchFileResult:
            if cancel_event is not None and cancel_event.is_set():
                return BatchFileResult(file=path.name, success=False, error="cancelled")
            return self._run_one(path, report_root / path.stem, logger)

        if max_parallel > 1 and len(files) > 1:
            with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix=f"batch-{job_name}") as pool:
                results = list(pool.map(run_one, files))
        else:
            results = [run_one(path) for path in files]

        batch = BatchResult(
            job_name=job_name,
            directory=str(directory),
            files=results,
            success=all(item.success for item in results),
        )
        logger.info(
            "batch_finished",
            total=len(results),
            passed=batch.passed_files,
            failed=batch.failed_files,
        )
        return batch

    def _run_one(self, path: Path, report_dir: Path, logger: structlog.stdlib.BoundLogger) -> BatchFileResult:
        timer = time.perf_counter()
        try:
            result = self._run_file(path, report_dir)
        except ConfigError as exc:
            logger.error("batch_file_invalid", file=path.name, error=str(exc))
            return BatchFileResult(file=path.name, success=False, error=str(exc))
        except Exception as exc:
            logger.exception("batch_file_crashed", file=path.name)
            return BatchFileResult(
                file=path.name,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                duration_ms=round((time.perf_counter() - timer) * 1000, 3),
            )
        summary = result.summary
        logger.info("batch_file_finished", file=path.name, success=result.success)
        return BatchFileResult(
            file=path.name,
            success=result.success,
            total=summary.total,
            passed=summary.passed,
            failed=summary.failed,
            duration_ms=summary.duration_ms,
            report_dir=str(report_dir),
        )
