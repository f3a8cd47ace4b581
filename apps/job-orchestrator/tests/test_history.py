from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from job_orchestrator.history import HistoryStore
from job_orchestrator.models import JobOutcome, Origin, RunMode


def _outcome(index: int) -> JobOutcome:
    now = datetime.now(timezone.utc)
    return JobOutcome(
        job_name=f"job-{index}",
        invocation_id=str(index),
        origin=Origin.ADHOC,
        mode=RunMode.PLAIN,
        success=index % 2 == 0,
        exit_code=0,
        started_at=now,
        finished_at=now,
        duration_ms=1.0,
    )


def test_history_is_trimmed_to_newest_entries(tmp_path: Path) -> None:
    store = HistoryStore(tmp_path / "logs" / "history.jsonl", keep=3)

    for index in range(5):
        store.append(_outcome(index))

    entries = store.read()
    assert [entry["job_name"] for entry in entries] == ["job-2", "job-3", "job-4"]
    assert entries[-1]["origin"] == "adhoc"
    assert len(store.path.read_text(encoding="utf-8").splitlines()) == 3


def test_invalid_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "history.jsonl"
    path.write_text('{"job_name": "old"}\nnot json\n\n', encoding="utf-8")
    store = HistoryStore(path)

    store.append(_outcome(1))

    assert [entry["job_name"] for entry in store.read()] == ["old", "job-1"]


def test_missing_file_reads_empty(tmp_path: Path) -> None:
    assert HistoryStore(tmp_path / "none.jsonl").read() == []
