"""Runs the target executable for one scenario step."""

from __future__ import annotations

import codecs
import os
import re
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import structlog

from .errors import (
    ProcessCancelledError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from .models import Response

LOGGER = structlog.get_logger("scenario_engine")

DEFAULT_TIMEOUT = 30.0
DEFAULT_ENCODING = "cp949"
_RESPONSE_LINE = re.compile(r"^(\w+)=(.*)$")
_READ_CHUNK = 4096
_READER_GRACE = 1.0

ChunkCallback = Callable[[str], None]


def serialize_arguments(
    arguments: Mapping[str, Any],
    substitute: Optional[Callable[[Any], Any]] = None,
) -> str:
    """Join `key=value` pairs with `;` in declaration order."""

    pairs = []
    for key, value in arguments.items():
        if substitute is not None:
            value = substitute(value)
        pairs.append(f"{key}={value}")
    return ";".join(pairs)


def parse_response_fields(stdout: str) -> dict[str, str]:
    """Collect `KEY=value` lines keyed by lowercase key. Later lines win."""

    fields: dict[str, str] = {}
    for line in stdout.splitlines():
        match = _RESPONSE_LINE.match(line)
        if match:
            fields[match.group(1).lower()] = match.group(2)
    return fields


def resolve_encoding(encoding: Optional[str] = None) -> str:
    """Legacy code pages only apply on Windows; other platforms emit UTF-8."""

    if sys.platform == "win32":
        return encoding or DEFAULT_ENCODING
    return "utf-8"


class _StreamReader(threading.Thread):
    def __init__(self, stream: Any, encoding: str, callback: Optional[ChunkCallback]) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._encoding = encoding
        self._callback = callback
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def run(self) -> None:
        try:
            for chunk in iter(lambda: self._stream.read1(_READ_CHUNK), b""):
                self._emit(self._decode(chunk))
            self._emit(self._decode(b"", final=True))
        finally:
            self._stream.close()

    def _decode(self, chunk: bytes, final: bool = False) -> str:
        try:
            return self._decoder.decode(chunk, final=final)
        except UnicodeDecodeError:
            pending, _ = self._decoder.getstate()
            self._decoder.reset()
            return (pending + chunk).decode("utf-8", errors="replace")

    def _emit(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        if self._callback is not None:
            self._callback(text)


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill the child and, on POSIX, every process left in its session."""
    if sys.platform == "win32":
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


class ProcessAdapter:
    """Spawns the executable with one serialized argument and captures its output."""

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        encoding: Optional[str] = None,
        poll_interval: float = 0.05,
    ) -> None:
        env_timeout = os.getenv("SCENARIO_TIMEOUT", str(DEFAULT_TIMEOUT))
        self.timeout = timeout or float(env_timeout)
        self.encoding = resolve_encoding(encoding or os.getenv("SCENARIO_ENCODING", DEFAULT_ENCODING))
        self._poll_interval = poll_interval

    def execute(
        self,
        executable: Path | str,
        serialized_args: str,
        *,
        timeout: Optional[float] = None,
        step_name: Optional[str] = None,
        on_stdout: Optional[ChunkCallback] = None,
        on_stderr: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> Response:
        limit = timeout or self.timeout
        command_string = f"{executable} {serialized_args}"
        logger = LOGGER.bind(step=step_name, executable=str(executable))
        logger.debug("process_spawning", arguments=serialized_args, timeout=limit)

        start = time.perf_counter()
        try:
            proc = subprocess.Popen(
                [str(executable), serialized_args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=str(cwd) if cwd else None,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start {executable}: {exc}") from exc

        readers = [
            _StreamReader(proc.stdout, self.encoding, on_stdout),
            _StreamReader(proc.stderr, self.encoding, on_stderr),
        ]
        for reader in readers:
            reader.start()

        stopped: Optional[str] = None
        deadline = time.monotonic() + limit
        try:
            while True:
                try:
                    proc.wait(timeout=self._poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if cancel_event is not None and cancel_event.is_set():
                        stopped = "cancelled"
                    elif time.monotonic() >= deadline:
                        stopped = "timeout"
                    if stopped:
                        _kill_process_tree(proc)
                        proc.wait()
                        break
        finally:
            # Descendants may still hold the pipes after the child exits.
            for reader in readers:
                reader.join(max(deadline - time.monotonic(), 0) + _READER_GRACE)
            if any(reader.is_alive() for reader in readers):
                logger.warning("process_pipes_held_open")
                _kill_process_tree(proc)
                for reader in readers:
                    reader.join(_READER_GRACE)

        duration_ms = round((time.perf_counter() - start) * 1000, 3)
        stdout, stderr = readers[0].text, readers[1].text
        response = Response(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            parsed_fields=parse_response_fields(stdout),
            command_string=command_string,
        )

        if stopped == "timeout":
            logger.warning("process_timeout", timeout=limit)
            raise ProcessTimeoutError(f"Command timeout after {int(limit * 1000)}ms", response)
        if stopped == "cancelled":
            logger.warning("process_cancelled")
            raise ProcessCancelledError("Command cancelled", response)
        logger.debug("process_exited", exit_code=proc.returncode, duration_ms=duration_ms)
        if proc.returncode != 0:
            raise ProcessExitError(f"Process exited with code {proc.returncode}", response)
        return response
