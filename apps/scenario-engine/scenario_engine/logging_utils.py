"""structlog setup shared by the scenario runner and the job orchestrator.

Log lines always go to stderr so that stdout stays reserved for results.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from rich.console import Console
from rich.text import Text

from .output_config import LogFormat

LEVEL_STYLES = {
    "debug": "dim cyan",
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "critical": "bold white on red",
}
HIDDEN_KEYS = frozenset({"color_message", "stack"})
EVENT_WIDTH = 32


class RichConsoleRenderer:
    """Render an event as `time [level] event key=value ...` with rich markup."""

    def __init__(self, width: int = 200) -> None:
        self._console = Console(force_terminal=True, width=width, legacy_windows=False)

    def _line(self, event_dict: dict[str, Any]) -> Text:
        level = event_dict.pop("level", "info")
        event = str(event_dict.pop("event", ""))
        line = Text.assemble(
            (str(event_dict.pop("timestamp", "")), "dim white"),
            " ",
            (f"[{level:<8}]", LEVEL_STYLES.get(level, "white")),
            " ",
            (event.ljust(EVENT_WIDTH) if event_dict else event, "bold white"),
        )
        exception = event_dict.pop("exception", None)
        pairs = [(key, event_dict[key]) for key in sorted(event_dict) if key not in HIDDEN_KEYS]
        for index, (key, value) in enumerate(pairs):
            if index:
                line.append(" ")
            line.append(f"{key}=", style="dim white")
            line.append(str(value), style="bright_cyan")
        if exception:
            line.append(f"\n{exception}", style="red")
        return line

    def __call__(self, logger: Any, name: str, event_dict: dict[str, Any]) -> str:
        with self._console.capture() as capture:
            self._console.print(self._line(event_dict), end="")
        return capture.get()


def _renderer(log_format: LogFormat) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    if log_format == "plain":
        return structlog.dev.ConsoleRenderer(colors=False)
    return RichConsoleRenderer()


def configure_logging(
    log_level: str,
    log_format: LogFormat = "console",
    logger_name: str = "scenario_engine",
) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging on stderr at the given level."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s", force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(logger_name)
