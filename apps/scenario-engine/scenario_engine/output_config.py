"""Console output format resolution shared by both command-line tools."""

import os
from enum import Enum
from typing import Literal, Optional


class OutputFormat(str, Enum):
    """How progress and results are written to the terminal."""
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"

_LOG_FORMATS: dict[OutputFormat, LogFormat] = {
    OutputFormat.AUTO: "console",
    OutputFormat.RICH: "console",
    OutputFormat.PLAIN: "plain",
    OutputFormat.JSON: "json",
}


def _parse(value: Optional[str]) -> Optional[OutputFormat]:
    if not value:
        return None
    try:
        return OutputFormat(value.strip().lower())
    except ValueError:
        return None


def get_output_format(cli_override: Optional[str] = None) -> OutputFormat:
    """Resolve the format from the command line, then the environment, falling back to auto.

    Unrecognised values at either level are ignored rather than rejected.
    """
    return _parse(cli_override) or _parse(os.environ.get(ENV_VAR_NAME)) or OutputFormat.AUTO


def get_log_format(cli_override: Optional[str] = None) -> LogFormat:
    """Pick the structlog renderer that matches the resolved output format."""
    if cli_override and cli_override.strip().lower() == "console":
        return "console"
    return _LOG_FORMATS[get_output_format(cli_override)]
