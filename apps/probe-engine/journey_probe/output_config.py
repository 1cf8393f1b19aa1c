"""Console and log output format selection shared by the CLIs."""

import os
from enum import Enum
from typing import Literal, Mapping, Optional


class OutputFormat(str, Enum):
    """Console output formats accepted by every app's ``--output-format``."""

    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"

_LOG_FORMATS: dict[OutputFormat, LogFormat] = {
    OutputFormat.JSON: "json",
    OutputFormat.PLAIN: "plain",
}


def _parse(value: Optional[str]) -> Optional[OutputFormat]:
    if not value:
        return None
    try:
        return OutputFormat(value.strip().lower())
    except ValueError:
        return None


def get_output_format(cli_override: Optional[str] = None, environ: Mapping[str, str] = os.environ) -> OutputFormat:
    """
    Get the output format with priority: CLI option > ``CONSOLE_OUTPUT_FORMAT`` > auto.

    Args:
        cli_override: Value of ``--output-format``; wins when it names a known format
        environ: Environment to read the variable from

    Returns:
        OutputFormat enum value; unknown values fall through to the next source
    """
    # Priority 1: CLI option
    selected = _parse(cli_override)
    if selected is not None:
        return selected

    # Priority 2: Environment variable
    selected = _parse(environ.get(ENV_VAR_NAME))
    if selected is not None:
        return selected

    # Priority 3: Default, resolved against the terminal at render time
    return OutputFormat.AUTO


def log_format_for(output_format: OutputFormat) -> LogFormat:
    """structlog renderer matching a console format; rich and auto share the colored one."""

    return _LOG_FORMATS.get(output_format, "console")
