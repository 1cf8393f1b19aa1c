"""Structured logging setup for the probe engine and its companion apps."""

from __future__ import annotations

import logging
import sys
from io import StringIO
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

# Correlation context is printed first, in this order, ahead of other fields.
CONTEXT_KEYS = ("run_id", "scenario_id", "step_id", "correlation_key", "contact_id")
OUTCOME_KEYS = {"status", "kind", "verdict", "failure"}
OUTCOME_STYLES = {
    "completed": "bold green",
    "pass": "green",
    "failed": "bold red",
    "mismatch": "red",
    "aborted": "magenta",
}
EVENT_WIDTH = 28


class ProbeConsoleRenderer:
    """Single-line colored renderer; keeps run/step context aligned at the front.

    ``None`` values are dropped and outcome fields such as ``status`` or
    ``verdict`` are colored by their value. Tracebacks follow on their own lines.
    """

    def __init__(self, width: int = 200) -> None:
        self._width = width

    def __call__(self, logger: Any, name: str, event_dict: dict[str, Any]) -> str:
        """Render one log entry as an ANSI-styled line."""
        # Pull out the fixed columns
        timestamp = str(event_dict.pop("timestamp", ""))
        level = str(event_dict.pop("level", "info"))
        event = str(event_dict.pop("event", ""))
        exception = event_dict.pop("exception", None)
        event_dict.pop("color_message", None)

        # Time of day only, dim
        line = Text(timestamp[11:23] if len(timestamp) >= 23 else timestamp, style="dim white")
        line.append(f" {level.upper():<7} ", style=LEVEL_STYLES.get(level, "white"))
        line.append(event.ljust(EVENT_WIDTH) if event_dict else event, style="bold white")

        # Context keys first, the rest alphabetically
        ordered = [key for key in CONTEXT_KEYS if key in event_dict]
        ordered += sorted(key for key in event_dict if key not in CONTEXT_KEYS)
        for key in ordered:
            value = event_dict[key]
            if value is None:
                continue
            line.append(f" {key}=", style="dim white")
            rendered = str(value)
            style = OUTCOME_STYLES.get(rendered, "bright_cyan") if key in OUTCOME_KEYS else "bright_cyan"
            line.append(rendered, style=style)

        # Let rich emit the ANSI codes into a string
        buffer = StringIO()
        Console(file=buffer, force_terminal=True, width=self._width, legacy_windows=False).print(line, end="")
        if exception:
            buffer.write(f"\n{exception}")
        return buffer.getvalue()


def _renderer(log_format: LogFormat) -> Any:
    """Final structlog processor for a log format."""
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    # Plain text without colors for CI and piped output
    if log_format == "plain":
        return structlog.dev.ConsoleRenderer(colors=False)
    # console
    return ProbeConsoleRenderer()


def configure_logging(
    log_level: str = "INFO",
    log_format: LogFormat = "console",
    logger_name: str = "journey_probe",
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog for the process and return the app's root logger.

    Args:
        log_level: Level name; unknown names fall back to INFO
        log_format: One of ``json``, ``console`` or ``plain``
        logger_name: Name bound to the returned logger

    Returns:
        A structlog bound logger writing to stderr
    """

    # stdlib logging goes to stderr; stdout carries run reports
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s", force=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(logger_name)
