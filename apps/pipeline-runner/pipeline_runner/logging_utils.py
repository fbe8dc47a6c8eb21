"""structlog setup shared by every pipeline command."""

from __future__ import annotations

import logging
import os
import sys
from io import StringIO
from typing import Any, Literal

import structlog
from rich.console import Console
from rich.text import Text

LogFormat = Literal["json", "console", "plain"]

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"

# Output formats (see execution_orchestrator.console_reporter) mapped onto log formats.
_FROM_OUTPUT_FORMAT: dict[str, LogFormat] = {
    "auto": "console",
    "rich": "console",
    "console": "console",
    "plain": "plain",
    "json": "json",
}

# Context keys promoted into the line prefix, in display order.
SCOPE_KEYS = ("run_id", "spec_id", "operation_id", "scenario_id")


def get_log_format(cli_override: str | None = None) -> LogFormat:
    """CLI option first, then ``CONSOLE_OUTPUT_FORMAT``, then ``console``."""

    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        resolved = _FROM_OUTPUT_FORMAT.get((candidate or "").strip().lower())
        if resolved is not None:
            return resolved
    return "console"


class PipelineEventRenderer:
    """Renders an event as ``time LEVEL [run spec op scenario] event key=value``.

    Scope identifiers bound with ``logger.bind`` are pulled out of the key/value
    tail so a run's lines can be grepped by prefix.
    """

    LEVEL_STYLES = {
        "debug": "dim",
        "info": "green",
        "warning": "yellow",
        "error": "bold red",
        "critical": "bold white on red",
    }

    def __init__(self, width: int = 240) -> None:
        self.width = width

    def __call__(self, logger: Any, name: str, event_dict: dict[str, Any]) -> str:
        level = str(event_dict.pop("level", "info"))
        line = Text()
        line.append(str(event_dict.pop("timestamp", "")), style="dim")
        line.append(f" {level.upper():<7} ", style=self.LEVEL_STYLES.get(level, ""))

        scope = [str(event_dict.pop(key)) for key in SCOPE_KEYS if event_dict.get(key) is not None]
        if scope:
            line.append(f"[{' '.join(scope)}] ", style="magenta")
        line.append(str(event_dict.pop("event", "")), style="bold")

        exception = event_dict.pop("exception", None)
        for key, value in sorted(event_dict.items()):
            line.append(f" {key}=", style="dim")
            line.append(repr(value) if isinstance(value, str) and " " in value else str(value), style="cyan")
        if exception:
            line.append(f"\n{exception}", style="red")

        buffer = StringIO()
        Console(file=buffer, force_terminal=True, width=self.width, legacy_windows=False).print(line, end="")
        return buffer.getvalue()


def configure_logging(log_level: str = "INFO", log_format: LogFormat = "console") -> structlog.stdlib.BoundLogger:
    """Route structlog events through stdlib logging on stderr; stdout is left to the reporters."""

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s", force=True)

    renderers: dict[LogFormat, Any] = {
        "console": PipelineEventRenderer(),
        "plain": structlog.dev.ConsoleRenderer(colors=False),
        "json": structlog.processors.JSONRenderer(sort_keys=True),
    }
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.format_exc_info,
            renderers.get(log_format, renderers["console"]),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("pipeline_runner")
