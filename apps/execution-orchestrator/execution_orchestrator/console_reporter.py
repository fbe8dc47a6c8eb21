"""Console reporter that adapts run output to the terminal it is writing to."""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeRemainingColumn
from rich.table import Table
from rich.text import Text

ENV_VAR_NAME = "CONSOLE_OUTPUT_FORMAT"
_CI_MARKERS = ("CI", "JENKINS_HOME", "GITLAB_CI", "TRAVIS", "GITHUB_ACTIONS")
_STYLES = {"pass": "green", "fail": "red", "error": "yellow", "succeeded": "green"}


class OutputFormat(str, Enum):
    AUTO = "auto"
    RICH = "rich"
    PLAIN = "plain"
    JSON = "json"


def get_output_format(cli_override: str | None = None) -> OutputFormat:
    """Resolve the output format: CLI option, then ``CONSOLE_OUTPUT_FORMAT``, then auto."""

    for candidate in (cli_override, os.environ.get(ENV_VAR_NAME)):
        if candidate:
            try:
                return OutputFormat(candidate.lower())
            except ValueError:
                continue
    return OutputFormat.AUTO


class ConsoleReporter:
    """Progress bar and results table on terminals, plain lines on CI and pipes, JSON on request."""

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO, console: Optional[Console] = None) -> None:
        self.output_format = output_format
        self.use_rich = self._wants_rich(output_format)
        self.console = console or Console()
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None
        self._live: Optional[Live] = None
        self._table: Optional[Table] = None

    @staticmethod
    def _wants_rich(output_format: OutputFormat) -> bool:
        if output_format is OutputFormat.RICH:
            return True
        if output_format is not OutputFormat.AUTO:
            return False
        is_ci = any(marker in os.environ for marker in _CI_MARKERS)
        return sys.stdout.isatty() and not is_ci

    def start(self, total: int, title: str) -> None:
        if self.output_format is OutputFormat.JSON:
            self._emit({"event": "run_started", "title": title, "total": total})
            return
        if not self.use_rich:
            print(f"Running {title}")
            print(f"Total scenarios: {total}")
            print("-" * 80)
            return
        self._table = Table(show_header=True, header_style="bold cyan")
        self._table.add_column("Scenario", style="dim", width=28)
        self._table.add_column("Operation", width=36)
        self._table.add_column("Outcome", width=12)
        self._table.add_column("Duration", justify="right", width=10)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
            console=self.console,
        )
        self._task = self._progress.add_task(f"[cyan]Running {title}", total=total)
        self._live = Live(Group(self._progress, self._table), console=self.console, refresh_per_second=4)
        self._live.start()

    def report(
        self,
        scenario_id: str,
        operation: str,
        outcome: str,
        duration_ms: float,
        detail: Optional[str] = None,
    ) -> None:
        if self.output_format is OutputFormat.JSON:
            self._emit(
                {
                    "event": "scenario_done",
                    "scenario_id": scenario_id,
                    "operation": operation,
                    "outcome": outcome,
                    "duration_ms": round(duration_ms, 3),
                    "detail": detail,
                }
            )
            return
        if not self.use_rich or self._table is None or self._progress is None or self._task is None:
            print(f"[{outcome.upper():>9}] {operation} ({scenario_id}) {duration_ms:.0f}ms")
            if detail:
                print(f"  {detail}")
            return
        style = _STYLES.get(outcome, "red")
        self._table.add_row(scenario_id, operation, Text(outcome.upper(), style=style), f"{duration_ms:.0f}ms")
        if detail:
            self._table.add_row("", Text(detail, style=style), "", "")
        self._progress.update(self._task, advance=1)

    def finish(self, counts: dict[str, int], status: str, duration_ms: float) -> None:
        if self.output_format is OutputFormat.JSON:
            self._emit({"event": "run_finished", "status": status, "counts": counts, "duration_ms": round(duration_ms, 3)})
            return
        line = " | ".join(f"{key.title()}: {value}" for key, value in counts.items())
        healthy = status in {"passed", "completed"}
        if not self.use_rich:
            print("-" * 80)
            print(f"{line} | Duration: {duration_ms:.0f}ms")
            print(f"RUN {status.upper()}")
            return
        if self._live is not None:
            self._live.stop()
        summary = Text()
        for key, value in counts.items():
            summary.append(f"{key.title()}: {value}  ", style="bold")
        summary.append(f"Duration: {duration_ms:.0f}ms", style="bold cyan")
        self.console.print()
        self.console.print(
            Panel(
                summary,
                title=Text(f"RUN {status.upper()}", style="bold green" if healthy else "bold red"),
                border_style="green" if healthy else "red",
            )
        )

    def print_error(self, message: str) -> None:
        if self.use_rich:
            self.console.print(f"[bold red]Error:[/] {message}")
        else:
            print(f"Error: {message}", file=sys.stderr)

    @staticmethod
    def _emit(payload: dict[str, Any]) -> None:
        print(json.dumps(payload, ensure_ascii=False))
