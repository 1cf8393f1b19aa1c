"""Human-facing output for `journey-probe run`: live status, step table, health summary."""

import os
import sys
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.status import Status
from rich.table import Table
from rich.text import Text

from .models import ProbeRun, RunStatus
from .output_config import OutputFormat
from .reporter import HealthSnapshot

CI_MARKERS = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_HOME", "BUILDKITE", "TEAMCITY_VERSION")

STEP_STYLES = {"passed": "green", "failed": "red", "running": "yellow", "pending": "dim"}


def wants_rich(output_format: OutputFormat) -> bool:
    """Rich output only for an interactive terminal outside CI unless forced."""

    if output_format is OutputFormat.RICH:
        return True
    if output_format is not OutputFormat.AUTO:
        return False
    return sys.stdout.isatty() and not any(marker in os.environ for marker in CI_MARKERS)


def _latency(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.0f}ms"


def _step_rows(run: ProbeRun) -> list[tuple[str, str, int, int, str, str]]:
    latencies = {record.step_id: record.duration_ms for record in run.latencies}
    rows = []
    for timing in run.steps:
        detail = ""
        if run.failure and run.failure.step_id == timing.step_id:
            detail = f"{run.failure.kind.value}: {run.failure.detail or ''}".rstrip(": ")
        rows.append(
            (
                timing.step_id,
                timing.status,
                timing.attempts,
                timing.dispatch_attempts,
                _latency(latencies.get(timing.step_id)),
                detail,
            )
        )
    return rows


class ConsoleReporter:
    """Renders probe runs either with rich (spinner, tables, panels) or as plain lines.

    ``json`` output prints nothing here; the CLI emits one JSON document per run.
    """

    def __init__(self, output_format: OutputFormat = OutputFormat.AUTO, console: Optional[Console] = None):
        self.output_format = output_format
        self.use_rich = wants_rich(output_format)
        self.console = console or (Console() if self.use_rich else None)
        self._status: Optional[Status] = None
        self._scenario_id = ""

    @property
    def quiet(self) -> bool:
        return self.output_format is OutputFormat.JSON

    def begin(self, scenario_id: str, run_id: str, total_steps: int) -> None:
        self._scenario_id = scenario_id
        if self.use_rich:
            self._status = self.console.status(f"[cyan]{scenario_id}[/] ({run_id}) starting, {total_steps} steps")
            self._status.start()
        elif not self.quiet:
            print(f"== {scenario_id} run={run_id} steps={total_steps}")

    def observe(self, event: dict[str, Any]) -> None:
        """Run observer hook; keeps the spinner on the step currently in flight."""

        if self._status is None or event.get("event") != "transition":
            return
        step = event.get("step_id") or "-"
        self._status.update(f"[cyan]{self._scenario_id}[/] {step}: {event.get('status')}")

    def finish(self, run: ProbeRun) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None
        rows = _step_rows(run)
        if self.use_rich:
            self._render_rich(run, rows)
        elif not self.quiet:
            for step_id, status, attempts, dispatches, latency, detail in rows:
                line = f"[{step_id}] {status.upper()} latency={latency} attempts={attempts} dispatches={dispatches}"
                print(f"{line} {detail}".rstrip())
            print(f"== {run.scenario_id} {run.status.value} in {_latency(run.duration_ms)}")

    def _render_rich(self, run: ProbeRun, rows: list[tuple[str, str, int, int, str, str]]) -> None:
        table = Table(header_style="bold cyan", expand=False)
        for column, justify in (("Step", "left"), ("Result", "left"), ("Attempts", "right"),
                                ("Dispatches", "right"), ("Latency", "right"), ("Detail", "left")):
            table.add_column(column, justify=justify)
        for step_id, status, attempts, dispatches, latency, detail in rows:
            table.add_row(
                step_id,
                Text(status, style=STEP_STYLES.get(status, "white")),
                str(attempts),
                str(dispatches),
                latency,
                Text(detail, style="red") if detail else "",
            )
        completed = run.status is RunStatus.COMPLETED
        colour = "green" if completed else ("magenta" if run.status is RunStatus.ABORTED else "red")
        self.console.print(
            Panel(
                table,
                title=Text(f"{run.scenario_id} · {run.status.value}", style=f"bold {colour}"),
                subtitle=f"run {run.run_id} · {_latency(run.duration_ms)}",
                border_style=colour,
            )
        )

    def summary(self, snapshot: HealthSnapshot) -> None:
        """Aggregate health after all runs of the invocation."""

        figures = [
            ("runs", f"{snapshot.runs_completed}/{snapshot.runs_total} completed"),
            ("step p50/p95/p99", " / ".join(_latency(value) for value in (
                snapshot.step_latency_p50_ms, snapshot.step_latency_p95_ms, snapshot.step_latency_p99_ms))),
            ("run p50/p95", " / ".join(_latency(value) for value in (
                snapshot.run_latency_p50_ms, snapshot.run_latency_p95_ms))),
        ]
        if snapshot.parse_failures_total:
            figures.append(("parse failures", str(snapshot.parse_failures_total)))
        if self.use_rich:
            table = Table.grid(padding=(0, 2))
            for label, value in figures:
                table.add_row(Text(label, style="dim"), value)
            self.console.print(table)
        elif not self.quiet:
            print("; ".join(f"{label}: {value}" for label, value in figures))
