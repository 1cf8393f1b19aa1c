"""CLI entrypoint for the journey health-check probe."""

from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

import typer

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    apps_dir = current_file.parents[2]
    for candidate in (current_file.parents[1], apps_dir / "webhook-ingress"):
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "journey_probe"

from webhook_ingress.adapter import WebhookAdapter
from webhook_ingress.server import WebhookServer

from .artifacts import RunArtifacts, RunJournal, write_junit, write_summary
from .config import ProbeConfig, load_config, load_scenario
from .console_reporter import ConsoleReporter
from .errors import ConfigError
from .logging_utils import configure_logging
from .machine import RunObserver, new_run_id
from .models import RunStatus, Scenario
from .output_config import OutputFormat, get_output_format, log_format_for
from .service import ProbeService

app = typer.Typer(help="Drive conversational journeys end to end and alert on unhealthy replies.")

DEFAULT_OUTPUT_DIR = Path("artifacts/probe-runs")


def _load_config(path: Optional[Path]) -> ProbeConfig:
    try:
        return load_config(path)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _load_scenarios(config: ProbeConfig, extra: list[Path]) -> list[Scenario]:
    paths = list(extra) or list(config.scenarios)
    scenarios: list[Scenario] = []
    for path in paths:
        try:
            scenarios.append(load_scenario(path, config))
        except ConfigError as exc:
            raise typer.BadParameter(str(exc)) from exc
    return scenarios


def _tee(*observers: RunObserver) -> RunObserver:
    def observe(event: dict[str, Any]) -> None:
        for observer in observers:
            observer(event)

    return observe


def _build_ingress(config: ProbeConfig, service: ProbeService) -> WebhookServer:
    return WebhookServer(
        config.webhook,
        service.handle_inbound,
        adapter=WebhookAdapter(config.layout),
        status_provider=lambda: service.reporter.snapshot().model_dump(mode="json"),
    )


@app.command()
def run(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="Probe configuration YAML/JSON.",
    ),
    scenario: list[Path] = typer.Option(
        [],
        "--scenario",
        "-s",
        exists=True,
        readable=True,
        help="Scenario file(s) to run; defaults to the scenarios listed in the config.",
    ),
    output_dir: Path = typer.Option(
        DEFAULT_OUTPUT_DIR,
        help="Destination root directory for run artifacts.",
    ),
    run_id: Optional[str] = typer.Option(
        None,
        help="Explicit run id (only with a single scenario).",
    ),
    wait_timeout: Optional[float] = typer.Option(
        None,
        help="Give up waiting for a run after this many seconds and cancel it.",
    ),
    output_format: Optional[str] = typer.Option(
        None,
        "--output-format",
        help="Console output: auto, rich, plain or json.",
    ),
    log_level: str = typer.Option("INFO", help="Log level."),
) -> None:
    """Run each scenario once and exit non-zero if any run did not complete."""

    fmt = get_output_format(output_format)
    configure_logging(log_level, log_format_for(fmt))
    probe_config = _load_config(config)
    scenarios = _load_scenarios(probe_config, scenario)
    if not scenarios:
        raise typer.BadParameter("Provide a scenario via --scenario or list scenarios in the config")
    if run_id and len(scenarios) > 1:
        raise typer.BadParameter("--run-id can only be used with a single scenario")

    reporter = ConsoleReporter(output_format=fmt)
    service = ProbeService(probe_config)
    ingress = _build_ingress(probe_config, service)
    ingress.start()
    service.start()
    unhealthy = 0
    try:
        for item in scenarios:
            current_id = run_id or new_run_id()
            artifacts = RunArtifacts.prepare(output_dir, current_id)
            journal = RunJournal(artifacts.events_file)
            reporter.begin(item.scenario_id, current_id, len(item.steps))
            try:
                machine = service.launch(item, run_id=current_id, observer=_tee(journal, reporter.observe))
                result = service.wait(machine.run_id, timeout=wait_timeout)
                if result is None or not result.status.terminal:
                    service.cancel(machine.run_id)
                    result = service.wait(machine.run_id, timeout=5.0) or machine.run
            finally:
                journal.close()
            write_summary(result, artifacts)
            write_junit(result, artifacts)
            reporter.finish(result)
            if fmt == OutputFormat.JSON:
                typer.echo(json.dumps({**result.model_dump(mode="json"), "duration_ms": result.duration_ms}))
            if result.status is not RunStatus.COMPLETED:
                unhealthy += 1
        reporter.summary(service.reporter.snapshot())
    finally:
        service.stop()
        ingress.stop()

    if unhealthy:
        raise typer.Exit(code=1)


@app.command()
def serve(
    config: Path = typer.Option(
        ...,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="Probe configuration listing the scenarios to schedule.",
    ),
    output_format: Optional[str] = typer.Option(None, "--output-format", help="Log output: auto, rich, plain or json."),
    log_level: str = typer.Option("INFO", help="Log level."),
) -> None:
    """Run the webhook listener and launch scheduled probe runs until interrupted."""

    fmt = get_output_format(output_format)
    logger = configure_logging(log_level, log_format_for(fmt))
    probe_config = _load_config(config)
    scenarios = _load_scenarios(probe_config, [])
    if not scenarios:
        raise typer.BadParameter("The configuration lists no scenarios to schedule")

    service = ProbeService(probe_config)
    ingress = _build_ingress(probe_config, service)
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    ingress.start()
    service.serve(scenarios)
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("shutdown_requested")
    finally:
        service.stop()
        ingress.stop()


@app.command()
def validate(
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, readable=True),
    scenario: list[Path] = typer.Option([], "--scenario", "-s", exists=True, readable=True),
) -> None:
    """Load the configuration and scenarios and print what would run."""

    probe_config = _load_config(config)
    scenarios = _load_scenarios(probe_config, scenario)
    typer.secho(
        f"Platform: {probe_config.platform.messages_url}  Webhook: "
        f"{probe_config.webhook.host}:{probe_config.webhook.port}{probe_config.webhook.path}",
        fg=typer.colors.CYAN,
    )
    for item in scenarios:
        steps = ", ".join(
            f"{step.step_id} (timeout={step.timeout:g}s, retries={step.max_retries})" for step in item.steps
        )
        typer.secho(f"{item.scenario_id}: {steps}", fg=typer.colors.GREEN)


def run_cli() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run_cli()
