"""CLI entrypoint for the platform simulator."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    current_file = Path(__file__).resolve()
    apps_dir = current_file.parents[2]
    for candidate in (current_file.parents[1], apps_dir / "probe-engine", apps_dir / "webhook-ingress"):
        candidate_str = str(candidate)
        if candidate_str not in sys.path and candidate.exists():
            sys.path.insert(0, candidate_str)
    __package__ = "platform_simulator"

from journey_probe.logging_utils import configure_logging
from journey_probe.output_config import get_output_format, log_format_for

from .config import load_config
from .server import PlatformSimulator

app = typer.Typer(help="Stand-in conversational platform that answers probe stimuli via webhooks.")


@app.command()
def serve(
    config: Path = typer.Option(..., "--config", "-c", exists=True, readable=True, help="Simulator YAML/JSON."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Override the listening port."),
    webhook_url: Optional[str] = typer.Option(None, help="Override the webhook callback URL."),
    output_format: Optional[str] = typer.Option(None, "--output-format", help="Log output: auto, rich, plain or json."),
    log_level: str = typer.Option("INFO", help="Log level."),
) -> None:
    """Serve the simulated messaging endpoint until interrupted."""

    configure_logging(log_level, log_format_for(get_output_format(output_format)), logger_name="platform_simulator")
    try:
        simulator_config = load_config(config)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    updates: dict[str, object] = {}
    if port is not None:
        updates["port"] = port
    if webhook_url:
        updates["webhook_url"] = webhook_url
    if updates:
        simulator_config = simulator_config.model_copy(update=updates)

    simulator = PlatformSimulator(simulator_config)
    simulator.start()
    typer.secho(f"Platform simulator listening on {simulator.base_url}{simulator_config.messages_path}", fg=typer.colors.GREEN)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        simulator.stop()


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
