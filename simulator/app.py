from __future__ import annotations

import logging
from typing import Optional

import typer

from logging_config import configure_logging
from services.errors import ConfigurationError
from simulator.config import load_config
from simulator.generator import build_generator

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Simulated sensor that publishes readings to the broker.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


@app.callback()
def main() -> None:
    """Entry point for the simulator CLI."""


@app.command("run")
def run_command(
    device_id: Optional[int] = typer.Option(
        None, "--device-id", "-d", help="Device identifier (defaults to DEVICE_ID env or 1)."
    ),
    broker_url: Optional[str] = typer.Option(
        None, "--broker-url", help="Broker spool directory (defaults to BROKER_URL env)."
    ),
    destination: Optional[str] = typer.Option(
        None, "--destination", help="Queue name (defaults to DESTINATION env)."
    ),
    interval: Optional[float] = typer.Option(
        None, "--interval", help="Seconds between readings (defaults to PUBLISH_INTERVAL_SECONDS env or 5)."
    ),
    max_ticks: Optional[int] = typer.Option(
        None, "--max-ticks", help="Stop after this many published readings."
    ),
) -> None:
    """Publish readings until interrupted."""
    configure_logging()
    try:
        config = load_config(
            device_id=device_id,
            broker_url=broker_url,
            destination=destination,
            interval_seconds=interval,
        )
        generator = build_generator(config)
    except ConfigurationError as exc:
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc

    logger.info(
        "Simulator starting",
        extra={"device_id": config.device_id, "destination": config.destination},
    )
    try:
        generator.run(max_ticks=max_ticks)
    except KeyboardInterrupt:
        typer.echo("Stopped.")
    finally:
        generator.publisher.close()
    typer.echo(f"Published {generator.published} readings.")
