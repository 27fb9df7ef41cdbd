from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import typer

from cli.aggregator import ClientAggregator, identity_key
from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.live import websocket_connector
from cli.render import render_readings, render_status
from logging_config import configure_logging
from services.errors import HistoricalFetchError


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Query stored readings and follow the live feed of the telemetry service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    live_url: Optional[str] = typer.Option(
        None,
        "--live-url",
        help="Live feed URL (defaults to LIVE_FEED_URL env or derived from the base URL).",
    ),
    reconnect_delay: Optional[float] = typer.Option(
        None,
        "--reconnect-delay",
        help="Seconds to wait before re-subscribing after the live feed drops.",
    ),
) -> None:
    """Entry point for the CLI."""
    configure_logging("WARNING")
    config = load_config(
        base_url=base_url,
        live_url=live_url,
        reconnect_delay=reconnect_delay,
    )
    ctx.obj = CLIState(config=config, client=ApiClient(config))


@app.command("recent")
def recent_command(
    ctx: typer.Context,
    device: Optional[int] = typer.Option(None, "--device", "-d", help="Only readings from this device."),
) -> None:
    """Print the most recently stored readings."""
    state = _get_state(ctx)
    try:
        readings = asyncio.run(state.client.fetch_recent(device))
    except HistoricalFetchError as exc:
        typer.secho(f"Could not load readings: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    render_readings(readings)


@app.command("watch")
def watch_command(
    ctx: typer.Context,
    duration: Optional[float] = typer.Option(
        None, "--duration", help="Stop after this many seconds (default: run until interrupted)."
    ),
    dedupe: bool = typer.Option(
        False,
        "--dedupe/--no-dedupe",
        help="Drop readings already shown with the same stored id.",
    ),
) -> None:
    """Merge stored history with the live feed and keep printing the summary."""
    state = _get_state(ctx)
    aggregator = ClientAggregator(
        fetch_history=state.client.fetch_recent,
        live_connector=websocket_connector(state.config.live_url),
        reconnect_delay=state.config.reconnect_delay,
        dedupe_key=identity_key if dedupe else None,
    )
    aggregator.add_listener(lambda snapshot: (typer.echo(), render_status(snapshot)))

    async def _watch() -> None:
        if duration is None:
            await aggregator.run()
            return
        try:
            await asyncio.wait_for(aggregator.run(), timeout=duration)
        except asyncio.TimeoutError:
            pass

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        typer.echo("Stopped.")
