from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import typer

from cli.aggregator import AggregatorState, compute_summary


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _fmt(value: Optional[float], unit: str) -> str:
    return f"{value:.2f} {unit}" if value is not None else "--"


def _connected(flag: bool) -> str:
    return "connected" if flag else "disconnected"


def render_readings(readings: list[Dict[str, Any]]) -> None:
    echo_heading(f"Readings ({len(readings)})")
    if not readings:
        typer.echo("No readings stored yet.")
        return
    for reading in readings:
        typer.echo(
            f"  #{reading.get('id')} device={reading.get('deviceId')} "
            f"generated={reading.get('generatedAt')} "
            f"temperature={reading.get('temperature')} humidity={reading.get('humidity')} "
            f"received={reading.get('receivedAt')}"
        )


def render_status(state: AggregatorState) -> None:
    summary = compute_summary(state)
    echo_heading("System status")
    echo_key_values(
        [
            ("store", _connected(state.store_connected)),
            ("live", state.live_state.value),
            ("devices", summary.device_count),
            ("points", summary.total_points),
            ("mean temperature", _fmt(summary.mean_temperature, "°C")),
            ("mean humidity", _fmt(summary.mean_humidity, "%")),
            ("last update", summary.last_update),
        ]
    )
    last = summary.last_reading
    if last is not None:
        typer.echo(f"last reading: device {last.device_id} @ {last.timestamp.isoformat()}")
    if state.error:
        typer.secho(f"error: {state.error}", fg=typer.colors.RED)

    for device_id in state.device_ids:
        series = state.series[device_id]
        latest = series[-1]
        typer.echo(
            f"  device {device_id}: {len(series)} points, "
            f"latest {_fmt(latest.temperature, '°C')} / {_fmt(latest.humidity, '%')}"
        )
