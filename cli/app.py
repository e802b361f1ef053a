from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_notifications, render_prune, render_sweep


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


class PruneTarget(str, Enum):
    dose_runs = "dose-runs"
    notifications = "notifications"


app = typer.Typer(
    help="Utilities for interacting with the device alerting service.",
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
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Request timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("heartbeat")
def heartbeat_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier."),
    ts: Optional[int] = typer.Option(None, "--ts", help="Epoch milliseconds; defaults to server time."),
) -> None:
    """Record a heartbeat for a device."""
    state = _get_state(ctx)
    state.client.heartbeat(device_id, ts=ts)
    typer.secho(f"Heartbeat recorded for {device_id}.", fg=typer.colors.GREEN)


@app.command("sensor")
def sensor_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier."),
    sensor_key: str = typer.Argument(..., help="Sensor key, e.g. pH."),
    value: float = typer.Argument(..., help="Observed value."),
) -> None:
    """Write a sensor value; range alerts are evaluated server-side."""
    state = _get_state(ctx)
    state.client.write_sensor(device_id, sensor_key, value)
    typer.secho(f"{device_id}/{sensor_key} = {value}", fg=typer.colors.GREEN)


@app.command("register-token")
def register_token_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier."),
    token: str = typer.Argument(..., help="Push registration token."),
) -> None:
    """Register a push token for a device."""
    state = _get_state(ctx)
    state.client.register_token(device_id, token)
    typer.secho(f"Token registered for {device_id}.", fg=typer.colors.GREEN)


@app.command("notifications")
def notifications_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device identifier."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=500, help="Maximum entries to show."),
) -> None:
    """Show the most recent notifications for a device."""
    state = _get_state(ctx)
    render_notifications(device_id, state.client.list_notifications(device_id, limit))


@app.command("sweep")
def sweep_command(ctx: typer.Context) -> None:
    """Run the liveness sweep once."""
    state = _get_state(ctx)
    render_sweep(state.client.run_sweep())


@app.command("prune")
def prune_command(
    ctx: typer.Context,
    target: PruneTarget = typer.Argument(..., help="Collection to prune."),
) -> None:
    """Run a retention job once."""
    state = _get_state(ctx)
    render_prune(state.client.run_prune(target.value))
