from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer

_SEVERITY_COLORS = {
    "critical": typer.colors.RED,
    "error": typer.colors.RED,
    "warning": typer.colors.YELLOW,
}


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_notifications(device_id: str, items: List[Dict[str, Any]]) -> None:
    echo_heading(f"Notifications for {device_id}")
    if not items:
        typer.echo("No notifications recorded.")
        return
    for item in items:
        notification = item.get("notification") or {}
        severity = notification.get("severity", "info")
        pushed = "pushed" if notification.get("pushedAt") else "not pushed"
        typer.secho(
            f"  [{severity}] {notification.get('title')} ({pushed})",
            fg=_SEVERITY_COLORS.get(severity),
        )
        typer.echo(f"      {notification.get('body')}")


def render_sweep(report: Dict[str, Any]) -> None:
    echo_heading("Liveness Sweep")
    echo_key_values(
        [
            ("evaluated", report.get("evaluated")),
            ("skipped", report.get("skipped")),
            ("went_offline", ", ".join(report.get("went_offline") or []) or "-"),
            ("came_online", ", ".join(report.get("came_online") or []) or "-"),
            ("notifications", report.get("notifications")),
            ("conflicts", ", ".join(report.get("conflicts") or []) or "-"),
        ]
    )


def render_prune(report: Dict[str, Any]) -> None:
    echo_heading("Retention")
    echo_key_values(
        [
            ("collection", report.get("collection")),
            ("cutoff", report.get("cutoff")),
            ("deleted", report.get("deleted")),
        ]
    )
