"""Coordinator CLI: inspect and control a running scheduling coordinator."""

from __future__ import annotations

import json
import sys

import click
import httpx
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_PHASE_COLOR: dict[str, str] = {
    "running": "green",
    "starting": "blue",
    "stopping": "yellow",
    "stopped": "dim",
    "disabled": "red",
    "active": "green",
    "available": "blue",
    "unknown": "yellow",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _PHASE_COLOR.get(status, "white")


def _client(url: str) -> httpx.Client:
    return httpx.Client(base_url=url.rstrip("/"), timeout=30)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code == 404:
        _die(resp.json().get("detail", "Not found"))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="COORDINATOR_URL",
    show_default=True,
    help="Coordinator API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Scheduling coordinator: operator CLI."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── coordinator status / start / stop ─────────────────────────────────────────


@cli.command("status")
@click.pass_obj
def status(obj: dict) -> None:
    """Show scheduler state and lease ownership."""
    with _client(obj["url"]) as c:
        resp = c.get("/scheduler/status")
    _check(resp)
    _print_status(resp.json(), obj["json_output"])


@cli.command("start")
@click.pass_obj
def start(obj: dict) -> None:
    """Start the scheduler loop (also re-enables a disabled loop)."""
    with _client(obj["url"]) as c:
        resp = c.post("/scheduler/start")
    _check(resp)
    _print_status(resp.json(), obj["json_output"])


@cli.command("stop")
@click.pass_obj
def stop(obj: dict) -> None:
    """Stop the scheduler loop and release the lease."""
    with _client(obj["url"]) as c:
        resp = c.post("/scheduler/stop")
    _check(resp)
    _print_status(resp.json(), obj["json_output"])


def _print_status(state: dict, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(state, indent=2, default=str))
        return

    phase = state.get("phase", "?")
    errors = state.get("consecutive_error_count", 0)
    threshold = state.get("error_threshold", "?")
    console.print(f"Scheduler: [{_color(phase)}]{phase}[/]  errors: {errors}/{threshold}\n")

    lease = state.get("lease") or {}
    lease_state = lease.get("state", "?")
    table = Table(box=box.SIMPLE)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Last tick", state.get("last_tick_time") or "-")
    table.add_row("Poll interval", f"{state.get('poll_interval_seconds', 0):.0f}s")
    table.add_row("Lease", f"[{_color(lease_state)}]{lease_state}[/]")
    table.add_row("Holder", lease.get("holder") or "-")
    table.add_row("This instance", lease.get("instance_id") or "-")
    table.add_row("Holder is us", "yes" if lease.get("is_holder") else "no")
    expiry = lease.get("seconds_until_expiry")
    table.add_row("Expires in", f"{expiry}s" if expiry is not None else "-")
    if lease.get("error"):
        table.add_row("Lease error", f"[red]{lease['error']}[/]")
    console.print(table)


# ── coordinator run ───────────────────────────────────────────────────────────


@cli.command("run")
@click.argument("item_id")
@click.option("--owner", "-o", required=True, envvar="COORDINATOR_OWNER", help="Owner of the item.")
@click.pass_obj
def run(obj: dict, item_id: str, owner: str) -> None:
    """Queue one run of ITEM_ID immediately, outside its schedule."""
    try:
        with _client(obj["url"]) as c:
            resp = c.post(f"/items/{item_id}/run", headers={"X-Owner-Id": owner})
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Queued  {data['item_id']}  job: {data['job_id']}")
