"""CLI: popcorn init|serve|start|stop|status|clean"""

import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from popcorn.config import load_config_from_file
from popcorn.lifecycle import DEFAULT_START_TIMEOUT_S, run_clean, run_init, run_start, run_status, run_stop

console = Console()


def _project_root():
    from popcorn.cli.main import _project_root
    return _project_root()


def _run(coro):
    from popcorn.cli.main import _run
    return _run(coro)


@click.command("serve")
@click.option("--port", default=None, type=int, help="Preferred control port (default: bridgePort from config)")
def serve(port: Optional[int]):
    """Run the bridge daemon in the foreground."""
    from popcorn.daemon.server import serve as serve_daemon

    try:
        _run(serve_daemon(_project_root(), preferred_port=port))
    except OSError as e:
        console.print(f"[red]Bridge daemon failed: {e}[/red]")
        raise SystemExit(1)


@click.command("init")
@click.option("--json-output", "--json", is_flag=True)
def init(json_output):
    """Scaffold test plans, config and the PostToolUse hook."""
    try:
        result = run_init(_project_root())
    except OSError as e:
        console.print(f"[red]Init failed: {e}[/red]")
        raise SystemExit(1)
    if json_output:
        click.echo(result.model_dump_json(indent=2, by_alias=True))
        return
    console.print(f"Watching [bold]{result.watch_dir}/[/bold]")
    for path in result.created:
        console.print(f"[green]created[/green]   {path}")
    for path in result.modified:
        console.print(f"[cyan]modified[/cyan]  {path}")
    for path in result.skipped:
        console.print(f"[dim]skipped   {path}[/dim]")


@click.command("start")
@click.option("--port", default=None, type=int, help="Preferred control port (default: bridgePort from config)")
@click.option("--timeout", default=DEFAULT_START_TIMEOUT_S, type=float, show_default=True,
              help="Seconds to wait for the daemon to become healthy")
@click.option("--json-output", "--json", is_flag=True)
def start(port: Optional[int], timeout: float, json_output):
    """Start the bridge daemon in the background if it is not already running."""
    root = _project_root()
    if port is None:
        port = load_config_from_file(root).bridge_port
    result = _run(run_start(root, preferred_port=port, timeout=timeout))
    if json_output:
        click.echo(result.model_dump_json(indent=2))
    elif result.started:
        console.print(f"[green]Started bridge daemon (PID {result.pid}, port {result.port}).[/green]")
    else:
        console.print(f"[yellow]Bridge daemon already running (PID {result.pid}, port {result.port}).[/yellow]")


@click.command("stop")
@click.option("--json-output", "--json", is_flag=True)
def stop(json_output):
    """Stop the project's bridge daemon."""
    result = run_stop(_project_root())
    if json_output:
        click.echo(result.model_dump_json(indent=2))
        return
    if result.reason == "no_bridge_json":
        console.print("[yellow]No bridge daemon registered for this project.[/yellow]")
    elif result.reason == "not_running":
        console.print(f"[yellow]Bridge daemon (PID {result.pid}) was not running; removed stale bridge.json.[/yellow]")
    else:
        console.print(f"[green]Stopped bridge daemon (PID {result.pid}, port {result.port}).[/green]")


@click.command("status")
@click.option("--json-output", "--json", is_flag=True)
def status(json_output):
    """Show bridge daemon status."""
    result = run_status(_project_root())
    if json_output:
        click.echo(result.model_dump_json(indent=2, by_alias=True))
        return
    if not result.running:
        console.print("[yellow]Bridge daemon is not running.[/yellow]")
        return
    table = Table(title="Bridge daemon")
    table.add_column("PID", style="bold")
    table.add_column("Port")
    table.add_column("Started")
    table.add_column("Uptime")
    table.add_row(str(result.pid), str(result.port), result.started_at or "", result.uptime or "")
    console.print(table)


@click.command("clean")
@click.option("--json-output", "--json", is_flag=True)
def clean(json_output):
    """Remove test plans, .popcorn/, config and hook registration."""
    result = run_clean(_project_root())
    if json_output:
        click.echo(json.dumps(result.model_dump(), indent=2))
    else:
        for path in result.removed:
            console.print(f"[green]removed[/green]  {path}")
        for path in result.skipped:
            console.print(f"[dim]skipped  {path}[/dim]")
        for path, message in result.errors.items():
            console.print(f"[red]error[/red]    {path}: {message}")
    if result.errors:
        raise SystemExit(1)
