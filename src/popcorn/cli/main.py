"""
Popcorn CLI — `popcorn` command.

Commands:
  popcorn init             Scaffold test plans, config and the PostToolUse hook
  popcorn serve            Run the bridge daemon in the foreground
  popcorn start            Start the bridge daemon in the background
  popcorn stop             Stop the project's bridge daemon
  popcorn status           Show whether the daemon is running
  popcorn clean            Remove all popcorn scaffolding from the project
  popcorn demo <plan>      Run one test plan in the browser extension
  popcorn plans            List available test plans
  popcorn hook             PostToolUse hook entry point (reads stdin)
"""

import asyncio
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from popcorn import __version__
from popcorn.errors import PopcornError
from popcorn.log import configure_logging

console = Console()
err_console = Console(stderr=True)


def _project_root() -> Path:
    ctx = click.get_current_context()
    return ctx.find_root().obj["project_root"]


def _run(coro):
    try:
        return asyncio.run(coro)
    except PopcornError as e:
        err_console.print(f"[red]{e}[/red]")
        raise SystemExit(1)


def _fail(e: PopcornError) -> None:
    err_console.print(f"[red]{e}[/red]")
    raise SystemExit(1)


@click.group()
@click.version_option(__version__)
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project directory (default: current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, project_root: Optional[Path], verbose: bool):
    """Popcorn — run UI demos in the browser after every edit."""
    configure_logging("DEBUG" if verbose else None)
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = (project_root or Path.cwd()).resolve()


# Register subcommands from separate modules
from popcorn.cli.daemon import init, serve, start, stop, status, clean
from popcorn.cli.demo import demo_cmd, plans_cmd, hook_cmd

main.add_command(init)
main.add_command(serve)
main.add_command(start)
main.add_command(stop)
main.add_command(status)
main.add_command(clean)
main.add_command(demo_cmd)
main.add_command(plans_cmd)
main.add_command(hook_cmd)


if __name__ == "__main__":
    main()
