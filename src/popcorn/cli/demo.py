"""CLI: popcorn demo|plans|hook"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from popcorn.client import DEFAULT_ACCEPTANCE_CRITERIA, AsyncPopcorn
from popcorn.config import PopcornConfig, load_config_from_file
from popcorn.errors import PopcornError
from popcorn.models.results import DemoResult
from popcorn.plan_loader import find_matching_plan, list_test_plans

logger = logging.getLogger(__name__)
console = Console()


def _project_root():
    from popcorn.cli.main import _project_root
    return _project_root()


def _run(coro):
    from popcorn.cli.main import _run
    return _run(coro)


def _fail(e):
    from popcorn.cli.main import _fail
    _fail(e)


def print_summary(result: DemoResult) -> None:
    status = "[green]PASSED[/green]" if result.passed else "[red]FAILED[/red]"
    console.print(f"[bold]{result.test_plan_id}[/bold] {status} [dim]({result.duration:.0f}ms)[/dim]")
    if result.summary:
        console.print(result.summary)
    if result.steps:
        table = Table(show_header=True)
        table.add_column("#", justify="right")
        table.add_column("Step")
        table.add_column("Result")
        table.add_column("Time", justify="right")
        for step in result.steps:
            mark = "[green]OK[/green]" if step.passed else f"[red]FAIL[/red] {step.error or ''}"
            table.add_row(str(step.step_number), step.description or step.action, mark, f"{step.duration:.0f}ms")
        console.print(table)
    for criterion in result.criteria_results or []:
        mark = "[green]OK[/green]" if criterion.passed else "[red]FAIL[/red]"
        console.print(f"  {mark} {criterion.message or criterion.criterion_id}")


@click.command("demo")
@click.argument("plan_name")
@click.option("-c", "--criteria", multiple=True, help="Acceptance criterion (repeatable)")
@click.option("--timeout", default=None, type=float, help="Seconds to wait for the result")
@click.option("--json-output", "--json", is_flag=True)
def demo_cmd(plan_name, criteria, timeout, json_output):
    """Run a test plan in the browser extension and wait for the result."""
    overrides = {}
    if timeout is not None:
        overrides["demo_timeout_ms"] = int(timeout * 1000)

    async def _demo():
        client = AsyncPopcorn(_project_root(), **overrides)
        plan = client.load_plan(plan_name)
        async with client:
            with console.status(f"Running {plan_name}..."):
                return await client.start_demo(
                    plan["planName"],
                    plan,
                    acceptance_criteria=list(criteria) or None,
                    triggered_by="cli",
                )

    result = _run(_demo())
    if json_output:
        click.echo(result.model_dump_json(indent=2, by_alias=True))
    else:
        print_summary(result)
    if not result.passed:
        raise SystemExit(1)


@click.command("plans")
@click.option("--json-output", "--json", is_flag=True)
def plans_cmd(json_output):
    """List test plans."""
    root = _project_root()
    config = load_config_from_file(root)
    try:
        names = list_test_plans(root / config.test_plans_dir)
    except PopcornError as e:
        _fail(e)
    if json_output:
        click.echo(json.dumps(names, indent=2))
        return
    if not names:
        console.print(f"[yellow]No test plans in {config.test_plans_dir}/[/yellow]")
        return
    for name in names:
        console.print(name)


def is_watched(file_path: Path, project_root: Path, config: PopcornConfig) -> bool:
    """In the watched directory, or a source file carrying the popcorn marker."""
    watch_dir = (project_root / config.watch_dir).resolve()
    if watch_dir in file_path.parents:
        return True
    if file_path.suffix not in config.extensions:
        return False
    try:
        return config.popcorn_marker in file_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False


def resolve_hook_plan(event_text: str, project_root: Path) -> Optional[tuple[str, str]]:
    """Map a PostToolUse event to (plan name, edited file), or None when nothing should run."""
    if not event_text.strip():
        return None
    try:
        event = json.loads(event_text)
    except ValueError:
        logger.debug("Could not parse hook event")
        return None
    tool_input = event.get("tool_input") if isinstance(event, dict) else None
    raw_path = tool_input.get("file_path") if isinstance(tool_input, dict) else None
    if not isinstance(raw_path, str) or not raw_path:
        return None

    config = load_config_from_file(project_root)
    file_path = (project_root / raw_path).resolve()
    if not is_watched(file_path, project_root, config):
        return None

    logger.info("File changed: %s", raw_path)
    plan_name = find_matching_plan(file_path.stem, list_test_plans(project_root / config.test_plans_dir))
    if plan_name is None:
        logger.info("No matching test plan for '%s', skipping demo", file_path.stem)
        return None
    return plan_name, raw_path


@click.command("hook")
def hook_cmd():
    """PostToolUse hook: run the plan matching the edited file."""
    root = _project_root()
    try:
        match = resolve_hook_plan(sys.stdin.read(), root)
    except PopcornError as e:
        logger.error("Hook runner error: %s", e)
        raise SystemExit(1)
    if match is None:
        return
    plan_name, edited = match

    async def _dispatch():
        async with AsyncPopcorn(root) as client:
            logger.info("Dispatching test plan '%s' triggeredBy=%s", plan_name, edited)
            return await client.run_plan(
                plan_name,
                triggered_by=edited,
                acceptance_criteria=list(DEFAULT_ACCEPTANCE_CRITERIA),
            )

    try:
        result = asyncio.run(_dispatch())
    except PopcornError as e:
        logger.error("Demo dispatch failed: %s", e)
        return
    print_summary(result)
