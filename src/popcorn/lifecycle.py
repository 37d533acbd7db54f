"""
Project lifecycle commands: init, start, stop, status and clean.

Expected "nothing to do" conditions come back as structured results.
Only unexpected filesystem failures are raised (or, for clean, collected
per path).
"""

import asyncio
import json
import logging
import re
import shlex
import shutil
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional, Union

from popcorn.config import CONFIG_FILE_NAME, load_config_from_file
from popcorn.daemon.registry import (
    acquire_spawn_lock,
    is_process_alive,
    kill_daemon,
    read_registry,
    release_spawn_lock,
    remove_registry,
    resolve_registry,
)
from popcorn.errors import DaemonStartError, PopcornError
from popcorn.models.bridge import BridgeInfo, CleanResult, InitResult, StartResult, StatusResult, StopResult
from popcorn.transport.http import BridgeHttpClient
from popcorn.transport.mailbox import STATE_DIR_NAME

logger = logging.getLogger(__name__)

# host-tool hook registrations whose command runs `popcorn hook` are ours
HOOK_COMMAND_PATTERN = re.compile(r"popcorn['\"]?\s+hook\b")
CLAUDE_SETTINGS_PATH = Path(".claude") / "settings.local.json"
DEFAULT_START_TIMEOUT_S = 5.0

# checked in order by init
CANDIDATE_WATCH_DIRS = [
    "src/frontend",
    "src/components",
    "src/pages",
    "src/views",
    "src/app",
    "app",
    "pages",
    "components",
    "src",
]
DEFAULT_WATCH_DIR = "src/frontend"
DEFAULT_TEST_PLANS_DIR = "test-plans"
DEFAULT_INIT_BASE_URL = "http://localhost:3000"

EXAMPLE_PLAN = {
    "planName": "example-login",
    "description": "Test the login flow",
    "baseUrl": "/",
    "steps": [
        {"stepNumber": 1, "action": "navigate", "target": "/login", "description": "Go to login page"},
        {"stepNumber": 2, "action": "fill", "selector": "input[name='email']", "value": "test@example.com",
         "description": "Enter email"},
        {"stepNumber": 3, "action": "fill", "selector": "input[name='password']", "value": "Test1234!",
         "description": "Enter password"},
        {"stepNumber": 4, "action": "click", "selector": "button[type='submit']", "description": "Click login"},
        {"stepNumber": 5, "action": "assert", "assertionType": "url", "expected": "/dashboard",
         "description": "Verify redirect"},
    ],
    "tags": ["login", "authentication"],
}


async def check_health(info: BridgeInfo, timeout: float = 1.0) -> bool:
    """True if the registered daemon answers /health with the registered token."""
    async with BridgeHttpClient(info.port, timeout=timeout) as client:
        try:
            data = await client.health()
        except PopcornError:
            return False
    if not isinstance(data, dict) or not data.get("ok"):
        return False
    return not info.token or data.get("token") == info.token


async def _reusable_daemon(root: Path) -> Optional[BridgeInfo]:
    """The registered daemon if it answers, else None. A live but unresponsive one is killed."""
    info = resolve_registry(root)
    if info is None:
        return None
    if await check_health(info):
        return info
    logger.warning("Bridge pid=%s is not answering on port %s, replacing it", info.pid, info.port)
    kill_daemon(root)
    current = read_registry(root)
    if current is not None and current.pid == info.pid:
        remove_registry(root)
    return None


async def _spawn_daemon(root: Path, timeout: float, preferred_port: Optional[int]) -> BridgeInfo:
    cmd = [sys.executable, "-m", "popcorn.cli.main", "--project-root", str(root), "serve"]
    if preferred_port is not None:
        cmd += ["--port", str(preferred_port)]
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(root),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        raise DaemonStartError(f"Failed to launch bridge daemon: {e}") from e
    logger.info("Launched bridge daemon pid=%s", proc.pid)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        await asyncio.sleep(0.1)
        if proc.poll() is not None:
            raise DaemonStartError(f"Bridge daemon exited during startup with code {proc.returncode}")
        info = read_registry(root)
        if info is not None and info.pid == proc.pid and await check_health(info):
            return info

    proc.terminate()
    raise DaemonStartError(f"Bridge daemon did not become ready within {timeout:.1f}s")


async def _ensure_daemon(
    root: Path,
    timeout: float,
    preferred_port: Optional[int],
) -> tuple[BridgeInfo, bool]:
    info = await _reusable_daemon(root)
    if info is not None:
        return info, False

    # one starter per project; everyone else waits for its daemon
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not acquire_spawn_lock(root):
        if loop.time() >= deadline:
            raise DaemonStartError(f"Timed out after {timeout:.1f}s waiting for another process to start the bridge")
        await asyncio.sleep(0.1)
        info = resolve_registry(root)
        if info is not None and await check_health(info):
            return info, False

    try:
        info = await _reusable_daemon(root)
        if info is not None:
            return info, False
        return await _spawn_daemon(root, timeout, preferred_port), True
    finally:
        release_spawn_lock(root)


async def ensure_daemon(
    project_root: Union[str, Path],
    timeout: float = DEFAULT_START_TIMEOUT_S,
    preferred_port: Optional[int] = None,
) -> BridgeInfo:
    """Return the live daemon for this project, starting one if needed."""
    info, spawned = await _ensure_daemon(Path(project_root).resolve(), timeout, preferred_port)
    if not spawned:
        logger.debug("Reusing bridge daemon pid=%s port=%s", info.pid, info.port)
    return info


async def run_start(
    project_root: Union[str, Path],
    preferred_port: Optional[int] = None,
    timeout: float = DEFAULT_START_TIMEOUT_S,
) -> StartResult:
    info, spawned = await _ensure_daemon(Path(project_root).resolve(), timeout, preferred_port)
    return StartResult(
        started=spawned,
        reason="started" if spawned else "already_running",
        pid=info.pid,
        port=info.port,
    )


def run_stop(project_root: Union[str, Path]) -> StopResult:
    root = Path(project_root).resolve()
    info = read_registry(root)
    if info is None:
        return StopResult(stopped=False, reason="no_bridge_json")

    if not is_process_alive(info.pid):
        remove_registry(root)
        return StopResult(stopped=False, reason="not_running", pid=info.pid, port=info.port)

    killed = kill_daemon(root)
    if killed:
        remove_registry(root)
    return StopResult(
        stopped=killed,
        reason="killed" if killed else "not_running",
        pid=info.pid,
        port=info.port,
    )


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m {seconds % 60}s"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m"


def run_status(project_root: Union[str, Path]) -> StatusResult:
    root = Path(project_root).resolve()
    stale = read_registry(root)
    info = resolve_registry(root)
    if info is None:
        if stale is not None:
            return StatusResult(running=False, pid=stale.pid, port=stale.port)
        return StatusResult(running=False)

    uptime = None
    if info.started_at:
        try:
            started = datetime.fromisoformat(info.started_at)
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            uptime = format_uptime((datetime.now(timezone.utc) - started).total_seconds())
        except ValueError:
            logger.debug("Unparseable startedAt in bridge.json: %s", info.started_at)
    return StatusResult(running=True, pid=info.pid, port=info.port, started_at=info.started_at, uptime=uptime)


def detect_watch_dir(project_root: Path) -> str:
    """First common frontend directory that exists, else the default."""
    for candidate in CANDIDATE_WATCH_DIRS:
        if (project_root / candidate).is_dir():
            return candidate
    return DEFAULT_WATCH_DIR


def hook_command() -> str:
    """Command line the host tool runs after each edit."""
    exe = shutil.which("popcorn")
    return f"{shlex.quote(exe)} hook" if exe else "popcorn hook"


def _is_hook_entry(entry: object) -> bool:
    inner = entry.get("hooks") if isinstance(entry, dict) else None
    if not isinstance(inner, list):
        return False
    return any(
        isinstance(h, dict) and isinstance(h.get("command"), str) and HOOK_COMMAND_PATTERN.search(h["command"])
        for h in inner
    )


def _merge_hook_settings(project_root: Path) -> Literal["created", "modified", "configured", "unreadable"]:
    """Register the PostToolUse hook in the host tool's settings, keeping everything else."""
    settings_path = project_root / CLAUDE_SETTINGS_PATH
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        settings = {}
    except ValueError:
        logger.warning("Not touching unparseable %s", settings_path)
        return "unreadable"
    if not isinstance(settings, dict):
        return "unreadable"
    hooks = settings.setdefault("hooks", {})
    if not isinstance(hooks, dict):
        return "unreadable"

    entry = {
        "matcher": "Edit|Write",
        "hooks": [{"type": "command", "command": hook_command(), "timeout": 30, "async": True}],
    }
    post_tool_use = hooks.get("PostToolUse")
    if isinstance(post_tool_use, list):
        if any(_is_hook_entry(e) for e in post_tool_use):
            return "configured"
        post_tool_use.append(entry)
        action: Literal["created", "modified"] = "modified"
    else:
        hooks["PostToolUse"] = [entry]
        action = "modified" if settings_path.exists() else "created"

    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return action


def run_init(project_root: Union[str, Path]) -> InitResult:
    """Scaffold a project: test plans directory, config file and hook registration."""
    root = Path(project_root).resolve()
    watch_dir = detect_watch_dir(root)
    result = InitResult(watch_dir=watch_dir)

    plans_dir = root / DEFAULT_TEST_PLANS_DIR
    plans_dir.mkdir(parents=True, exist_ok=True)
    if any(plans_dir.glob("*.json")):
        result.skipped.append(f"{DEFAULT_TEST_PLANS_DIR}/ (already has plans)")
    else:
        (plans_dir / "example-login.json").write_text(json.dumps(EXAMPLE_PLAN, indent=2) + "\n", encoding="utf-8")
        result.created.append(f"{DEFAULT_TEST_PLANS_DIR}/example-login.json")

    config_path = root / CONFIG_FILE_NAME
    if config_path.exists():
        result.skipped.append(f"{CONFIG_FILE_NAME} (already exists)")
    else:
        # only the fields a user is expected to edit; the rest keep their defaults
        config = {"watchDir": watch_dir, "testPlansDir": DEFAULT_TEST_PLANS_DIR, "baseUrl": DEFAULT_INIT_BASE_URL}
        config_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
        result.created.append(CONFIG_FILE_NAME)

    settings_label = CLAUDE_SETTINGS_PATH.as_posix()
    action = _merge_hook_settings(root)
    if action == "created":
        result.created.append(settings_label)
    elif action == "modified":
        result.modified.append(settings_label)
    elif action == "configured":
        result.skipped.append(f"{settings_label} (hook already configured)")
    else:
        result.skipped.append(f"{settings_label} (unreadable, left unchanged)")

    logger.info("Init finished watchDir=%s created=%d modified=%d skipped=%d",
                watch_dir, len(result.created), len(result.modified), len(result.skipped))
    return result


def _clean_hook_settings(project_root: Path) -> Literal["removed", "modified", "skipped"]:
    """Drop PostToolUse hook entries that launch popcorn from the host tool's settings."""
    settings_path = project_root / CLAUDE_SETTINGS_PATH
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return "skipped"
    except ValueError:
        logger.debug("Leaving unparseable %s alone", settings_path)
        return "skipped"

    hooks = settings.get("hooks") if isinstance(settings, dict) else None
    if not isinstance(hooks, dict) or not isinstance(hooks.get("PostToolUse"), list):
        return "skipped"

    before = hooks["PostToolUse"]
    kept = [entry for entry in before if not _is_hook_entry(entry)]
    if len(kept) == len(before):
        return "skipped"

    if kept:
        hooks["PostToolUse"] = kept
    else:
        del hooks["PostToolUse"]
    if not hooks:
        del settings["hooks"]

    if not settings:
        settings_path.unlink()
        try:
            settings_path.parent.rmdir()
        except OSError:
            pass  # not empty
        return "removed"

    settings_path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")
    return "modified"


def run_clean(project_root: Union[str, Path]) -> CleanResult:
    """Remove all popcorn scaffolding from a project. Every step is independent."""
    root = Path(project_root).resolve()
    result = CleanResult()
    config = load_config_from_file(root)

    try:
        kill_daemon(root)
    except OSError as e:
        result.errors["bridge daemon"] = str(e)

    for rel in (config.test_plans_dir, STATE_DIR_NAME):
        label = f"{rel}/"
        path = root / rel
        if not path.exists():
            result.skipped.append(f"{label} (not found)")
            continue
        try:
            shutil.rmtree(path)
            result.removed.append(label)
        except OSError as e:
            result.errors[label] = str(e)

    config_path = root / CONFIG_FILE_NAME
    try:
        config_path.unlink()
        result.removed.append(CONFIG_FILE_NAME)
    except FileNotFoundError:
        result.skipped.append(f"{CONFIG_FILE_NAME} (not found)")
    except OSError as e:
        result.errors[CONFIG_FILE_NAME] = str(e)

    settings_label = CLAUDE_SETTINGS_PATH.as_posix()
    try:
        action = _clean_hook_settings(root)
    except OSError as e:
        result.errors[settings_label] = str(e)
    else:
        if action == "removed":
            result.removed.append(settings_label)
        elif action == "modified":
            result.removed.append(f"{settings_label} (hook entry removed)")
        else:
            result.skipped.append(f"{settings_label} (no hook found)")

    logger.info("Clean finished removed=%d skipped=%d errors=%d",
                len(result.removed), len(result.skipped), len(result.errors))
    return result
