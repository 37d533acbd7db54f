"""
Daemon registry — .popcorn/bridge.json discovery, liveness and termination.
Also the .popcorn/spawn.lock that lets one hook at a time start a daemon.

The record is replaced atomically (temp file + rename) so a concurrent
reader never sees half a record. Readers never edit it in place; they
either replace it or delete it.
"""

import logging
import os
import signal
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from popcorn.models.bridge import BridgeInfo
from popcorn.transport.mailbox import state_dir

logger = logging.getLogger(__name__)

REGISTRY_FILE_NAME = "bridge.json"
SPAWN_LOCK_FILE_NAME = "spawn.lock"
SPAWN_LOCK_STALE_S = 10.0


def registry_path(project_root: Union[str, Path]) -> Path:
    return state_dir(project_root) / REGISTRY_FILE_NAME


def read_registry(project_root: Union[str, Path]) -> Optional[BridgeInfo]:
    """Return the registry record, or None when it is missing or unreadable."""
    path = registry_path(project_root)
    try:
        return BridgeInfo.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as e:
        logger.debug("Ignoring unreadable registry %s: %s", path, e)
        return None


def write_registry(project_root: Union[str, Path], info: BridgeInfo) -> Path:
    path = registry_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".bridge-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json(by_alias=True, indent=2))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Wrote registry pid=%s port=%s", info.pid, info.port)
    return path


def remove_registry(project_root: Union[str, Path]) -> bool:
    """Delete the record. Returns False if there was nothing to delete."""
    try:
        registry_path(project_root).unlink()
        return True
    except FileNotFoundError:
        return False


def is_process_alive(pid: int) -> bool:
    """Report whether `pid` names a running process. Never raises."""
    if pid <= 0:
        return False
    if sys.platform == "win32":
        return _is_alive_windows(pid)
    _reap(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    except OSError:
        return False
    return True


def resolve_registry(project_root: Union[str, Path]) -> Optional[BridgeInfo]:
    """Read the record, deleting it if its process is gone."""
    info = read_registry(project_root)
    if info is None:
        return None
    if not is_process_alive(info.pid):
        logger.info("Removing stale bridge.json pid=%s port=%s", info.pid, info.port)
        remove_registry(project_root)
        return None
    return info


def kill_daemon(project_root: Union[str, Path], wait: float = 2.0) -> bool:
    """Send SIGTERM to the registered daemon. Returns True if the signal was delivered.

    The registry record is left for the caller to remove.
    """
    info = read_registry(project_root)
    if info is None:
        logger.debug("No bridge.json, nothing to kill")
        return False
    if not is_process_alive(info.pid):
        return False
    try:
        os.kill(info.pid, signal.SIGTERM)
    except OSError as e:
        logger.warning("Failed to signal bridge daemon pid=%s: %s", info.pid, e)
        return False

    deadline = time.monotonic() + wait
    while time.monotonic() < deadline:
        if not is_process_alive(info.pid):
            break
        time.sleep(0.05)
    else:
        logger.warning("Bridge daemon pid=%s still alive %.1fs after SIGTERM, sending SIGKILL", info.pid, wait)
        try:
            os.kill(info.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning("Failed to kill bridge daemon pid=%s: %s", info.pid, e)
            return False
        _reap(info.pid)
    logger.info("Killed bridge daemon pid=%s port=%s", info.pid, info.port)
    return True


def spawn_lock_path(project_root: Union[str, Path]) -> Path:
    return state_dir(project_root) / SPAWN_LOCK_FILE_NAME


def acquire_spawn_lock(project_root: Union[str, Path]) -> bool:
    """Take the per-project daemon start lock. Returns False if another process holds it.

    A lock whose owner is dead, or that has been empty for longer than
    SPAWN_LOCK_STALE_S, is taken over.
    """
    path = spawn_lock_path(project_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if not _spawn_lock_is_stale(path):
                return False
            logger.info("Taking over stale spawn lock %s", path)
            path.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))
        return True
    return False


def release_spawn_lock(project_root: Union[str, Path]) -> None:
    """Remove the start lock if this process holds it."""
    path = spawn_lock_path(project_root)
    if _spawn_lock_owner(path) == os.getpid():
        path.unlink(missing_ok=True)


def _spawn_lock_owner(path: Path) -> Optional[int]:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


def _spawn_lock_is_stale(path: Path) -> bool:
    owner = _spawn_lock_owner(path)
    if owner is not None:
        return not is_process_alive(owner)
    # created but not yet written, or garbage
    try:
        age = time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return True
    return age > SPAWN_LOCK_STALE_S


def _reap(pid: int) -> None:
    # A terminated child of ours stays visible to kill(0) until it is waited on.
    try:
        os.waitpid(pid, os.WNOHANG)
    except (ChildProcessError, OSError):
        pass


def _is_alive_windows(pid: int) -> bool:
    import ctypes

    PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    STILL_ACTIVE = 259
    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        return False
    try:
        code = ctypes.c_ulong()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
            return False
        return code.value == STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)
