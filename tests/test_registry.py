import os
import time

from popcorn.daemon.registry import (
    acquire_spawn_lock,
    is_process_alive,
    read_registry,
    registry_path,
    release_spawn_lock,
    remove_registry,
    resolve_registry,
    spawn_lock_path,
    write_registry,
)
from popcorn.models.bridge import BridgeInfo


def test_write_then_read(project_root):
    info = BridgeInfo(pid=os.getpid(), port=7891, token="abc", started_at="2026-01-01T00:00:00+00:00")
    path = write_registry(project_root, info)
    assert path == project_root / ".popcorn" / "bridge.json"
    assert '"startedAt"' in path.read_text()
    assert read_registry(project_root) == info
    # no temp files left next to the record
    assert [p.name for p in path.parent.iterdir()] == ["bridge.json"]


def test_read_missing_or_corrupt(project_root):
    assert read_registry(project_root) is None
    registry_path(project_root).parent.mkdir(parents=True)
    registry_path(project_root).write_text("{not json")
    assert read_registry(project_root) is None
    registry_path(project_root).write_text('{"port": 7890}')
    assert read_registry(project_root) is None


def test_remove_registry(project_root):
    assert remove_registry(project_root) is False
    write_registry(project_root, BridgeInfo(pid=os.getpid(), port=7890))
    assert remove_registry(project_root) is True
    assert not registry_path(project_root).exists()


def test_is_process_alive(dead_pid, live_process):
    assert is_process_alive(os.getpid())
    assert is_process_alive(live_process.pid)
    assert not is_process_alive(dead_pid)
    assert not is_process_alive(0)
    assert not is_process_alive(-5)


def test_resolve_deletes_stale_record(project_root, dead_pid):
    write_registry(project_root, BridgeInfo(pid=dead_pid, port=7890))
    assert resolve_registry(project_root) is None
    assert not registry_path(project_root).exists()


def test_resolve_keeps_live_record(project_root):
    info = BridgeInfo(pid=os.getpid(), port=7890)
    write_registry(project_root, info)
    assert resolve_registry(project_root) == info
    assert registry_path(project_root).exists()


class TestSpawnLock:
    def test_exclusive_until_released(self, project_root):
        assert acquire_spawn_lock(project_root)
        assert spawn_lock_path(project_root).read_text() == str(os.getpid())
        assert not acquire_spawn_lock(project_root)
        release_spawn_lock(project_root)
        assert not spawn_lock_path(project_root).exists()
        assert acquire_spawn_lock(project_root)
        release_spawn_lock(project_root)

    def test_held_by_live_process(self, project_root, live_process):
        lock = spawn_lock_path(project_root)
        lock.parent.mkdir(parents=True)
        lock.write_text(str(live_process.pid))
        assert not acquire_spawn_lock(project_root)
        # only the owner may release it
        release_spawn_lock(project_root)
        assert lock.exists()

    def test_dead_owner_taken_over(self, project_root, dead_pid):
        lock = spawn_lock_path(project_root)
        lock.parent.mkdir(parents=True)
        lock.write_text(str(dead_pid))
        assert acquire_spawn_lock(project_root)
        assert lock.read_text() == str(os.getpid())
        release_spawn_lock(project_root)

    def test_empty_lock_expires(self, project_root):
        lock = spawn_lock_path(project_root)
        lock.parent.mkdir(parents=True)
        lock.write_text("")
        assert not acquire_spawn_lock(project_root)
        old = time.time() - 60
        os.utime(lock, (old, old))
        assert acquire_spawn_lock(project_root)
        release_spawn_lock(project_root)
