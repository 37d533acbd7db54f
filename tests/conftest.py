import asyncio
import subprocess
import sys

import pytest
import pytest_asyncio

from popcorn.models.envelope import MessageType
from popcorn.transport.envelope import create_envelope
from popcorn.transport.mailbox import Mailbox, Role

FAST_POLL = 0.01


@pytest.fixture
def project_root(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def dead_pid():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def live_process():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()


@pytest_asyncio.fixture
async def extension_peer(project_root):
    """Extension-side mailbox that records everything the hook sends."""
    peer = Mailbox(project_root, role=Role.EXTENSION, poll_interval=FAST_POLL)
    peer.received = []
    peer.on_message(peer.received.append)
    await peer.connect()
    yield peer
    await peer.disconnect()


def auto_reply(peer, passed=True, **extra):
    """Answer every start_demo the peer sees with a demo_result."""
    tasks = []

    def handle(envelope):
        if envelope.type != MessageType.START_DEMO:
            return
        payload = {
            "testPlanId": envelope.payload["testPlanId"],
            "passed": passed,
            "steps": [],
            "summary": "ok" if passed else "failed",
            "duration": 12,
            **extra,
        }
        tasks.append(asyncio.ensure_future(
            peer.send_message(
                create_envelope(MessageType.DEMO_RESULT, payload),
                channel=envelope.payload.get("replyTo"),
            )
        ))

    return peer.on_message(handle)


async def wait_for(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
