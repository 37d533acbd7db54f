import asyncio

import pytest

from conftest import FAST_POLL, auto_reply, wait_for
from popcorn.errors import (
    DeliveryError,
    DisconnectedError,
    DuplicateRequestError,
    NotConnectedError,
    PopcornError,
    TimeoutError,
)
from popcorn.models.envelope import MessageType
from popcorn.session import HookSession
from popcorn.transport.envelope import create_envelope
from popcorn.transport.mailbox import Mailbox, Role

PLAN = {"planName": "login", "steps": [{"action": "click"}], "baseUrl": "/login"}


def make_session(root, timeout=2.0):
    return HookSession(Mailbox(root, role=Role.HOOK, poll_interval=FAST_POLL), timeout=timeout, watch_dir="web")


@pytest.mark.asyncio
async def test_connect_sends_hook_ready(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        assert session.connected
        assert await wait_for(lambda: len(extension_peer.received) == 1)
        ready = extension_peer.received[0]
        assert ready.type == MessageType.HOOK_READY
        assert ready.payload["watchDir"] == "web"
        assert ready.payload["hookVersion"]
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_start_demo_resolves_with_result(project_root, extension_peer):
    auto_reply(extension_peer, passed=True)
    session = make_session(project_root)
    await session.connect()
    try:
        result = await session.start_demo("login", PLAN, ["All steps pass"], "src/frontend/Login.tsx")
        assert result.test_plan_id == "login"
        assert result.passed
        assert session.pending_ids == []

        start = next(e for e in extension_peer.received if e.type == MessageType.START_DEMO)
        assert start.payload["testPlan"] == PLAN
        assert start.payload["acceptanceCriteria"] == ["All steps pass"]
        assert start.payload["triggeredBy"] == "src/frontend/Login.tsx"
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_start_demo_requires_connection(project_root):
    session = make_session(project_root)
    with pytest.raises(NotConnectedError):
        await session.start_demo("login", PLAN, [], "cli")


@pytest.mark.asyncio
async def test_duplicate_plan_id_rejected(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        first = asyncio.ensure_future(session.start_demo("login", PLAN, [], "cli"))
        assert await wait_for(lambda: session.pending_ids == ["login"])
        with pytest.raises(DuplicateRequestError):
            await session.start_demo("login", PLAN, [], "cli")
        # the original request is unaffected
        assert session.pending_ids == ["login"]
        assert not first.done()
    finally:
        await session.disconnect()
    with pytest.raises(DisconnectedError):
        await first


@pytest.mark.asyncio
async def test_result_for_unknown_plan_is_dropped(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        pending = asyncio.ensure_future(session.start_demo("checkout", PLAN, [], "cli"))
        await extension_peer.send_message(create_envelope(
            MessageType.DEMO_RESULT, {"testPlanId": "someone-else", "passed": True},
        ))
        await asyncio.sleep(0.1)
        assert not pending.done()
        await extension_peer.send_message(create_envelope(
            MessageType.DEMO_RESULT, {"testPlanId": "checkout", "passed": False},
        ))
        result = await asyncio.wait_for(pending, 2.0)
        assert result.test_plan_id == "checkout"
        assert not result.passed
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_disconnect_rejects_all_pending(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    names = ["a", "b", "c"]
    tasks = [asyncio.ensure_future(session.start_demo(n, PLAN, [], "cli")) for n in names]
    assert await wait_for(lambda: sorted(session.pending_ids) == names)

    await session.disconnect()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, DisconnectedError) for r in results)
    assert sorted(r.test_plan_id for r in results) == names
    assert session.pending_ids == []


@pytest.mark.asyncio
async def test_timeout_then_late_result_ignored(project_root, extension_peer):
    session = make_session(project_root, timeout=0.2)
    await session.connect()
    try:
        with pytest.raises(TimeoutError) as exc_info:
            await session.start_demo("slow", PLAN, [], "cli")
        assert "slow" in str(exc_info.value)
        assert exc_info.value.elapsed >= 0.15
        assert session.pending_ids == []

        await extension_peer.send_message(create_envelope(
            MessageType.DEMO_RESULT, {"testPlanId": "slow", "passed": True},
        ))
        await asyncio.sleep(0.1)
        # the same plan can be requested again after a timeout
        auto_reply(extension_peer)
        result = await session.start_demo("slow", PLAN, [], "cli")
        assert result.test_plan_id == "slow"
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_malformed_result_payload_fails_request(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        pending = asyncio.ensure_future(session.start_demo("login", PLAN, [], "cli"))
        assert await wait_for(lambda: session.pending_ids == ["login"])
        await extension_peer.send_message(create_envelope(
            MessageType.DEMO_RESULT, {"testPlanId": "login", "steps": "not-a-list"},
        ))
        with pytest.raises(PopcornError) as exc_info:
            await asyncio.wait_for(pending, 2.0)
        assert exc_info.value.code == "invalid_result"
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_other_message_types_ignored(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        pending = asyncio.ensure_future(session.start_demo("login", PLAN, [], "cli"))
        await extension_peer.send_message(create_envelope(
            MessageType.EXTENSION_READY, {"extensionVersion": "1.0", "testPlanId": "login"},
        ))
        await asyncio.sleep(0.1)
        assert not pending.done()
    finally:
        await session.disconnect()
    with pytest.raises(DisconnectedError):
        await pending


class FailingTransport:
    """Accepts hook_ready, then fails every other send."""

    def __init__(self):
        self.sent = []

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    def on_message(self, handler):
        return lambda: None

    async def send_message(self, envelope):
        if envelope.type != MessageType.HOOK_READY:
            raise DeliveryError("disk full")
        self.sent.append(envelope)


@pytest.mark.asyncio
async def test_failed_send_clears_pending():
    session = HookSession(FailingTransport(), timeout=5.0)
    await session.connect()
    with pytest.raises(DeliveryError):
        await session.start_demo("login", PLAN, [], "cli")
    assert session.pending_ids == []
    await session.disconnect()


@pytest.mark.asyncio
async def test_cancelled_caller_clears_pending(project_root, extension_peer):
    session = make_session(project_root)
    await session.connect()
    try:
        task = asyncio.ensure_future(session.start_demo("login", PLAN, [], "cli"))
        assert await wait_for(lambda: session.pending_ids == ["login"])
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.pending_ids == []
    finally:
        await session.disconnect()


@pytest.mark.asyncio
async def test_disconnect_without_connect_is_safe(project_root):
    session = make_session(project_root)
    await session.disconnect()
    assert not session.connected


@pytest.mark.asyncio
async def test_concurrent_hooks_each_get_their_own_result(project_root, extension_peer):
    auto_reply(extension_peer, passed=True)
    sessions = [
        HookSession(Mailbox(project_root, role=Role.HOOK, poll_interval=FAST_POLL, channel=name), timeout=2.0)
        for name in ("first", "second")
    ]
    for session in sessions:
        await session.connect()
    try:
        for _ in range(5):
            results = await asyncio.gather(*(s.start_demo("login", PLAN, [], "cli") for s in sessions))
            assert [r.test_plan_id for r in results] == ["login", "login"]
        starts = [e for e in extension_peer.received if e.type == MessageType.START_DEMO]
        assert sorted({e.payload["replyTo"] for e in starts}) == ["first", "second"]
    finally:
        for session in sessions:
            await session.disconnect()


@pytest.mark.asyncio
async def test_channel_less_session_sends_no_reply_channel(project_root, extension_peer):
    auto_reply(extension_peer)
    session = make_session(project_root)
    await session.connect()
    try:
        await session.start_demo("login", PLAN, [], "cli")
        start = next(e for e in extension_peer.received if e.type == MessageType.START_DEMO)
        assert start.payload["replyTo"] is None
    finally:
        await session.disconnect()
