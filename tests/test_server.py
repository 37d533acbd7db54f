import asyncio
import json

import pytest
import pytest_asyncio

from conftest import FAST_POLL, wait_for
from popcorn.config import load_config
from popcorn.daemon.server import BridgeServer
from popcorn.errors import ConnectionError, PopcornError
from popcorn.models.envelope import MessageType
from popcorn.session import HookSession
from popcorn.transport.envelope import create_envelope
from popcorn.transport.http import BridgeHttpClient
from popcorn.transport.mailbox import Mailbox, Role


@pytest_asyncio.fixture
async def bridge(project_root):
    server = BridgeServer(project_root, config=load_config({"pollIntervalMs": 10}), preferred_port=0)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def client(bridge):
    async with BridgeHttpClient(bridge.port) as c:
        await c.health()
        yield c


@pytest_asyncio.fixture
async def hook_mailbox(project_root, bridge):
    mailbox = Mailbox(project_root, role=Role.HOOK, poll_interval=FAST_POLL)
    mailbox.received = []
    mailbox.on_message(mailbox.received.append)
    await mailbox.connect()
    yield mailbox
    await mailbox.disconnect()


@pytest.mark.asyncio
async def test_health_reports_token(bridge):
    async with BridgeHttpClient(bridge.port) as c:
        data = await c.health()
    assert data["ok"] is True
    assert data["port"] == bridge.port
    assert data["token"] == bridge.token


@pytest.mark.asyncio
async def test_routes_require_token(bridge):
    async with BridgeHttpClient(bridge.port, token="wrong") as c:
        with pytest.raises(PopcornError) as exc_info:
            await c.poll()
    assert exc_info.value.details["status"] == 401


@pytest.mark.asyncio
async def test_hook_messages_relayed_to_poll(client, hook_mailbox):
    await hook_mailbox.send_message(create_envelope(MessageType.START_DEMO, {"testPlanId": "login"}))

    messages = []

    async def drained():
        messages.extend(await client.poll())
        return bool(messages)

    for _ in range(100):
        if await drained():
            break
        await asyncio.sleep(0.02)
    assert [m.type for m in messages] == ["start_demo"]
    assert messages[0].payload["testPlanId"] == "login"
    # drained queues are not replayed
    assert await client.poll() == []


@pytest.mark.asyncio
async def test_result_forwarded_to_hook(bridge, client, hook_mailbox):
    seen = []
    bridge.on_result(seen.append)
    envelope = create_envelope(MessageType.DEMO_RESULT, {"testPlanId": "login", "passed": True})
    assert (await client.post_result(envelope))["ok"] is True
    assert await wait_for(lambda: len(hook_mailbox.received) == 1)
    assert hook_mailbox.received[0] == envelope
    assert seen == [envelope]


@pytest.mark.asyncio
async def test_invalid_result_rejected(client, hook_mailbox):
    with pytest.raises(PopcornError) as exc_info:
        await client._request("POST", "/result", {"message": {"type": "demo_result"}})
    assert exc_info.value.details["status"] == 400
    await asyncio.sleep(0.05)
    assert hook_mailbox.received == []


@pytest.mark.asyncio
async def test_demo_enqueued_for_extension(bridge, client):
    envelope = create_envelope(MessageType.START_DEMO, {"testPlanId": "popup"})
    await client.post_demo(envelope)
    assert bridge.queue_size == 1
    assert await client.poll() == [envelope]


@pytest.mark.asyncio
async def test_plans_routes(project_root, client):
    plans = project_root / "test-plans"
    plans.mkdir()
    plan = {"planName": "login", "steps": [], "baseUrl": "/"}
    (plans / "login.json").write_text(json.dumps(plan))
    (plans / "bad.json").write_text(json.dumps({"planName": "bad"}))

    assert await client.list_plans() == ["bad", "login"]
    assert await client.get_plan("login") == plan
    with pytest.raises(PopcornError) as exc_info:
        await client.get_plan("missing")
    assert exc_info.value.details["status"] == 404
    with pytest.raises(PopcornError) as exc_info:
        await client.get_plan("bad")
    assert exc_info.value.details["status"] == 422


@pytest.mark.asyncio
async def test_config_routes_persist(project_root, bridge, client):
    config = await client.get_config()
    assert config["watchDir"] == "src/frontend"

    await client.set_config({**config, "watchDir": "app"})
    assert bridge.config.watch_dir == "app"
    saved = json.loads((project_root / "popcorn.config.json").read_text())
    assert saved["watchDir"] == "app"


@pytest.mark.asyncio
async def test_shutdown_route(bridge, client):
    await client.shutdown()
    await asyncio.wait_for(bridge.wait_stopped(), 1.0)


@pytest.mark.asyncio
async def test_backlog_purged_on_start(project_root):
    hook = Mailbox(project_root, role=Role.HOOK, poll_interval=FAST_POLL)
    await hook.connect()
    await hook.send_message(create_envelope(MessageType.START_DEMO, {"testPlanId": "old"}))
    await hook.disconnect()

    server = BridgeServer(project_root, config=load_config({"pollIntervalMs": 10}), preferred_port=0)
    await server.start()
    try:
        await asyncio.sleep(0.05)
        assert server.queue_size == 0
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_client_unreachable_port():
    async with BridgeHttpClient(1, timeout=0.5) as c:
        with pytest.raises(ConnectionError):
            await c.health()


@pytest.mark.asyncio
async def test_results_routed_to_requesting_hook(project_root, bridge, client):
    sessions = [
        HookSession(Mailbox(project_root, role=Role.HOOK, poll_interval=FAST_POLL, channel=name), timeout=5.0)
        for name in ("left", "right")
    ]
    for session in sessions:
        await session.connect()

    async def extension():
        # answers without echoing replyTo, oldest request first
        answered = 0
        while answered < 2:
            for message in await client.poll():
                if message.type != MessageType.START_DEMO:
                    continue
                summary = message.payload["replyTo"]
                await client.post_result(create_envelope(MessageType.DEMO_RESULT, {
                    "testPlanId": message.payload["testPlanId"],
                    "passed": True,
                    "summary": summary,
                }))
                answered += 1
            await asyncio.sleep(0.01)

    try:
        results = await asyncio.wait_for(asyncio.gather(
            *(s.start_demo("login", {"planName": "login"}, [], "cli") for s in sessions),
            extension(),
        ), 5.0)
        assert [r.summary for r in results[:2]] == ["left", "right"]
    finally:
        for session in sessions:
            await session.disconnect()


@pytest.mark.asyncio
async def test_result_for_closed_hook_dropped(project_root, bridge, client):
    mailbox = Mailbox(project_root, role=Role.HOOK, poll_interval=FAST_POLL, channel="late")
    await mailbox.connect()
    await mailbox.send_message(create_envelope(MessageType.START_DEMO, {"testPlanId": "login", "replyTo": "late"}))
    assert await wait_for(lambda: bridge.queue_size == 1)
    await mailbox.disconnect()

    envelope = create_envelope(MessageType.DEMO_RESULT, {"testPlanId": "login", "passed": False, "replyTo": "late"})
    assert (await client.post_result(envelope))["ok"] is True
    assert not (project_root / ".popcorn" / "inbox" / "late").exists()


@pytest.mark.asyncio
async def test_invalid_config_rejected(project_root, bridge, client):
    with pytest.raises(PopcornError) as exc_info:
        await client.set_config({"bridgePort": "nope"})
    assert exc_info.value.details["status"] == 400
    assert "bridgePort" in str(exc_info.value)
    assert bridge.config.bridge_port != "nope"
    assert not (project_root / "popcorn.config.json").exists()
