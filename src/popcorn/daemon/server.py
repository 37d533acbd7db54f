"""
Bridge daemon — local HTTP control port for the browser extension.

The extension never touches the project directory. It polls this server,
which relays between HTTP and the file mailbox, acting as the extension-side
mailbox peer:

  GET  /health        discovery (no token): port, version, token, baseUrl
  GET  /poll          drain envelopes queued for the extension
  POST /result        envelope from the extension, forwarded to the hook inbox
  POST /demo          enqueue an envelope for the extension (popup-triggered demos)
  GET  /config        current project config
  POST /config        replace and persist the project config
  GET  /plans         list test plan names
  GET  /plans/{name}  load one test plan
  POST /shutdown      stop the daemon

Every route but /health requires the X-Popcorn-Token header.
"""

import asyncio
import errno
import logging
import os
import secrets
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from aiohttp import web
from pydantic import ValidationError

from popcorn import __version__
from popcorn.config import PopcornConfig, load_config, load_config_from_file, save_config
from popcorn.errors import DeliveryError, PlanLoadError, PlanNotFoundError, PopcornError
from popcorn.models.bridge import BridgeInfo
from popcorn.models.envelope import Envelope, MessageType
from popcorn.plan_loader import list_test_plans, load_test_plan
from popcorn.transport.envelope import validate_message
from popcorn.transport.http import TOKEN_HEADER
from popcorn.transport.mailbox import Mailbox, Role
from popcorn.daemon.registry import read_registry, registry_path, remove_registry, write_registry

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
MAX_PORT_ATTEMPTS = 10

ResultCallback = Callable[[Envelope], None]


class BridgeServer:
    def __init__(
        self,
        project_root: Union[str, Path],
        config: Optional[PopcornConfig] = None,
        preferred_port: Optional[int] = None,
        host: str = DEFAULT_HOST,
    ):
        self._project_root = Path(project_root).resolve()
        self._config = config or load_config()
        self._preferred_port = self._config.bridge_port if preferred_port is None else preferred_port
        self._host = host
        self._token = secrets.token_hex(16)
        self._port = 0
        self._queue: list[Envelope] = []
        # testPlanId -> hook channels waiting on a demo_result, oldest first
        self._reply_routes: dict[str, list[str]] = {}
        self._result_callbacks: list[ResultCallback] = []
        self._mailbox = Mailbox(self._project_root, role=Role.EXTENSION, poll_interval=self._config.poll_interval)
        self._runner: Optional[web.AppRunner] = None
        self._stopped = asyncio.Event()

        self._app = web.Application(middlewares=[self._cors_middleware, self._auth_middleware])
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/poll", self._handle_poll)
        r.add_post("/result", self._handle_result)
        r.add_post("/demo", self._handle_demo)
        r.add_get("/config", self._handle_get_config)
        r.add_post("/config", self._handle_set_config)
        r.add_get("/plans", self._handle_list_plans)
        r.add_get("/plans/{name}", self._handle_get_plan)
        r.add_post("/shutdown", self._handle_shutdown)

    @property
    def port(self) -> int:
        return self._port

    @property
    def token(self) -> str:
        return self._token

    @property
    def config(self) -> PopcornConfig:
        return self._config

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def on_result(self, callback: ResultCallback) -> None:
        """Register a callback invoked for every envelope the extension posts."""
        self._result_callbacks.append(callback)

    def enqueue_message(self, envelope: Envelope) -> None:
        if envelope.type == MessageType.START_DEMO:
            self._remember_reply_route(envelope)
        self._queue.append(envelope)
        logger.debug("Message enqueued type=%s", envelope.type)

    async def start(self) -> int:
        """Bind 127.0.0.1, probing upward from the preferred port. Returns the bound port."""
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()

        attempts = 1 if self._preferred_port == 0 else MAX_PORT_ATTEMPTS
        for attempt in range(attempts):
            port = self._preferred_port + attempt
            site = web.TCPSite(self._runner, self._host, port)
            try:
                await site.start()
            except OSError as e:
                await site.stop()
                if e.errno == errno.EADDRINUSE and attempt < attempts - 1:
                    logger.debug("Port %d in use, trying next", port)
                    continue
                await self._runner.cleanup()
                self._runner = None
                raise
            self._port = self._runner.addresses[0][1]
            break

        # a restarted daemon does not replay an old backlog
        self._mailbox.purge()
        self._mailbox.on_message(self.enqueue_message)
        await self._mailbox.connect()
        logger.info("Bridge server started on %s:%d", self._host, self._port)
        return self._port

    async def stop(self) -> None:
        await self._mailbox.disconnect()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._queue.clear()
        self._reply_routes.clear()
        self._result_callbacks.clear()
        self._port = 0
        self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def request_shutdown(self) -> None:
        self._stopped.set()

    # --------------- handlers ---------------

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response(status=204)
        else:
            response = await handler(request)
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Headers"] = f"Content-Type, {TOKEN_HEADER}"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if request.path != "/health" and request.headers.get(TOKEN_HEADER) != self._token:
            return web.json_response({"ok": False, "error": "Unauthorized"}, status=401)
        return await handler(request)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "port": self._port,
            "version": __version__,
            "token": self._token,
            "baseUrl": self._config.base_url,
        })

    async def _handle_poll(self, request: web.Request) -> web.Response:
        messages, self._queue = self._queue, []
        return web.json_response({"messages": [m.model_dump(mode="json") for m in messages]})

    async def _handle_result(self, request: web.Request) -> web.Response:
        envelope, error = await self._read_envelope(request)
        if envelope is None:
            return web.json_response({"ok": False, "error": error}, status=400)

        logger.debug("Result received type=%s", envelope.type)
        for channel in self._reply_channels(envelope):
            try:
                await self._mailbox.send_message(envelope, channel=channel)
            except DeliveryError as e:
                if channel is None:
                    logger.error("Failed to forward %s to hook: %s", envelope.type, e)
                    return web.json_response({"ok": False, "error": str(e)}, status=500)
                # the hook gave up waiting and closed its inbox
                logger.warning("Dropping %s for closed channel %s", envelope.type, channel)
            except PopcornError as e:
                logger.error("Failed to forward %s to hook: %s", envelope.type, e)
                return web.json_response({"ok": False, "error": str(e)}, status=500)
        for callback in list(self._result_callbacks):
            try:
                callback(envelope)
            except Exception:
                logger.exception("Result callback failed")
        return web.json_response({"ok": True})

    async def _handle_demo(self, request: web.Request) -> web.Response:
        envelope, error = await self._read_envelope(request)
        if envelope is None:
            return web.json_response({"ok": False, "error": error}, status=400)
        self.enqueue_message(envelope)
        logger.info("Demo enqueued via POST /demo type=%s", envelope.type)
        return web.json_response({"ok": True})

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "config": self._config.to_json_dict()})

    async def _handle_set_config(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"ok": False, "error": "Invalid JSON"}, status=400)
        if not isinstance(data, dict) or not isinstance(data.get("config"), dict):
            return web.json_response({"ok": False, "error": "Missing config object"}, status=400)
        try:
            config = load_config(data["config"])
        except ValidationError as e:
            message = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            return web.json_response({"ok": False, "error": f"Invalid config: {message}"}, status=400)
        except ValueError as e:
            return web.json_response({"ok": False, "error": f"Invalid config: {e}"}, status=400)
        try:
            save_config(self._project_root, config)
        except OSError as e:
            logger.error("Failed to save config: %s", e)
            return web.json_response({"ok": False, "error": "Failed to save config"}, status=500)
        self._config = config
        logger.info("Config updated and saved")
        return web.json_response({"ok": True})

    async def _handle_list_plans(self, request: web.Request) -> web.Response:
        try:
            plans = list_test_plans(self._plans_dir())
        except PlanLoadError as e:
            logger.error("Failed to list plans: %s", e)
            return web.json_response({"ok": False, "error": "Failed to list plans"}, status=500)
        return web.json_response({"ok": True, "plans": plans})

    async def _handle_get_plan(self, request: web.Request) -> web.Response:
        plan_name = request.match_info["name"]
        try:
            plan = load_test_plan(plan_name, self._plans_dir())
        except PlanNotFoundError:
            return web.json_response({"ok": False, "error": "Plan not found"}, status=404)
        except PlanLoadError as e:
            logger.error("Failed to load plan %s: %s", plan_name, e)
            return web.json_response({"ok": False, "error": str(e)}, status=422)
        return web.json_response({"ok": True, "plan": plan})

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        logger.info("Remote shutdown requested")
        self.request_shutdown()
        return web.json_response({"ok": True})

    # --------------- private ---------------

    def _remember_reply_route(self, envelope: Envelope) -> None:
        test_plan_id = envelope.payload.get("testPlanId")
        reply_to = envelope.payload.get("replyTo")
        if isinstance(test_plan_id, str) and isinstance(reply_to, str):
            self._reply_routes.setdefault(test_plan_id, []).append(reply_to)

    def _reply_channels(self, envelope: Envelope) -> list[Optional[str]]:
        """Hook inboxes an extension envelope is written to.

        A demo_result goes to the channel that asked for that plan, oldest
        open request first. Anything else is copied to every open channel.
        """
        open_channels = self._mailbox.channels()
        if envelope.type != MessageType.DEMO_RESULT:
            return list(open_channels) or [None]

        test_plan_id = envelope.payload.get("testPlanId")
        if not isinstance(test_plan_id, str):
            return [None]
        routes = [c for c in self._reply_routes.pop(test_plan_id, []) if c in open_channels]
        reply_to = envelope.payload.get("replyTo")
        if isinstance(reply_to, str):
            if reply_to in routes:
                routes.remove(reply_to)
        elif routes:
            reply_to = routes.pop(0)
        else:
            reply_to = None
        if routes:
            self._reply_routes[test_plan_id] = routes
        return [reply_to]

    async def _read_envelope(self, request: web.Request) -> tuple[Optional[Envelope], Optional[str]]:
        try:
            data = await request.json()
        except ValueError:
            return None, "Invalid JSON"
        # accept {"message": envelope} or a bare envelope
        if isinstance(data, dict) and "message" in data:
            data = data["message"]
        result = validate_message(data)
        if not result.valid:
            return None, result.error
        return result.message, None

    def _plans_dir(self) -> Path:
        return self._project_root / self._config.test_plans_dir


async def serve(project_root: Union[str, Path], preferred_port: Optional[int] = None) -> None:
    """Run the daemon in the foreground until SIGINT/SIGTERM or POST /shutdown."""
    root = Path(project_root).resolve()
    config = load_config_from_file(root)
    bridge = BridgeServer(root, config=config, preferred_port=preferred_port)
    port = await bridge.start()

    write_registry(root, BridgeInfo(
        pid=os.getpid(),
        port=port,
        token=bridge.token,
        started_at=datetime.now(timezone.utc).isoformat(),
    ))
    logger.info("Bridge daemon running on http://%s:%d (registry %s)", DEFAULT_HOST, port, registry_path(root))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bridge.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform / loop
            pass

    try:
        await bridge.wait_stopped()
    finally:
        logger.info("Shutting down bridge daemon")
        await bridge.stop()
        current = read_registry(root)
        if current is not None and current.pid == os.getpid():
            remove_registry(root)
