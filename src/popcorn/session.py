"""
Hook-side protocol session: handshake plus request/result correlation.

Each start_demo call owns one pending entry keyed by testPlanId. The entry is
settled exactly once, by the first matching demo_result, by its own timer, or
by disconnect(), and is removed from the pending map when settled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from popcorn import __version__
from popcorn.errors import (
    DisconnectedError,
    DuplicateRequestError,
    NotConnectedError,
    PopcornError,
    TimeoutError,
)
from popcorn.models.envelope import Envelope, HookReadyPayload, MessageType, StartDemoPayload
from popcorn.models.results import DemoResult
from popcorn.transport.envelope import create_envelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_WATCH_DIR = "src/frontend"


class Transport(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_message(self, envelope: Envelope) -> None: ...

    def on_message(self, handler: Callable[[Envelope], None]) -> Callable[[], None]: ...


class _PendingDemo:
    __slots__ = ("test_plan_id", "future", "timer", "started")

    def __init__(self, test_plan_id: str, future: asyncio.Future[DemoResult]):
        self.test_plan_id = test_plan_id
        self.future = future
        self.timer: Optional[asyncio.TimerHandle] = None
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class HookSession:
    def __init__(
        self,
        transport: Transport,
        timeout: float = DEFAULT_TIMEOUT_S,
        hook_version: str = __version__,
        watch_dir: str = DEFAULT_WATCH_DIR,
    ):
        self._transport = transport
        self._timeout = timeout
        self._hook_version = hook_version
        self._watch_dir = watch_dir
        self._pending: dict[str, _PendingDemo] = {}
        self._remove_handler: Optional[Callable[[], None]] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def timeout(self) -> float:
        return self._timeout

    async def connect(self) -> None:
        """Connect the transport and send hook_ready.

        Returns once the handshake is written; the extension may pick it up later.
        """
        if self._connected:
            return
        await self._transport.connect()
        self._remove_handler = self._transport.on_message(self._handle_message)
        await self._transport.send_message(create_envelope(
            MessageType.HOOK_READY,
            HookReadyPayload(hook_version=self._hook_version, watch_dir=self._watch_dir),
        ))
        self._connected = True
        logger.info("Hook session connected version=%s watch_dir=%s", self._hook_version, self._watch_dir)

    async def disconnect(self) -> None:
        """Disconnect the transport and reject every pending demo."""
        was_connected = self._connected
        self._connected = False
        if self._remove_handler is not None:
            self._remove_handler()
            self._remove_handler = None
        await self._transport.disconnect()

        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(DisconnectedError(test_plan_id=entry.test_plan_id))
        if was_connected:
            logger.info("Hook session disconnected rejected=%d", len(pending))

    async def start_demo(
        self,
        test_plan_id: str,
        test_plan: dict[str, Any],
        acceptance_criteria: list[str],
        triggered_by: str,
    ) -> DemoResult:
        """Send start_demo and wait for the matching demo_result."""
        if not self._connected:
            raise NotConnectedError("Not connected to extension. Call connect() first.")
        if test_plan_id in self._pending:
            raise DuplicateRequestError(test_plan_id)

        loop = asyncio.get_running_loop()
        entry = _PendingDemo(test_plan_id, loop.create_future())
        entry.timer = loop.call_later(self._timeout, self._expire, entry)
        self._pending[test_plan_id] = entry

        message = create_envelope(MessageType.START_DEMO, StartDemoPayload(
            test_plan_id=test_plan_id,
            test_plan=test_plan,
            acceptance_criteria=acceptance_criteria,
            triggered_by=triggered_by,
            reply_to=getattr(self._transport, "channel", None),
        ))
        try:
            await self._transport.send_message(message)
            logger.info("Demo started test_plan_id=%s triggered_by=%s", test_plan_id, triggered_by)
            return await entry.future
        finally:
            self._discard(entry)

    # --------------- private ---------------

    def _handle_message(self, envelope: Envelope) -> None:
        if envelope.type != MessageType.DEMO_RESULT:
            return

        test_plan_id = envelope.payload.get("testPlanId")
        entry = self._pending.get(test_plan_id) if isinstance(test_plan_id, str) else None
        if entry is None or entry.future.done():
            logger.debug("Dropping demo_result with no pending request test_plan_id=%s", test_plan_id)
            return

        self._discard(entry)
        try:
            result = DemoResult.model_validate(envelope.payload)
        except ValidationError as e:
            entry.future.set_exception(PopcornError(
                "invalid_result",
                f"Malformed demo_result for plan: {test_plan_id}",
                {"errors": e.errors(include_url=False)},
            ))
            return
        entry.future.set_result(result)
        logger.info(
            "Demo result received test_plan_id=%s passed=%s elapsed=%.2fs",
            test_plan_id, result.passed, entry.elapsed,
        )

    def _expire(self, entry: _PendingDemo) -> None:
        if self._pending.get(entry.test_plan_id) is not entry or entry.future.done():
            return
        self._discard(entry)
        elapsed = entry.elapsed
        logger.warning("Demo timed out test_plan_id=%s elapsed=%.2fs", entry.test_plan_id, elapsed)
        entry.future.set_exception(TimeoutError(
            f"Demo timed out after {elapsed:.1f}s for plan: {entry.test_plan_id}",
            test_plan_id=entry.test_plan_id,
            elapsed=elapsed,
        ))

    def _discard(self, entry: _PendingDemo) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if self._pending.get(entry.test_plan_id) is entry:
            del self._pending[entry.test_plan_id]
