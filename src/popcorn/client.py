"""
AsyncPopcorn / Popcorn — hook-side clients.
"""

import asyncio
import secrets
from pathlib import Path
from typing import Any, Optional, Union

from popcorn.config import PopcornConfig, load_config_from_file
from popcorn.errors import NotConnectedError
from popcorn.lifecycle import ensure_daemon
from popcorn.models.bridge import BridgeInfo
from popcorn.models.results import DemoResult
from popcorn.plan_loader import list_test_plans, load_test_plan
from popcorn.session import HookSession
from popcorn.transport.mailbox import Mailbox, Role

DEFAULT_ACCEPTANCE_CRITERIA = ["All steps pass"]


class AsyncPopcorn:
    """Async hook client (primary)."""

    def __init__(
        self,
        project_root: Union[str, Path, None] = None,
        start_daemon: bool = True,
        **config_overrides: Any,
    ):
        self._project_root = Path(project_root or Path.cwd()).resolve()
        self._start_daemon = start_daemon
        self.config: PopcornConfig = load_config_from_file(self._project_root, config_overrides)
        self._mailbox: Optional[Mailbox] = None
        self._session: Optional[HookSession] = None
        self._bridge: Optional[BridgeInfo] = None

    @property
    def project_root(self) -> Path:
        return self._project_root

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.connected

    @property
    def bridge(self) -> Optional[BridgeInfo]:
        return self._bridge

    @property
    def test_plans_dir(self) -> Path:
        return self._project_root / self.config.test_plans_dir

    async def connect(self) -> None:
        if self.connected:
            return
        if self._start_daemon:
            self._bridge = await ensure_daemon(self._project_root, preferred_port=self.config.bridge_port)
        self._mailbox = Mailbox(
            self._project_root,
            role=Role.HOOK,
            poll_interval=self.config.poll_interval,
            channel=secrets.token_hex(8),
        )
        self._session = HookSession(
            self._mailbox,
            timeout=self.config.demo_timeout,
            watch_dir=self.config.watch_dir,
        )
        await self._session.connect()

    async def disconnect(self) -> None:
        if self._session is not None:
            await self._session.disconnect()
            self._session = None
            self._mailbox = None

    async def start_demo(
        self,
        test_plan_id: str,
        test_plan: dict[str, Any],
        acceptance_criteria: Optional[list[str]] = None,
        triggered_by: str = "cli",
    ) -> DemoResult:
        self._ensure_connected()
        return await self._session.start_demo(  # type: ignore[union-attr]
            test_plan_id,
            test_plan,
            acceptance_criteria if acceptance_criteria is not None else list(DEFAULT_ACCEPTANCE_CRITERIA),
            triggered_by,
        )

    async def run_plan(
        self,
        plan_name: str,
        triggered_by: str = "cli",
        acceptance_criteria: Optional[list[str]] = None,
    ) -> DemoResult:
        """Load a plan from the test-plans directory and run it as a demo."""
        plan = self.load_plan(plan_name)
        return await self.start_demo(plan["planName"], plan, acceptance_criteria, triggered_by)

    def load_plan(self, plan_name: str) -> dict[str, Any]:
        """Load a plan, resolving a relative baseUrl against the configured one."""
        plan = load_test_plan(plan_name, self.test_plans_dir)
        if self.config.base_url and plan["baseUrl"].startswith("/"):
            plan = {**plan, "baseUrl": self.config.base_url.rstrip("/") + plan["baseUrl"]}
        return plan

    def list_plans(self) -> list[str]:
        return list_test_plans(self.test_plans_dir)

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError()

    async def __aenter__(self) -> "AsyncPopcorn":
        await self.connect()
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.disconnect()


class Popcorn:
    """Sync wrapper around AsyncPopcorn. Runs the event loop internally."""

    def __init__(self, **kwargs: Any):
        self._async = AsyncPopcorn(**kwargs)
        self._loop = asyncio.new_event_loop()

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def config(self) -> PopcornConfig:
        return self._async.config

    @property
    def connected(self) -> bool:
        return self._async.connected

    def connect(self) -> None:
        self._run(self._async.connect())

    def disconnect(self) -> None:
        self._run(self._async.disconnect())

    def close(self) -> None:
        if not self._loop.is_closed():
            self.disconnect()
            self._loop.close()

    def start_demo(self, test_plan_id: str, test_plan: dict[str, Any], **kwargs: Any) -> DemoResult:
        return self._run(self._async.start_demo(test_plan_id, test_plan, **kwargs))

    def run_plan(self, plan_name: str, **kwargs: Any) -> DemoResult:
        return self._run(self._async.run_plan(plan_name, **kwargs))

    def list_plans(self) -> list[str]:
        return self._async.list_plans()
