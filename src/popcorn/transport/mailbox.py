"""
File-based mailbox between the hook and the extension side of the bridge.

Layout under <project>/.popcorn/:
  outbox/            hook -> extension envelopes
  inbox/             extension -> hook envelopes for channel-less readers
  inbox/<channel>/   extension -> hook envelopes for one hook process

Each envelope is one JSON file named `<ns>-<seq>-<rand>.json`. Names sort in
send order for a single sender. Files are written under a hidden temp name
and renamed into place, so a reader never sees a partial entry. The reader
deletes an entry once every handler has seen it.

A hook mailbox opened with a channel reads only its own inbox subdirectory,
so concurrent hook processes on one project never consume each other's
results. The channel directory is removed on disconnect.
"""

import asyncio
import enum
import logging
import os
import re
import secrets
import shutil
import time
from pathlib import Path
from typing import Callable, Optional, Union

from popcorn.errors import ConnectionError, DeliveryError, NotConnectedError
from popcorn.models.envelope import Envelope
from popcorn.transport.envelope import serialize_envelope, validate_message

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".popcorn"
DEFAULT_POLL_INTERVAL_S = 0.5
CHANNEL_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

MessageHandler = Callable[[Envelope], None]


class Role(str, enum.Enum):
    HOOK = "hook"
    EXTENSION = "extension"


def state_dir(project_root: Union[str, Path]) -> Path:
    return Path(project_root).resolve() / STATE_DIR_NAME


class Mailbox:
    def __init__(
        self,
        project_root: Union[str, Path],
        role: Role = Role.HOOK,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        channel: Optional[str] = None,
    ):
        self._project_root = Path(project_root).resolve()
        self._role = Role(role)
        self._poll_interval = poll_interval
        if channel is not None:
            if self._role is not Role.HOOK:
                raise ValueError("Only hook mailboxes read from a channel")
            if not CHANNEL_PATTERN.match(channel):
                raise ValueError(f"Invalid mailbox channel: {channel!r}")
        self._channel = channel

        outbox = state_dir(self._project_root) / "outbox"
        inbox = state_dir(self._project_root) / "inbox"
        if self._role is Role.HOOK:
            self._send_dir = outbox
            self._recv_dir = inbox / channel if channel else inbox
        else:
            self._send_dir, self._recv_dir = inbox, outbox

        self._handlers: list[MessageHandler] = []
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._poll_lock = asyncio.Lock()
        self._processed: set[str] = set()
        self._connected = False
        self._seq = 0
        self._last_ns = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def role(self) -> Role:
        return self._role

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    @property
    def outbox_dir(self) -> Path:
        return state_dir(self._project_root) / "outbox"

    @property
    def inbox_dir(self) -> Path:
        return state_dir(self._project_root) / "inbox"

    async def connect(self) -> None:
        """Create the queue directories and start polling."""
        if self._connected:
            return
        if not self._project_root.is_dir():
            raise ConnectionError(f"Project directory not accessible: {self._project_root}")
        try:
            self._send_dir.mkdir(parents=True, exist_ok=True)
            self._recv_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConnectionError(f"Cannot create mailbox under {self._project_root}: {e}") from e

        self._connected = True
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.debug("Mailbox connected role=%s send=%s recv=%s", self._role.value, self._send_dir, self._recv_dir)

    async def disconnect(self) -> None:
        """Stop polling. Safe to call repeatedly."""
        self._connected = False
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._processed.clear()
        if self._channel is not None:
            try:
                shutil.rmtree(self._recv_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove mailbox channel %s: %s", self._channel, e)

    def channels(self) -> list[str]:
        """Hook channels currently open under the inbox."""
        try:
            entries = list(self.inbox_dir.iterdir())
        except FileNotFoundError:
            return []
        return sorted(e.name for e in entries if e.is_dir() and CHANNEL_PATTERN.match(e.name))

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Add a handler for received envelopes. Returns a function that removes it."""
        self._handlers.append(handler)

        def remove() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass
        return remove

    async def send_message(self, envelope: Envelope, channel: Optional[str] = None) -> None:
        """Commit an envelope to the peer's queue. Does not wait for it to be read.

        `channel` targets one hook's inbox subdirectory; it must already exist.
        """
        if not self._connected:
            raise NotConnectedError("Mailbox is not connected. Call connect() first.")

        directory = self._send_dir
        if channel is not None:
            if not CHANNEL_PATTERN.match(channel):
                raise DeliveryError(f"Invalid mailbox channel: {channel!r}", {"channel": channel})
            directory = self._send_dir / channel
            if not directory.is_dir():
                raise DeliveryError(f"Mailbox channel is closed: {channel}", {"channel": channel})

        name = self._next_file_name()
        target = directory / name
        tmp = directory / f".{name}.tmp"
        try:
            tmp.write_text(serialize_envelope(envelope), encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise DeliveryError(
                f"Failed to write {envelope.type} to {directory}: {e}",
                {"file": name, "type": envelope.type},
            ) from e
        logger.debug("Message sent type=%s file=%s", envelope.type, name)

    async def poll_once(self) -> int:
        """Run one delivery cycle. Returns the number of envelopes dispatched."""
        async with self._poll_lock:
            return self._drain()

    def purge(self) -> int:
        """Drop every queued entry in both directions, channel inboxes included."""
        removed = 0
        directories = [self.outbox_dir, self.inbox_dir]
        directories += [self.inbox_dir / name for name in self.channels()]
        for directory in directories:
            try:
                entries = list(directory.iterdir())
            except FileNotFoundError:
                continue
            for entry in entries:
                if entry.suffix == ".json" or entry.name.endswith(".tmp"):
                    entry.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Purged %d queued message(s)", removed)
        return removed

    # --------------- private ---------------

    async def _poll_loop(self) -> None:
        while self._connected:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Mailbox poll cycle failed; retrying next interval")
            await asyncio.sleep(self._poll_interval)

    def _drain(self) -> int:
        try:
            names = sorted(
                entry.name for entry in self._recv_dir.iterdir()
                if entry.name.endswith(".json") and not entry.name.startswith(".")
            )
        except FileNotFoundError:
            logger.warning("Mailbox directory missing: %s", self._recv_dir)
            return 0
        except OSError as e:
            logger.debug("Mailbox listing failed: %s", e)
            return 0

        dispatched = 0
        for name in names:
            if name in self._processed:
                continue
            path = self._recv_dir / name
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.debug("Could not read %s, will retry: %s", name, e)
                continue

            result = validate_message(raw)
            self._processed.add(name)
            if not result.valid or result.message is None:
                logger.warning("Skipping malformed mailbox entry file=%s error=%s", name, result.error)
                continue

            envelope = result.message
            logger.debug("Message received type=%s file=%s", envelope.type, name)
            for handler in list(self._handlers):
                try:
                    # each handler gets its own payload
                    handler(envelope.model_copy(deep=True))
                except Exception:
                    logger.exception("Message handler failed for %s", envelope.type)
            dispatched += 1

            try:
                path.unlink()
                self._processed.discard(name)
            except FileNotFoundError:
                self._processed.discard(name)
            except OSError as e:
                logger.debug("Could not remove %s: %s", name, e)
        return dispatched

    def _next_file_name(self) -> str:
        self._last_ns = max(time.time_ns(), self._last_ns + 1)
        self._seq += 1
        return f"{self._last_ns:020d}-{self._seq:06d}-{secrets.token_hex(3)}.json"
