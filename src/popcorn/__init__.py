"""
popcorn-bridge — hook-side bridge between a coding agent and the popcorn
browser extension.

File mailbox + local bridge daemon for delivering demo requests and results.
"""

__version__ = "0.1.0"

from popcorn.client import Popcorn, AsyncPopcorn
from popcorn.config import PopcornConfig, load_config, load_config_from_file
from popcorn.errors import (
    PopcornError,
    ConnectionError,
    DeliveryError,
    NotConnectedError,
    TimeoutError,
    DisconnectedError,
    DuplicateRequestError,
    DaemonStartError,
    PlanLoadError,
)
from popcorn.models.envelope import Envelope, MessageType
from popcorn.models.results import DemoResult
from popcorn.session import HookSession
from popcorn.transport.mailbox import Mailbox, Role

__all__ = [
    "Popcorn",
    "AsyncPopcorn",
    "PopcornConfig",
    "load_config",
    "load_config_from_file",
    "PopcornError",
    "ConnectionError",
    "DeliveryError",
    "NotConnectedError",
    "TimeoutError",
    "DisconnectedError",
    "DuplicateRequestError",
    "DaemonStartError",
    "PlanLoadError",
    "Envelope",
    "MessageType",
    "DemoResult",
    "HookSession",
    "Mailbox",
    "Role",
]
