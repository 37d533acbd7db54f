"""
Envelope construction, validation and (de)serialization.
"""

import json
import threading
import time
import uuid
from typing import Any, NamedTuple, Optional, Union

from pydantic import BaseModel, ValidationError

from popcorn.models.envelope import KNOWN_TYPES, Envelope

_clock_lock = threading.Lock()
_last_timestamp = 0


def _next_timestamp() -> int:
    """Wall-clock milliseconds, bumped so successive envelopes never tie."""
    global _last_timestamp
    with _clock_lock:
        now = int(time.time() * 1000)
        _last_timestamp = max(now, _last_timestamp + 1)
        return _last_timestamp


def create_envelope(event_type: str, payload: Union[BaseModel, dict[str, Any]]) -> Envelope:
    """Build a new envelope with a fresh id and timestamp."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True, mode="json")
    return Envelope(
        id=str(uuid.uuid4()),
        type=event_type,
        payload=payload,
        timestamp=_next_timestamp(),
    )


def parse_envelope(raw: Any) -> Optional[Envelope]:
    """Parse a received envelope. Returns None if invalid."""
    try:
        return Envelope.model_validate(raw)
    except ValidationError:
        return None


def is_known_message_type(event_type: str) -> bool:
    return event_type in KNOWN_TYPES


class ValidationResult(NamedTuple):
    valid: bool
    message: Optional[Envelope] = None
    error: Optional[str] = None


def validate_message(value: Any) -> ValidationResult:
    """Validate a dict or JSON string as an envelope, naming what is wrong."""
    if value is None:
        return ValidationResult(False, error="Message is null")

    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            return ValidationResult(False, error="Message is not valid JSON")

    if not isinstance(value, dict):
        return ValidationResult(False, error=f"Expected object, got {type(value).__name__}")

    missing = []
    if not isinstance(value.get("id"), str):
        missing.append("id (string)")
    if not isinstance(value.get("type"), str):
        missing.append("type (string)")
    if not isinstance(value.get("timestamp"), int) or isinstance(value.get("timestamp"), bool):
        missing.append("timestamp (number)")
    if not isinstance(value.get("payload"), dict):
        missing.append("payload (object)")
    if missing:
        return ValidationResult(False, error=f"Invalid message structure. Missing: {', '.join(missing)}")

    if not is_known_message_type(value["type"]):
        return ValidationResult(False, error=f"Unknown message type: {value['type']}")

    envelope = parse_envelope(value)
    if envelope is None:
        return ValidationResult(False, error="Invalid message structure")
    return ValidationResult(True, message=envelope)


def serialize_envelope(envelope: Envelope) -> str:
    return envelope.model_dump_json(indent=2)


def deserialize_envelope(data: Union[str, bytes]) -> ValidationResult:
    return validate_message(data)
