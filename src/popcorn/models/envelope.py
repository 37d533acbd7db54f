"""
Envelope — the typed unit exchanged between the hook and the extension.
"""

from typing import Any, Literal, Optional
from pydantic import BaseModel, Field


class MessageType:
    HOOK_READY = "hook_ready"
    EXTENSION_READY = "extension_ready"
    START_DEMO = "start_demo"
    DEMO_RESULT = "demo_result"
    HOOK_ERROR = "hook_error"


KNOWN_TYPES = frozenset({
    MessageType.HOOK_READY,
    MessageType.EXTENSION_READY,
    MessageType.START_DEMO,
    MessageType.DEMO_RESULT,
    MessageType.HOOK_ERROR,
})

EnvelopeType = Literal["hook_ready", "extension_ready", "start_demo", "demo_result", "hook_error"]


class Envelope(BaseModel):
    id: str
    type: EnvelopeType
    payload: dict[str, Any]
    timestamp: int  # epoch milliseconds

    model_config = {"frozen": True}


class HookReadyPayload(BaseModel):
    """hook -> extension handshake"""
    hook_version: str = Field(alias="hookVersion")
    watch_dir: str = Field(alias="watchDir")

    model_config = {"populate_by_name": True}


class ExtensionReadyPayload(BaseModel):
    """extension -> hook handshake"""
    extension_version: str = Field(default="", alias="extensionVersion")
    capabilities: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class StartDemoPayload(BaseModel):
    test_plan_id: str = Field(alias="testPlanId")
    test_plan: dict[str, Any] = Field(alias="testPlan")
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")
    triggered_by: str = Field(alias="triggeredBy")
    # hook mailbox channel the matching demo_result should be delivered to
    reply_to: Optional[str] = Field(default=None, alias="replyTo")

    model_config = {"populate_by_name": True}


class HookErrorPayload(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None
