from popcorn.models.envelope import (
    Envelope,
    MessageType,
    HookReadyPayload,
    ExtensionReadyPayload,
    StartDemoPayload,
    HookErrorPayload,
)
from popcorn.models.results import DemoResult, StepResult, ScreenshotCapture, VideoMetadata, CriterionResult
from popcorn.models.bridge import BridgeInfo, StartResult, StopResult, StatusResult, CleanResult, InitResult

__all__ = [
    "Envelope",
    "MessageType",
    "HookReadyPayload",
    "ExtensionReadyPayload",
    "StartDemoPayload",
    "HookErrorPayload",
    "DemoResult",
    "StepResult",
    "ScreenshotCapture",
    "VideoMetadata",
    "CriterionResult",
    "BridgeInfo",
    "StartResult",
    "StopResult",
    "StatusResult",
    "CleanResult",
    "InitResult",
]
