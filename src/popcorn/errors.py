"""
Popcorn error types — transport, protocol, daemon and plan-load failures.
"""

from typing import Any, Optional


class PopcornError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class ConnectionError(PopcornError):
    """The shared project directory or control port is unreachable."""

    def __init__(self, message: str):
        super().__init__("connection_error", message)


class DeliveryError(PopcornError):
    """Writing an envelope to the mailbox failed."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("delivery_error", message, details)


class NotConnectedError(PopcornError):
    def __init__(self, message: str = "Not connected. Call connect() first."):
        super().__init__("not_connected", message)


class TimeoutError(PopcornError):
    def __init__(self, message: str, test_plan_id: Optional[str] = None, elapsed: Optional[float] = None):
        super().__init__("timeout", message, {"testPlanId": test_plan_id, "elapsed": elapsed})
        self.test_plan_id = test_plan_id
        self.elapsed = elapsed


class DisconnectedError(PopcornError):
    def __init__(self, message: str = "Client disconnected", test_plan_id: Optional[str] = None):
        super().__init__("disconnected", message, {"testPlanId": test_plan_id})
        self.test_plan_id = test_plan_id


class DuplicateRequestError(PopcornError):
    def __init__(self, test_plan_id: str):
        super().__init__(
            "duplicate_request",
            f"A demo for plan '{test_plan_id}' is already in flight",
            {"testPlanId": test_plan_id},
        )
        self.test_plan_id = test_plan_id


class DaemonStartError(PopcornError):
    def __init__(self, message: str):
        super().__init__("daemon_start_error", message)


class PlanLoadError(PopcornError):
    def __init__(self, message: str, code: str = "plan_load_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class PlanNotFoundError(PlanLoadError):
    def __init__(self, message: str):
        super().__init__(message, code="plan_not_found")


class InvalidPlanJsonError(PlanLoadError):
    def __init__(self, message: str):
        super().__init__(message, code="invalid_json")


class NotAnObjectError(PlanLoadError):
    def __init__(self, message: str):
        super().__init__(message, code="not_an_object")


class MissingFieldError(PlanLoadError):
    def __init__(self, message: str, field: str):
        super().__init__(message, code="missing_field", details={"field": field})
        self.field = field
