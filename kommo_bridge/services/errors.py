"""Exception taxonomy shared by services and routers."""

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""

    code = "bridge_error"


class ValidationError(BridgeError):
    """Required input is missing or malformed."""

    code = "validation_error"


class AuthError(BridgeError):
    """Shared secret is missing or wrong."""

    code = "auth_error"


class UpstreamTimeout(BridgeError):
    """An upstream call did not complete within its budget."""

    code = "upstream_timeout"


class UpstreamRejected(BridgeError):
    """An upstream answered with an explicit failure."""

    code = "upstream_rejected"


class AssistantRunFailed(UpstreamRejected):
    code = "assistant_run_failed"

    def __init__(self, status: str, detail: Optional[str] = None):
        self.status = status
        self.detail = detail
        message = f"Assistant run ended with status {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnsupportedToolCall(UpstreamRejected):
    code = "unsupported_tool_call"


class KommoAPIError(BridgeError):
    code = "kommo_api_error"

    def __init__(self, status_code: int, body: Any = None, path: str = ""):
        self.status_code = status_code
        self.body = body
        self.path = path
        super().__init__(f"Kommo API {path} returned {status_code}")


class DeliveryFailed(BridgeError):
    """Every delivery mechanism was exhausted."""

    code = "delivery_failed"
