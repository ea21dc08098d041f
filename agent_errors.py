"""Error taxonomy for the agent server hub and server-error classification."""
from __future__ import annotations

from typing import Any, Optional, Tuple

__all__ = [
    "AgentError",
    "ProcessNotFound",
    "ProcessStartTimeout",
    "ProcessExitedNonzero",
    "ServerUnreachable",
    "AgentServerError",
    "SessionCreateFailed",
    "PromptSendFailed",
    "StreamConnectFailed",
    "StreamClosed",
    "StreamFrameParseError",
    "AUTH_REQUIRED",
    "RATE_LIMITED",
    "PROVIDER_OVERLOADED",
    "ABORTED",
    "UNKNOWN",
    "error_message",
    "classify_error",
]

INSTALL_HINT = (
    "Install the opencode CLI with `curl -fsSL https://opencode.ai/install | bash` "
    "or `npm install -g opencode-ai`, then restart the hub."
)


class AgentError(RuntimeError):
    """Base class for failures talking to or supervising the agent server."""


class ProcessNotFound(AgentError):
    def __init__(self, searched: Optional[list[str]] = None) -> None:
        self.searched = list(searched or [])
        where = ", ".join(self.searched) if self.searched else "PATH"
        super().__init__(f"opencode binary not found (searched {where}). {INSTALL_HINT}")


class ProcessStartTimeout(AgentError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"opencode server did not become ready within {timeout:g}s")


class ProcessExitedNonzero(AgentError):
    def __init__(self, returncode: Optional[int], output: str = "") -> None:
        self.returncode = returncode
        self.output = output
        message = f"opencode server exited with code {returncode} before it was ready"
        if output.strip():
            message += f"\n{output.strip()}"
        super().__init__(message)


class AgentServerError(AgentError):
    """An HTTP call to the agent server failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        self.status = status
        super().__init__(message)


class ServerUnreachable(AgentServerError):
    """Nothing accepted a connection at the agent server address."""


class SessionCreateFailed(AgentServerError):
    pass


class PromptSendFailed(AgentServerError):
    pass


class StreamConnectFailed(AgentError):
    pass


class StreamClosed(AgentError):
    """The event stream ended without being cancelled."""


class StreamFrameParseError(AgentError):
    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        super().__init__(f"{reason}; raw: {raw[:100]!r}")


AUTH_REQUIRED = "auth_required"
RATE_LIMITED = "rate_limited"
PROVIDER_OVERLOADED = "provider_overloaded"
ABORTED = "aborted"
UNKNOWN = "unknown"

AUTH_ERROR_NAMES = {"ProviderAuthError"}
ABORT_ERROR_NAMES = {"MessageAbortedError"}
RATE_LIMIT_STATUS = {429}
OVERLOADED_STATUS = {503, 529}


def error_message(error: Any) -> str:
    """Human readable text for an error object reported by the server."""
    if not isinstance(error, dict):
        return str(error)
    data = error.get("data")
    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, str) and message:
            return message
    name = error.get("name")
    if isinstance(name, str) and name:
        return name
    return "Unknown error"


def classify_error(error: Any) -> Tuple[str, str]:
    """Return ``(kind, message)`` for a server-reported error payload."""
    message = error_message(error)
    if not isinstance(error, dict):
        return UNKNOWN, message
    name = error.get("name") or ""
    if name in AUTH_ERROR_NAMES:
        return AUTH_REQUIRED, message
    if name in ABORT_ERROR_NAMES:
        return ABORTED, message
    data = error.get("data") if isinstance(error.get("data"), dict) else {}
    status = data.get("statusCode")
    low = message.lower()
    if status in RATE_LIMIT_STATUS or "rate limit" in low:
        return RATE_LIMITED, message
    if status in OVERLOADED_STATUS or "overloaded" in low:
        return PROVIDER_OVERLOADED, message
    return UNKNOWN, message
