"""Error types and JSON error envelopes for the anonchat proxy."""

from typing import Any, Dict, Optional

UPSTREAM_ERROR = "upstream error"
COMPOSE_ERROR = "compose response to client error"


class AnonChatError(Exception):
    """Base class for errors surfaced to proxy clients."""

    kind = "proxy error"

    def envelope(self) -> Dict[str, Any]:
        return error_envelope(self.kind, str(self))


class UpstreamError(AnonChatError):
    """Network failure or non-2xx answer from one of the upstream endpoints."""

    kind = UPSTREAM_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ComposeError(AnonChatError):
    """Failure while building the upstream body or writing the client response."""

    kind = COMPOSE_ERROR


def error_envelope(kind: str, message: str) -> Dict[str, Any]:
    return {"status": False, "error": kind, "message": str(message)}


def invalid_request_envelope(message: str, type: str = "invalid_request_error") -> Dict[str, Any]:  # noqa: A002
    return {"status": False, "error": {"message": str(message), "type": str(type)}}
