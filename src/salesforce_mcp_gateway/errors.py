from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    GATEWAY_AUTH = "gateway_auth"
    SESSION_PROTOCOL = "session_protocol"
    UPSTREAM_AUTH = "upstream_auth"
    TOOL_EXECUTION = "tool_execution"
    UNKNOWN_TOOL = "unknown_tool"


# JSON-RPC "Invalid Request"
INVALID_REQUEST = -32600


class GatewayError(Exception):
    kind: ErrorKind = ErrorKind.TOOL_EXECUTION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GatewayAuthError(GatewayError):
    kind = ErrorKind.GATEWAY_AUTH
    status_code = HTTPStatus.UNAUTHORIZED


class SessionProtocolError(GatewayError):
    """A request the session state machine refuses; the table is left untouched."""

    kind = ErrorKind.SESSION_PROTOCOL

    def __init__(self, message: str, status_code: HTTPStatus = HTTPStatus.BAD_REQUEST):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(GatewayError):
    kind = ErrorKind.UPSTREAM_AUTH


class ToolExecutionError(GatewayError):
    kind = ErrorKind.TOOL_EXECUTION


class UnknownToolError(GatewayError):
    kind = ErrorKind.UNKNOWN_TOOL

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


def error_body(error: GatewayError, request_id: Optional[Any] = None) -> Dict[str, Any]:
    """Render an HTTP-level failure as a JSON-RPC error object."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {
            "code": INVALID_REQUEST,
            "message": error.message,
            "data": {"kind": error.kind.value},
        },
    }
