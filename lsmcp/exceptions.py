"""Exception hierarchy for the lsmcp language-server client.

Every failure the core can produce is one of these classes. Each carries a
stable ``kind`` string so the tool layer can translate errors into messages
without inspecting the class hierarchy.
"""

from typing import Any, Dict, Optional


class ErrorCodes:
    """JSON-RPC and LSP error codes used by the client."""

    ParseError = -32700
    InvalidRequest = -32600
    MethodNotFound = -32601
    InvalidParams = -32602
    InternalError = -32603
    ServerNotInitialized = -32002
    UnknownErrorCode = -32001
    RequestFailed = -32803
    ServerCancelled = -32802
    ContentModified = -32801
    RequestCancelled = -32800


class LspError(Exception):
    """Base exception for all lsmcp errors."""

    kind = "lsp"


class ConfigurationError(LspError):
    """Configuration is invalid or missing required values."""

    kind = "configuration"


class ServerNotFoundError(ConfigurationError):
    """Language server executable is not available."""

    kind = "server_not_found"

    def __init__(self, executable: str):
        super().__init__(
            f"Language server executable '{executable}' is not available in PATH."
        )
        self.executable = executable


class TransportError(LspError):
    """The framed stdio stream is corrupt or could not be written."""

    kind = "transport"


class ProtocolError(LspError):
    """The server answered a request with a JSON-RPC error object."""

    kind = "protocol"

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_response(cls, error: Dict[str, Any]) -> "ProtocolError":
        return cls(
            code=error.get("code", ErrorCodes.UnknownErrorCode),
            message=error.get("message", "Unknown error"),
            data=error.get("data"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


class RequestTimeoutError(LspError):
    """A request received no response within its deadline."""

    kind = "timeout"

    def __init__(
        self, method: str, timeout: float, request_id: Optional[int] = None
    ):
        super().__init__(f"No response for {method} within {timeout}s")
        self.method = method
        self.timeout = timeout
        self.request_id = request_id


class SessionStateError(LspError):
    """Operation invoked while the session is not Ready."""

    kind = "state"

    def __init__(self, message: str, state: Any = None):
        super().__init__(message)
        self.state = state


class ServerExitedError(LspError):
    """The language server process terminated."""

    kind = "server_exited"

    def __init__(self, message: str = "Language server exited", returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class DocumentStateError(LspError):
    """Operation references a document that is not open."""

    kind = "document_state"

    def __init__(self, uri: str, message: Optional[str] = None):
        super().__init__(message or f"Document is not open: {uri}")
        self.uri = uri


class NotInitializedError(LspError):
    """No active session has been initialized."""

    kind = "not_initialized"
