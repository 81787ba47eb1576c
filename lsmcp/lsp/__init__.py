from lsmcp.lsp.cleanup import register_cleanup_handlers, unregister_cleanup_handlers
from lsmcp.lsp.documents import DocumentStore, OpenDocument
from lsmcp.lsp.framing import MessageDecoder, encode_message, read_messages
from lsmcp.lsp.registry import (
    SessionKey,
    SessionRegistry,
    get_session_registry,
    reset_session_registry,
)
from lsmcp.lsp.rpc import JsonRpcEndpoint, PendingCall
from lsmcp.lsp.session import LspSession
from lsmcp.lsp.types import (
    Diagnostic,
    FormattingOptions,
    Location,
    LocationLink,
    LspMethod,
    Position,
    Range,
    SessionState,
    normalize_locations,
    path_to_uri,
    uri_to_path,
)

__all__ = [
    "DocumentStore",
    "OpenDocument",
    "MessageDecoder",
    "encode_message",
    "read_messages",
    "JsonRpcEndpoint",
    "PendingCall",
    "LspSession",
    "SessionKey",
    "SessionRegistry",
    "get_session_registry",
    "reset_session_registry",
    "register_cleanup_handlers",
    "unregister_cleanup_handlers",
    "Diagnostic",
    "FormattingOptions",
    "Location",
    "LocationLink",
    "LspMethod",
    "Position",
    "Range",
    "SessionState",
    "normalize_locations",
    "path_to_uri",
    "uri_to_path",
]
