"""
lsmcp - Language Server Protocol client core for code-intelligence tools.

Spawns language servers, drives the LSP handshake, keeps open documents in sync
and exposes hover, definitions, references, completion, formatting, rename and
diagnostics as awaitable calls.

Example:
    >>> from lsmcp import LanguageServerConfig, get_session_registry
    >>>
    >>> config = LanguageServerConfig.from_command_string(
    ...     "typescript-language-server --stdio"
    ... )
    >>> registry = get_session_registry()
    >>> session = await registry.acquire("/path/to/project", "typescript", config)
    >>> await session.open_document("file:///path/to/project/a.ts", "const x = 1;")
    >>> hover = await session.get_hover(
    ...     "file:///path/to/project/a.ts", {"line": 0, "character": 6}
    ... )
    >>> await registry.shutdown_all()
"""

from lsmcp.exceptions import (
    ErrorCodes,
    LspError,
    ConfigurationError,
    ServerNotFoundError,
    TransportError,
    ProtocolError,
    RequestTimeoutError,
    SessionStateError,
    ServerExitedError,
    DocumentStateError,
    NotInitializedError,
)
from lsmcp.config import ClientOptions, LanguageServerConfig, resolve_project_root
from lsmcp.lsp import (
    LspSession,
    SessionKey,
    SessionRegistry,
    SessionState,
    get_session_registry,
    reset_session_registry,
    register_cleanup_handlers,
    unregister_cleanup_handlers,
)

__version__ = "0.1.0"

__all__ = [
    # Sessions
    "LspSession",
    "SessionState",
    "SessionKey",
    "SessionRegistry",
    "get_session_registry",
    "reset_session_registry",
    "register_cleanup_handlers",
    "unregister_cleanup_handlers",
    # Configuration
    "ClientOptions",
    "LanguageServerConfig",
    "resolve_project_root",
    # Exceptions
    "ErrorCodes",
    "LspError",
    "ConfigurationError",
    "ServerNotFoundError",
    "TransportError",
    "ProtocolError",
    "RequestTimeoutError",
    "SessionStateError",
    "ServerExitedError",
    "DocumentStateError",
    "NotInitializedError",
]
