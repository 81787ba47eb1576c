"""Configuration for language server sessions."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from dotenv import load_dotenv

from lsmcp.exceptions import ConfigurationError

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

# initializationOptions some servers refuse to start without
DEFAULT_INITIALIZATION_OPTIONS: Dict[str, Dict[str, Any]] = {
    "deno": {"enable": True, "lint": True, "unstable": True},
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class ClientOptions:
    """Protocol-level options of one client session.

    Attributes:
        request_timeout: Seconds to wait for a response before failing a call.
        shutdown_timeout: Seconds to wait for ``shutdown`` and for process exit.
        client_name: ``clientInfo.name`` reported to the server.
        client_version: ``clientInfo.version`` reported to the server.
        locale: ``locale`` reported to the server.
        initialization_options: ``initializationOptions`` for ``initialize``.
            When None, a per-language default is used if one exists.
    """

    request_timeout: float = field(
        default_factory=lambda: _env_float(
            "LSMCP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT
        )
    )
    shutdown_timeout: float = field(
        default_factory=lambda: _env_float(
            "LSMCP_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT
        )
    )
    client_name: str = "lsmcp"
    client_version: str = "0.1.0"
    locale: str = "en"
    initialization_options: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.shutdown_timeout <= 0:
            raise ConfigurationError("shutdown_timeout must be positive")

    def initialization_options_for(self, language_id: str) -> Optional[Dict[str, Any]]:
        if self.initialization_options is not None:
            return self.initialization_options
        return DEFAULT_INITIALIZATION_OPTIONS.get(language_id)


@dataclass
class LanguageServerConfig:
    """Process-level configuration for launching a language server."""

    command: Sequence[str]
    environment: Mapping[str, str] = field(default_factory=dict)
    options: ClientOptions = field(default_factory=ClientOptions)

    def __post_init__(self):
        self.command = list(self.command)
        if not self.command:
            raise ConfigurationError("Language server command is not configured.")

    @property
    def executable(self) -> str:
        return self.command[0]

    @classmethod
    def from_command_string(cls, command: str, **kwargs: Any) -> "LanguageServerConfig":
        return cls(command=shlex.split(command), **kwargs)

    @classmethod
    def from_env(cls, **kwargs: Any) -> "LanguageServerConfig":
        """Build a config from ``LSP_COMMAND``, a shell-style command line.

        A ``.env`` file in the working directory is loaded first; variables
        already set in the environment win.
        """
        load_dotenv()
        command = os.getenv("LSP_COMMAND")
        if not command:
            raise ConfigurationError(
                "LSP_COMMAND is not set; pass the language server command line."
            )
        return cls.from_command_string(command, **kwargs)


def resolve_project_root(path: Optional[str] = None) -> str:
    """Absolute project root from ``path``, ``PROJECT_ROOT`` or the cwd."""
    load_dotenv()
    candidate = path or os.getenv("PROJECT_ROOT") or os.getcwd()
    root = Path(candidate).expanduser().resolve()
    if not root.is_dir():
        raise ConfigurationError(f"Project root is not a directory: {root}")
    return str(root)
