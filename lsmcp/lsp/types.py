"""
Value types and enumerations for the LSP wire format.

The models mirror LSP field names exactly (camelCase on the wire, snake_case
attribute names through aliases) so payloads built from them are accepted by
any server. All line/character values are zero-based. Unknown fields are kept
so round-tripping a server payload through a model never loses data.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict, Field


class LspMethod(str, Enum):
    """LSP methods sent or handled by the client."""

    INITIALIZE = "initialize"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"
    EXIT = "exit"

    DID_OPEN = "textDocument/didOpen"
    DID_CHANGE = "textDocument/didChange"
    DID_CLOSE = "textDocument/didClose"
    PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"

    HOVER = "textDocument/hover"
    DEFINITION = "textDocument/definition"
    REFERENCES = "textDocument/references"
    COMPLETION = "textDocument/completion"
    COMPLETION_RESOLVE = "completionItem/resolve"
    SIGNATURE_HELP = "textDocument/signatureHelp"
    CODE_ACTION = "textDocument/codeAction"
    FORMATTING = "textDocument/formatting"
    RANGE_FORMATTING = "textDocument/rangeFormatting"
    PREPARE_RENAME = "textDocument/prepareRename"
    RENAME = "textDocument/rename"
    DOCUMENT_SYMBOL = "textDocument/documentSymbol"
    WORKSPACE_SYMBOL = "workspace/symbol"

    WORKSPACE_CONFIGURATION = "workspace/configuration"
    APPLY_EDIT = "workspace/applyEdit"
    REGISTER_CAPABILITY = "client/registerCapability"
    UNREGISTER_CAPABILITY = "client/unregisterCapability"
    WORK_DONE_PROGRESS_CREATE = "window/workDoneProgress/create"
    LOG_MESSAGE = "window/logMessage"
    SHOW_MESSAGE = "window/showMessage"


class SessionState(str, Enum):
    """Lifecycle of a language server session."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


def method_name(method: Union[str, LspMethod]) -> str:
    """Plain string name of a method; Enum members do not hash like str."""
    if isinstance(method, Enum):
        return method.value
    return method


class LspModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Position(LspModel):
    """Represents a zero-based line/character location in a text document."""

    line: int = Field(..., ge=0, description="Zero-based line index.")
    character: int = Field(..., ge=0, description="Zero-based character offset.")


class Range(LspModel):
    start: Position = Field(..., description="Inclusive start position.")
    end: Position = Field(..., description="Exclusive end position.")


class LocationLink(LspModel):
    origin_selection_range: Optional[Range] = Field(None, alias="originSelectionRange")
    target_uri: str = Field(..., alias="targetUri")
    target_range: Range = Field(..., alias="targetRange")
    target_selection_range: Optional[Range] = Field(None, alias="targetSelectionRange")


class Location(LspModel):
    """Represents a location inside a resource, such as a line inside a text file."""

    uri: str = Field(..., description="file:// URI where the symbol is located.")
    range: Range

    @classmethod
    def from_lsp(cls, data: Dict[str, Any]) -> "Location":
        if "targetUri" in data:
            link = LocationLink.model_validate(data)
            return cls(
                uri=link.target_uri,
                range=link.target_selection_range or link.target_range,
            )
        return cls.model_validate(data)


class TextDocumentIdentifier(LspModel):
    """Identifies a text document by its URI."""

    uri: str = Field(..., description="file:// URI pointing to the document.")


class VersionedTextDocumentIdentifier(TextDocumentIdentifier):
    version: int


class TextDocumentItem(LspModel):
    """Document payload carried by ``textDocument/didOpen``."""

    uri: str
    language_id: str = Field(..., alias="languageId")
    version: int
    text: str


class Diagnostic(LspModel):
    range: Range
    message: str
    severity: Optional[int] = Field(None, ge=1, le=4)
    code: Optional[Union[int, str]] = None
    source: Optional[str] = None
    related_information: Optional[List[Dict[str, Any]]] = Field(
        None, alias="relatedInformation"
    )
    tags: Optional[List[int]] = None


class PublishDiagnosticsParams(LspModel):
    uri: str
    diagnostics: List[Dict[str, Any]] = Field(default_factory=list)
    version: Optional[int] = None


class FormattingOptions(LspModel):
    tab_size: int = Field(2, alias="tabSize", ge=0)
    insert_spaces: bool = Field(True, alias="insertSpaces")
    trim_trailing_whitespace: Optional[bool] = Field(
        None, alias="trimTrailingWhitespace"
    )
    insert_final_newline: Optional[bool] = Field(None, alias="insertFinalNewline")
    trim_final_newlines: Optional[bool] = Field(None, alias="trimFinalNewlines")


M = TypeVar("M", bound=LspModel)


def to_wire(value: Any) -> Any:
    """Serialize models to their camelCase wire form; other values pass through."""
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, exclude_none=True, mode="json")
    if isinstance(value, list):
        return [to_wire(item) for item in value]
    return value


def as_wire(model: Type[M], value: Union[M, Dict[str, Any]]) -> Dict[str, Any]:
    """Validate ``value`` against ``model`` and return the wire dict."""
    if not isinstance(value, model):
        value = model.model_validate(value)
    return to_wire(value)


def normalize_locations(raw: Any) -> List[Location]:
    """Definition results as a list: LSP permits one Location, a list, or links."""
    if raw is None:
        return []

    if isinstance(raw, dict):
        raw = [raw]

    locations: List[Location] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        if "uri" in item and "range" in item:
            locations.append(Location.from_lsp(item))
        elif "targetUri" in item and "targetRange" in item:
            locations.append(Location.from_lsp(item))
    return locations


def unwrap_completion(raw: Any) -> List[Dict[str, Any]]:
    """Completion items from a bare array or a ``CompletionList``."""
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        return list(raw.get("items") or [])
    return []


def path_to_uri(path: Union[str, Path]) -> str:
    return Path(path).expanduser().resolve().as_uri()


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"Not a file:// URI: {uri}")
    return Path(unquote(parsed.path))
