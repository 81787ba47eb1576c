"""
Language server session: one subprocess, its handshake, and the typed façade.

The session reads the server's stdout in a background task, hands every
message to its `JsonRpcEndpoint`, and keeps the open-document state the server
has been told about. Lifecycle::

    uninitialized -> initializing -> ready -> shutting_down -> terminated

Any state may jump straight to ``terminated`` when the process exits or the
stream is corrupted; every pending call then fails and later calls fail fast.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from lsmcp.config import ClientOptions, LanguageServerConfig
from lsmcp.exceptions import (
    ErrorCodes,
    LspError,
    ProtocolError,
    ServerExitedError,
    ServerNotFoundError,
    SessionStateError,
    TransportError,
)
from lsmcp.lsp.documents import DocumentStore, OpenDocument
from lsmcp.lsp.framing import READ_CHUNK_SIZE, read_messages
from lsmcp.lsp.rpc import JsonRpcEndpoint, NotificationListener, PendingCall
from lsmcp.lsp.types import (
    FormattingOptions,
    Location,
    LspMethod,
    Position,
    PublishDiagnosticsParams,
    Range,
    SessionState,
    TextDocumentIdentifier,
    as_wire,
    normalize_locations,
    path_to_uri,
    to_wire,
    unwrap_completion,
)
from lsmcp.utils.logger import setup_logger

logger = setup_logger(__name__)

PositionLike = Union[Position, Dict[str, Any]]
RangeLike = Union[Range, Dict[str, Any]]

CLIENT_CAPABILITIES: Dict[str, Any] = {
    "workspace": {
        "configuration": True,
        "workspaceFolders": True,
        "applyEdit": False,
        "symbol": {"dynamicRegistration": False},
    },
    "textDocument": {
        "synchronization": {
            "dynamicRegistration": False,
            "willSave": False,
            "willSaveWaitUntil": False,
            "didSave": True,
        },
        "publishDiagnostics": {"relatedInformation": True},
        "definition": {"linkSupport": True},
        "references": {},
        "hover": {"contentFormat": ["markdown", "plaintext"]},
        "completion": {"completionItem": {"snippetSupport": True}},
        "signatureHelp": {
            "signatureInformation": {"documentationFormat": ["markdown", "plaintext"]}
        },
        "codeAction": {
            "codeActionLiteralSupport": {
                "codeActionKind": {
                    "valueSet": [
                        "",
                        "quickfix",
                        "refactor",
                        "refactor.extract",
                        "refactor.inline",
                        "refactor.rewrite",
                        "source",
                        "source.organizeImports",
                    ]
                }
            }
        },
        "formatting": {"dynamicRegistration": False},
        "rangeFormatting": {"dynamicRegistration": False},
        "rename": {"prepareSupport": True},
        "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
    },
    # Some servers (pyright) send progress requests we have no use for
    "window": {"workDoneProgress": False},
}

TerminationCallback = Callable[["LspSession"], None]

PROCESS_EXIT_GRACE = 1.0
MAX_STDERR_LOG_CHARS = 2000


class LspSession:
    """A client connection to one language server process.

    Args:
        reader: Stream the server writes LSP frames to (its stdout).
        writer: Stream the client writes frames to (its stdin).
        project_root: Absolute path of the workspace root.
        language_id: Default ``languageId`` for opened documents.
        options: Timeouts and ``initialize`` details.
        process: The server process, when the session should watch its exit
            and stop it on shutdown.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        project_root: str,
        language_id: str = "typescript",
        options: Optional[ClientOptions] = None,
        process: Optional[asyncio.subprocess.Process] = None,
    ) -> None:
        self.project_root = str(project_root)
        self.language_id = language_id
        self.options = options or ClientOptions()
        self.process = process
        self.capabilities: Dict[str, Any] = {}
        self.server_info: Optional[Dict[str, Any]] = None

        self._reader = reader
        self._writer = writer
        self._state = SessionState.UNINITIALIZED
        self._documents = DocumentStore()
        self._rpc = JsonRpcEndpoint(
            writer,
            request_timeout=self.options.request_timeout,
            name=f"{language_id}:{self.project_root}",
        )
        self._log = logger.bind(session=f"{language_id}:{self.project_root}")
        self._tasks: List[asyncio.Task] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._termination_callbacks: List[TerminationCallback] = []
        self._register_default_handlers()

    @classmethod
    def from_process(
        cls,
        process: asyncio.subprocess.Process,
        project_root: str,
        language_id: str = "typescript",
        options: Optional[ClientOptions] = None,
    ) -> "LspSession":
        if process.stdout is None or process.stdin is None:
            raise TransportError("Language server process was not started with stdio pipes")
        return cls(
            process.stdout,
            process.stdin,
            project_root=project_root,
            language_id=language_id,
            options=options,
            process=process,
        )

    @classmethod
    async def spawn(
        cls,
        config: LanguageServerConfig,
        project_root: str,
        language_id: str = "typescript",
    ) -> "LspSession":
        """Start the configured server in ``project_root``. Not yet initialized."""
        executable = config.executable
        if shutil.which(executable) is None and not os.path.isfile(executable):
            raise ServerNotFoundError(executable)

        env = os.environ.copy()
        env.update(config.environment)

        logger.info(
            f"Starting {language_id} language server: {' '.join(config.command)} in {project_root}"
        )
        process = await asyncio.create_subprocess_exec(
            *config.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=project_root,
            env=env,
        )
        return cls.from_process(process, project_root, language_id, config.options)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    @property
    def pending_requests(self) -> List[PendingCall]:
        return self._rpc.pending_calls

    @property
    def open_documents(self) -> List[str]:
        return [document.uri for document in self._documents]

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            self._log.info(f"Session state {self._state.value} -> {state.value}")
            self._state = state

    def add_termination_callback(self, callback: TerminationCallback) -> None:
        self._termination_callbacks.append(callback)

    def on_request(self, method: Union[str, LspMethod], handler: Callable[[Any], Any]) -> None:
        self._rpc.on_request(method, handler)

    def on_notification(self, method: Union[str, LspMethod], handler: Callable[[Any], Any]) -> None:
        self._rpc.on_notification(method, handler)

    def add_notification_listener(self, listener: NotificationListener) -> None:
        self._rpc.add_listener(listener)

    # Lifecycle

    def _initialize_params(self) -> Dict[str, Any]:
        root_uri = path_to_uri(self.project_root)
        params: Dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {
                "name": self.options.client_name,
                "version": self.options.client_version,
            },
            "locale": self.options.locale,
            "rootPath": self.project_root,
            "rootUri": root_uri,
            "workspaceFolders": [
                {"uri": root_uri, "name": Path(self.project_root).name or self.project_root}
            ],
            "capabilities": CLIENT_CAPABILITIES,
        }
        initialization_options = self.options.initialization_options_for(self.language_id)
        if initialization_options is not None:
            params["initializationOptions"] = initialization_options
        return params

    async def initialize(self) -> Dict[str, Any]:
        """Run the initialize/initialized handshake; returns the server's result."""
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(
                f"Cannot initialize a session in state {self._state.value}", self._state
            )

        self._start_background_tasks()
        self._set_state(SessionState.INITIALIZING)
        try:
            result = await self._rpc.call(LspMethod.INITIALIZE, self._initialize_params())
        except LspError as exc:
            self._log.error(f"Initialize failed for {self.language_id} server: {exc}")
            self._terminate(
                SessionStateError(f"Session initialization failed: {exc}", self._state)
            )
            raise

        if self._state is not SessionState.INITIALIZING:
            raise SessionStateError(
                f"Session left initialization in state {self._state.value}", self._state
            )

        result = result or {}
        self.capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo")
        await self._rpc.notify(LspMethod.INITIALIZED, {})
        self._set_state(SessionState.READY)
        server_name = (self.server_info or {}).get("name", "language server")
        self._log.info(f"{server_name} ready with capabilities {sorted(self.capabilities)}")
        return result

    async def shutdown(self) -> None:
        """Send shutdown then exit and stop the process. Safe to call repeatedly."""
        if self._state is SessionState.TERMINATED:
            return
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        was_ready = self._state is SessionState.READY
        self._set_state(SessionState.SHUTTING_DOWN)
        try:
            if was_ready:
                try:
                    await self._rpc.call(
                        LspMethod.SHUTDOWN, timeout=self.options.shutdown_timeout
                    )
                except LspError as exc:
                    self._log.warning(f"shutdown request failed: {exc}")
                try:
                    await self._rpc.notify(LspMethod.EXIT)
                except LspError as exc:
                    self._log.debug(f"exit notification not delivered: {exc}")
        finally:
            # a server that never got exit has no reason to stop on its own
            self._terminate(
                SessionStateError("Session was shut down", SessionState.TERMINATED),
                kill_process=not was_ready,
            )
            await self._wait_for_process_exit()

    async def _wait_for_process_exit(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            await asyncio.wait_for(self.process.wait(), self.options.shutdown_timeout)
        except asyncio.TimeoutError:
            self._log.warning("Language server did not exit after shutdown; killing it")
            self._kill_process()
            await self.process.wait()

    def kill(self) -> None:
        """Terminate immediately without the shutdown handshake."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # interpreter exit: no loop left to fail pending calls on
            self._kill_process()
            self._state = SessionState.TERMINATED
            return
        self._terminate(SessionStateError("Session was killed", SessionState.TERMINATED))

    def _kill_process(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def _terminate(self, reason: LspError, kill_process: bool = True) -> None:
        if self._state is SessionState.TERMINATED:
            return
        self._set_state(SessionState.TERMINATED)

        failed = self._rpc.close(reason)
        if failed:
            self._log.warning(f"Failed {failed} pending request(s): {reason}")
        self._documents.clear(reason)

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        try:
            self._writer.close()
        except (OSError, RuntimeError) as exc:
            self._log.debug(f"Closing server stdin failed: {exc}")

        if kill_process:
            self._kill_process()

        for callback in list(self._termination_callbacks):
            try:
                callback(self)
            except Exception:
                self._log.exception("Termination callback failed")

    def _handle_connection_lost(self, error: Optional[TransportError]) -> None:
        if self._state is SessionState.TERMINATED:
            return

        returncode = self.process.returncode if self.process is not None else None
        if error is not None:
            self._log.error(f"Transport failure, terminating session: {error}")
            self._terminate(error)
            return

        if self._state is SessionState.SHUTTING_DOWN:
            # expected after exit; the shutdown task finishes the transition
            self._rpc.close(ServerExitedError("Language server exited during shutdown", returncode))
            return

        self._log.warning(f"Language server exited unexpectedly (returncode={returncode})")
        self._terminate(
            ServerExitedError(
                f"Language server exited unexpectedly (returncode={returncode})",
                returncode,
            )
        )

    def _start_background_tasks(self) -> None:
        self._reader_task = asyncio.ensure_future(self._read_loop())
        self._tasks.append(self._reader_task)
        if self.process is not None:
            self._tasks.append(asyncio.ensure_future(self._watch_process()))
            if self.process.stderr is not None:
                self._tasks.append(asyncio.ensure_future(self._drain_stderr()))

    async def _read_loop(self) -> None:
        error: Optional[TransportError] = None
        try:
            async for message in read_messages(self._reader):
                self._rpc.dispatch(message)
        except TransportError as exc:
            error = exc
        except (ConnectionError, OSError) as exc:
            error = TransportError(f"Reading from language server failed: {exc}")
        self._handle_connection_lost(error)

    async def _watch_process(self) -> None:
        await self.process.wait()
        # let the reader deliver whatever the server wrote before exiting
        await asyncio.wait({self._reader_task}, timeout=PROCESS_EXIT_GRACE)
        self._handle_connection_lost(None)

    async def _drain_stderr(self) -> None:
        # lines can exceed the StreamReader limit, so no readline()
        stderr = self.process.stderr
        pending = b""
        while True:
            chunk = await stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                self._log_stderr_line(line)
            if len(pending) > READ_CHUNK_SIZE:
                self._log_stderr_line(pending)
                pending = b""
        if pending:
            self._log_stderr_line(pending)

    def _log_stderr_line(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip()
        if len(text) > MAX_STDERR_LOG_CHARS:
            text = f"{text[:MAX_STDERR_LOG_CHARS]}... ({len(text)} chars)"
        self._log.debug(f"server stderr: {text}")

    # Server-initiated traffic

    def _register_default_handlers(self) -> None:
        self._rpc.on_notification(LspMethod.PUBLISH_DIAGNOSTICS, self._on_publish_diagnostics)
        self._rpc.on_notification(LspMethod.LOG_MESSAGE, self._on_log_message)
        self._rpc.on_notification(LspMethod.SHOW_MESSAGE, self._on_log_message)
        self._rpc.on_request(LspMethod.WORKSPACE_CONFIGURATION, self._on_workspace_configuration)
        self._rpc.on_request(LspMethod.REGISTER_CAPABILITY, lambda params: None)
        self._rpc.on_request(LspMethod.UNREGISTER_CAPABILITY, lambda params: None)
        self._rpc.on_request(LspMethod.WORK_DONE_PROGRESS_CREATE, lambda params: None)
        self._rpc.on_request(
            LspMethod.APPLY_EDIT,
            lambda params: {
                "applied": False,
                "failureReason": "lsmcp does not apply workspace edits",
            },
        )

    def _on_publish_diagnostics(self, params: Any) -> None:
        payload = PublishDiagnosticsParams.model_validate(params or {})
        if not self._documents.set_diagnostics(payload.uri, payload.diagnostics):
            self._log.debug(f"Ignoring diagnostics for unopened {payload.uri}")

    def _on_log_message(self, params: Any) -> None:
        message = (params or {}).get("message", "")
        self._log.debug(f"server log: {message}")

    @staticmethod
    def _on_workspace_configuration(params: Any) -> List[Any]:
        items = (params or {}).get("items") or []
        return [None for _ in items]

    # Operations

    def _require_ready(self) -> None:
        if self._state is SessionState.READY:
            return
        if self._state is SessionState.TERMINATED:
            raise SessionStateError("Language server session is not available", self._state)
        raise SessionStateError(
            f"Language server session is not ready (state={self._state.value})", self._state
        )

    def _document_params(self, uri: str) -> Dict[str, Any]:
        self._require_ready()
        self._documents.get(uri)
        return {"textDocument": to_wire(TextDocumentIdentifier(uri=uri))}

    def _position_params(self, uri: str, position: PositionLike) -> Dict[str, Any]:
        params = self._document_params(uri)
        params["position"] = as_wire(Position, position)
        return params

    async def send_request(
        self, method: Union[str, LspMethod], params: Any = None, timeout: Optional[float] = None
    ) -> Any:
        """Send any request; for methods the façade does not wrap."""
        self._require_ready()
        return await self._rpc.call(method, to_wire(params), timeout=timeout)

    async def send_notification(self, method: Union[str, LspMethod], params: Any = None) -> None:
        self._require_ready()
        await self._rpc.notify(method, to_wire(params))

    async def open_document(
        self, uri: str, text: str, language_id: Optional[str] = None
    ) -> bool:
        """Announce a document with version 1. Returns False if it was already open."""
        self._require_ready()
        if self._documents.is_open(uri):
            return False
        document = self._documents.open(uri, language_id or self.language_id, text)
        await self._rpc.notify(LspMethod.DID_OPEN, {"textDocument": document.to_item()})
        return True

    async def update_document(
        self, uri: str, text: str, version: Optional[int] = None
    ) -> OpenDocument:
        """Replace the whole text of an open document."""
        self._require_ready()
        document = self._documents.update(uri, text, version)
        await self._rpc.notify(
            LspMethod.DID_CHANGE,
            {
                "textDocument": document.to_identifier(),
                "contentChanges": [{"text": text}],
            },
        )
        return document

    async def close_document(self, uri: str) -> bool:
        """Returns False if the document was not open."""
        self._require_ready()
        if self._documents.close(uri) is None:
            return False
        await self._rpc.notify(
            LspMethod.DID_CLOSE, {"textDocument": to_wire(TextDocumentIdentifier(uri=uri))}
        )
        return True

    async def get_hover(self, uri: str, position: PositionLike) -> Optional[Dict[str, Any]]:
        return await self._rpc.call(LspMethod.HOVER, self._position_params(uri, position))

    async def get_definition(self, uri: str, position: PositionLike) -> Any:
        """Raw result: a Location, a list of Locations or LocationLinks, or None."""
        return await self._rpc.call(LspMethod.DEFINITION, self._position_params(uri, position))

    async def get_definition_locations(self, uri: str, position: PositionLike) -> List[Location]:
        return normalize_locations(await self.get_definition(uri, position))

    async def get_references(
        self, uri: str, position: PositionLike, include_declaration: bool = True
    ) -> List[Dict[str, Any]]:
        params = self._position_params(uri, position)
        params["context"] = {"includeDeclaration": include_declaration}
        return await self._rpc.call(LspMethod.REFERENCES, params) or []

    async def get_completion(self, uri: str, position: PositionLike) -> List[Dict[str, Any]]:
        result = await self._rpc.call(LspMethod.COMPLETION, self._position_params(uri, position))
        return unwrap_completion(result)

    async def resolve_completion_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        self._require_ready()
        return await self._rpc.call(LspMethod.COMPLETION_RESOLVE, item)

    async def get_signature_help(
        self, uri: str, position: PositionLike
    ) -> Optional[Dict[str, Any]]:
        return await self._rpc.call(
            LspMethod.SIGNATURE_HELP, self._position_params(uri, position)
        )

    async def get_code_actions(
        self, uri: str, range: RangeLike, context: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        params = self._document_params(uri)
        params["range"] = as_wire(Range, range)
        params["context"] = context if context is not None else {"diagnostics": []}
        return await self._rpc.call(LspMethod.CODE_ACTION, params) or []

    async def format_document(
        self,
        uri: str,
        options: Optional[Union[FormattingOptions, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        params = self._document_params(uri)
        params["options"] = as_wire(FormattingOptions, options or FormattingOptions())
        return await self._rpc.call(LspMethod.FORMATTING, params) or []

    async def format_range(
        self,
        uri: str,
        range: RangeLike,
        options: Optional[Union[FormattingOptions, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        params = self._document_params(uri)
        params["range"] = as_wire(Range, range)
        params["options"] = as_wire(FormattingOptions, options or FormattingOptions())
        return await self._rpc.call(LspMethod.RANGE_FORMATTING, params) or []

    async def prepare_rename(self, uri: str, position: PositionLike) -> Optional[Dict[str, Any]]:
        """Range that would be renamed, or None if the position cannot be renamed."""
        params = self._position_params(uri, position)
        try:
            result = await self._rpc.call(LspMethod.PREPARE_RENAME, params)
        except ProtocolError as exc:
            if exc.code == ErrorCodes.MethodNotFound:
                return None
            raise
        if isinstance(result, dict):
            if "range" in result:
                return result["range"]
            if "start" in result and "end" in result:
                return result
        return None

    async def rename_symbol(
        self, uri: str, position: PositionLike, new_name: str
    ) -> Optional[Dict[str, Any]]:
        """WorkspaceEdit for the rename, or None if the server does not support rename."""
        params = self._position_params(uri, position)
        params["newName"] = new_name
        try:
            return await self._rpc.call(LspMethod.RENAME, params)
        except ProtocolError as exc:
            if exc.code == ErrorCodes.MethodNotFound:
                self._log.info("Server does not implement textDocument/rename")
                return None
            raise

    async def get_document_symbols(self, uri: str) -> List[Dict[str, Any]]:
        return await self._rpc.call(LspMethod.DOCUMENT_SYMBOL, self._document_params(uri)) or []

    async def get_workspace_symbols(self, query: str) -> List[Dict[str, Any]]:
        self._require_ready()
        return await self._rpc.call(LspMethod.WORKSPACE_SYMBOL, {"query": query}) or []

    def get_diagnostics(self, uri: str) -> Optional[List[Dict[str, Any]]]:
        """Cached diagnostics of an open document; None until the server publishes."""
        self._require_ready()
        return self._documents.get_diagnostics(uri)

    async def wait_for_diagnostics(
        self, uri: str, timeout: Optional[float] = None, fresh: bool = False
    ) -> List[Dict[str, Any]]:
        self._require_ready()
        if timeout is None:
            timeout = self.options.request_timeout
        return await self._documents.wait_for_diagnostics(uri, timeout, fresh=fresh)
