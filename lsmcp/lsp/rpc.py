"""
JSON-RPC 2.0 request/response correlation over a framed stream.

`JsonRpcEndpoint` owns the write side of the connection and the table of
in-flight requests. Inbound messages are handed to `dispatch` by whoever reads
the stream; the endpoint never reads on its own.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from lsmcp.exceptions import (
    ErrorCodes,
    LspError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from lsmcp.lsp.framing import encode_message
from lsmcp.lsp.types import LspMethod, method_name
from lsmcp.utils.logger import setup_logger

logger = setup_logger(__name__)

JSONRPC_VERSION = "2.0"

RequestHandler = Callable[[Any], Union[Any, Awaitable[Any]]]
NotificationHandler = Callable[[Any], Union[None, Awaitable[None]]]
NotificationListener = Callable[[str, Any], None]


@dataclass
class PendingCall:
    """A request written to the server and still waiting for its response."""

    id: int
    method: str
    created_at: float
    future: asyncio.Future


class JsonRpcEndpoint:
    """Client side of a JSON-RPC connection.

    Args:
        writer: Anything with ``write(bytes)`` and ``async drain()``, usually the
            language server's stdin.
        request_timeout: Default seconds ``call`` waits for a response.
        name: Label used in log records.
    """

    def __init__(self, writer: Any, request_timeout: float, name: str = "lsp") -> None:
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._next_id = 1
        self._pending: Dict[int, PendingCall] = {}
        self._request_handlers: Dict[str, RequestHandler] = {}
        self._notification_handlers: Dict[str, NotificationHandler] = {}
        self._listeners: List[NotificationListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed: Optional[LspError] = None
        self.request_timeout = request_timeout
        self._log = logger.bind(endpoint=name)

    @property
    def is_closed(self) -> bool:
        return self._closed is not None

    @property
    def pending_calls(self) -> List[PendingCall]:
        return list(self._pending.values())

    def on_request(self, method: Union[str, LspMethod], handler: RequestHandler) -> None:
        """Register the handler for a server-to-client request, replacing any previous one."""
        self._request_handlers[method_name(method)] = handler

    def on_notification(
        self, method: Union[str, LspMethod], handler: NotificationHandler
    ) -> None:
        """Register the handler for a server notification, replacing any previous one."""
        self._notification_handlers[method_name(method)] = handler

    def add_listener(self, listener: NotificationListener) -> None:
        """Observe every inbound notification before its handler runs."""
        self._listeners.append(listener)

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    async def call(
        self,
        method: Union[str, LspMethod],
        params: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            ProtocolError: The server answered with an error object.
            RequestTimeoutError: No response arrived in time. A later response
                for the same id is dropped.
            TransportError / ServerExitedError: The connection went away.
        """
        name = method_name(method)
        if self._closed is not None:
            raise TransportError(f"Cannot send {name}: connection is closed") from self._closed

        loop = asyncio.get_running_loop()
        request_id = self._allocate_id()
        future = loop.create_future()
        self._pending[request_id] = PendingCall(
            id=request_id, method=name, created_at=loop.time(), future=future
        )

        message: Dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "method": name,
        }
        if params is not None:
            message["params"] = params

        timeout = self.request_timeout if timeout is None else timeout
        try:
            await self._send(message)
            self._log.debug(f"-> request id={request_id} method={name}")
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._log.warning(f"Request id={request_id} method={name} timed out after {timeout}s")
            raise RequestTimeoutError(name, timeout, request_id) from None
        finally:
            self._pending.pop(request_id, None)
            if future.done() and not future.cancelled():
                # mark retrieved when the send itself failed after close()
                future.exception()

    async def notify(self, method: Union[str, LspMethod], params: Any = None) -> None:
        name = method_name(method)
        if self._closed is not None:
            raise TransportError(f"Cannot send {name}: connection is closed") from self._closed
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": name}
        if params is not None:
            message["params"] = params
        await self._send(message)
        self._log.debug(f"-> notification method={name}")

    async def _send(self, message: Dict[str, Any]) -> None:
        data = encode_message(message)
        # One writer at a time; asyncio.Lock is FIFO so frames keep call order.
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as exc:
                raise TransportError(
                    f"Failed to write {message.get('method', 'response')}: {exc}"
                ) from exc

    async def _respond(self, request_id: Any, result: Any) -> None:
        await self._send({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})

    async def _respond_error(
        self, request_id: Any, code: int, message: str, data: Any = None
    ) -> None:
        error: Dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        await self._send({"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error})

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one inbound message.

        id + method is a server request, id alone a response, method alone a
        notification.
        """
        has_id = "id" in message
        has_method = "method" in message
        if has_id and has_method:
            self._spawn(self._handle_request(message))
        elif has_id:
            self._handle_response(message)
        elif has_method:
            self._handle_notification(message)
        else:
            self._log.warning(f"Dropping message with neither id nor method: {message!r}")

    def _handle_response(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        # ids compare as sent: no str/int coercion, and bool is not an id
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            self._log.warning(f"Dropping response with invalid id {request_id!r}")
            return

        pending = self._pending.pop(request_id, None)
        if pending is None:
            self._log.debug(f"<- late or unknown response id={request_id!r}, dropped")
            return
        if pending.future.done():
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                exc = ProtocolError.from_response(error)
            else:
                exc = ProtocolError(ErrorCodes.InternalError, str(error))
            self._log.debug(
                f"<- error id={request_id} method={pending.method} code={exc.code}"
            )
            pending.future.set_exception(exc)
        else:
            self._log.debug(f"<- response id={request_id} method={pending.method}")
            pending.future.set_result(message.get("result"))

    def _handle_notification(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params")
        for listener in list(self._listeners):
            try:
                listener(method, params)
            except Exception:
                self._log.exception(f"Notification listener failed for {method}")

        handler = self._notification_handlers.get(method)
        if handler is None:
            self._log.debug(f"<- unhandled notification method={method}")
            return
        try:
            result = handler(params)
        except Exception:
            self._log.exception(f"Notification handler failed for {method}")
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_notification_handler(method, result))

    async def _await_notification_handler(self, method: str, result: Awaitable[None]) -> None:
        try:
            await result
        except Exception:
            self._log.exception(f"Notification handler failed for {method}")

    async def _handle_request(self, message: Dict[str, Any]) -> None:
        request_id = message["id"]
        method = message["method"]
        params = message.get("params")
        self._log.debug(f"<- server request id={request_id!r} method={method}")

        try:
            handler = self._request_handlers.get(method)
            if handler is None:
                await self._respond_error(
                    request_id, ErrorCodes.MethodNotFound, f"Unhandled method {method}"
                )
                return
            try:
                result = handler(params)
                if inspect.isawaitable(result):
                    result = await result
            except ProtocolError as exc:
                await self._respond_error(request_id, exc.code, exc.message, exc.data)
            except Exception as exc:
                self._log.exception(f"Request handler failed for {method}")
                await self._respond_error(request_id, ErrorCodes.InternalError, str(exc))
            else:
                await self._respond(request_id, result)
        except LspError as exc:
            # connection dropped while answering; the reader reports the loss
            self._log.debug(f"Could not answer server request {method}: {exc}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close(
        self,
        reason: LspError,
        make_error: Optional[Callable[[PendingCall], LspError]] = None,
    ) -> int:
        """Stop accepting calls and fail every pending one.

        ``make_error`` builds the exception for each pending call; by default
        every call fails with ``reason``. Returns the number of calls failed.
        """
        if self._closed is None:
            self._closed = reason
        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if not call.future.done():
                call.future.set_exception(make_error(call) if make_error else reason)
        for task in list(self._tasks):
            task.cancel()
        return len(pending)
