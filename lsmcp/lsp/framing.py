"""
Content-Length framing for JSON-RPC messages over a byte stream.

Each message on the wire looks like::

    Content-Length: 52\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}

The decoder keeps its own byte buffer so a read may carry any number of
messages, or split one anywhere inside its header or body.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

from lsmcp.exceptions import TransportError

HEADER_SEPARATOR = b"\r\n\r\n"
CONTENT_LENGTH_HEADER = "content-length"
MAX_HEADER_BYTES = 8192
READ_CHUNK_SIZE = 65536


def encode_message(message: Dict[str, Any]) -> bytes:
    """Serialize ``message`` and prefix it with its Content-Length header.

    The body is ASCII-only JSON, so strings a server sent with lone surrogate
    escapes travel back unchanged.
    """
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def parse_content_length(header: bytes) -> int:
    try:
        text = header.decode("ascii")
    except UnicodeDecodeError as exc:
        raise TransportError("LSP header is not ASCII") from exc

    for line in text.split("\r\n"):
        name, sep, value = line.partition(":")
        if not sep or name.strip().lower() != CONTENT_LENGTH_HEADER:
            continue
        try:
            length = int(value.strip())
        except ValueError as exc:
            raise TransportError(f"Invalid Content-Length value: {value.strip()!r}") from exc
        if length < 0:
            raise TransportError(f"Negative Content-Length: {length}")
        return length

    raise TransportError(f"LSP header without Content-Length: {text!r}")


class MessageDecoder:
    """Incremental decoder turning arbitrary byte chunks into messages.

    A framing error leaves the decoder unusable: the stream position is lost
    and every following byte would be misread.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._content_length: Optional[int] = None
        self._failed = False

    @property
    def has_partial_message(self) -> bool:
        return bool(self._buffer) or self._content_length is not None

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        if self._failed:
            raise TransportError("Decoder already failed on a corrupt stream")
        self._buffer.extend(data)
        try:
            return self._drain()
        except TransportError:
            self._failed = True
            raise

    def _drain(self) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        while True:
            if self._content_length is None:
                header_end = self._buffer.find(HEADER_SEPARATOR)
                if header_end == -1:
                    if len(self._buffer) > MAX_HEADER_BYTES:
                        raise TransportError("LSP header exceeds maximum size")
                    return messages
                header = bytes(self._buffer[:header_end])
                del self._buffer[: header_end + len(HEADER_SEPARATOR)]
                self._content_length = parse_content_length(header)

            if len(self._buffer) < self._content_length:
                return messages

            body = bytes(self._buffer[: self._content_length])
            del self._buffer[: self._content_length]
            self._content_length = None
            messages.append(self._parse_body(body))

    @staticmethod
    def _parse_body(body: bytes) -> Dict[str, Any]:
        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError(f"Malformed JSON-RPC body: {exc}") from exc
        if not isinstance(message, dict):
            raise TransportError("JSON-RPC message must be an object")
        return message


async def read_messages(
    reader: asyncio.StreamReader, chunk_size: int = READ_CHUNK_SIZE
) -> AsyncIterator[Dict[str, Any]]:
    """Yield messages from ``reader`` until EOF.

    Bytes of an unfinished message at EOF are discarded; the peer is gone and
    nothing can complete it.
    """
    decoder = MessageDecoder()
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            return
        for message in decoder.feed(chunk):
            yield message
