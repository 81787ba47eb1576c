"""Open-document bookkeeping and the diagnostics cache of one session."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from lsmcp.exceptions import DocumentStateError, LspError, RequestTimeoutError
from lsmcp.lsp.types import (
    LspMethod,
    TextDocumentItem,
    VersionedTextDocumentIdentifier,
    to_wire,
)


@dataclass
class OpenDocument:
    uri: str
    language_id: str
    version: int
    text: str

    def to_item(self) -> Dict[str, Any]:
        """``TextDocumentItem`` payload for ``textDocument/didOpen``."""
        return to_wire(
            TextDocumentItem(
                uri=self.uri,
                language_id=self.language_id,
                version=self.version,
                text=self.text,
            )
        )

    def to_identifier(self) -> Dict[str, Any]:
        return to_wire(VersionedTextDocumentIdentifier(uri=self.uri, version=self.version))


class DocumentStore:
    """
    Tracks which URIs the server has been told about.

    Diagnostics are only cached for open documents and are replaced wholesale
    on every publish; closing a document drops its entry.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, OpenDocument] = {}
        self._diagnostics: Dict[str, List[Dict[str, Any]]] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}

    def __contains__(self, uri: str) -> bool:
        return uri in self._documents

    def __iter__(self) -> Iterator[OpenDocument]:
        return iter(list(self._documents.values()))

    def __len__(self) -> int:
        return len(self._documents)

    def is_open(self, uri: str) -> bool:
        return uri in self._documents

    def get(self, uri: str) -> OpenDocument:
        try:
            return self._documents[uri]
        except KeyError:
            raise DocumentStateError(uri) from None

    def open(self, uri: str, language_id: str, text: str) -> OpenDocument:
        if uri in self._documents:
            raise DocumentStateError(uri, f"Document is already open: {uri}")
        document = OpenDocument(uri=uri, language_id=language_id, version=1, text=text)
        self._documents[uri] = document
        return document

    def update(self, uri: str, text: str, version: Optional[int] = None) -> OpenDocument:
        document = self.get(uri)
        new_version = document.version + 1 if version is None else version
        if new_version <= document.version:
            raise DocumentStateError(
                uri,
                f"Version {new_version} of {uri} does not increase past {document.version}",
            )
        document.version = new_version
        document.text = text
        return document

    def close(self, uri: str) -> Optional[OpenDocument]:
        document = self._documents.pop(uri, None)
        if document is None:
            return None
        self._diagnostics.pop(uri, None)
        self._fail_waiters(uri, DocumentStateError(uri, f"Document was closed: {uri}"))
        return document

    def set_diagnostics(self, uri: str, diagnostics: List[Dict[str, Any]]) -> bool:
        """Replace the cached diagnostics of ``uri``; ignored unless it is open."""
        if uri not in self._documents:
            return False
        self._diagnostics[uri] = list(diagnostics)
        for waiter in self._waiters.pop(uri, []):
            if not waiter.done():
                waiter.set_result(list(diagnostics))
        return True

    def get_diagnostics(self, uri: str) -> Optional[List[Dict[str, Any]]]:
        """Last published diagnostics, or None if the server has published none yet."""
        if uri not in self._documents:
            raise DocumentStateError(uri)
        diagnostics = self._diagnostics.get(uri)
        return list(diagnostics) if diagnostics is not None else None

    async def wait_for_diagnostics(
        self, uri: str, timeout: float, fresh: bool = False
    ) -> List[Dict[str, Any]]:
        """Wait for a ``publishDiagnostics`` for ``uri``.

        Returns the cached list immediately when one exists, unless ``fresh``
        asks for the next publish.
        """
        if uri not in self._documents:
            raise DocumentStateError(uri)
        if not fresh and uri in self._diagnostics:
            return list(self._diagnostics[uri])

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(uri, []).append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                LspMethod.PUBLISH_DIAGNOSTICS.value, timeout
            ) from None
        finally:
            waiters = self._waiters.get(uri)
            if waiters and waiter in waiters:
                waiters.remove(waiter)
                if not waiters:
                    del self._waiters[uri]

    def _fail_waiters(self, uri: str, error: LspError) -> None:
        for waiter in self._waiters.pop(uri, []):
            if not waiter.done():
                waiter.set_exception(error)

    def clear(self, error: LspError) -> None:
        """Forget every document and fail anyone waiting on diagnostics."""
        for uri in list(self._waiters):
            self._fail_waiters(uri, error)
        self._documents.clear()
        self._diagnostics.clear()
