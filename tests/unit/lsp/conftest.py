"""Fixtures wiring an `LspSession` to the in-memory `FakeServer`."""

from typing import Any, Callable, Dict, Optional

import pytest

from lsmcp.lsp.session import LspSession
from lsmcp.utils.logger import configure_logging
from lsp_fakes import PROJECT_ROOT, FakeServer, fast_options

configure_logging("DEBUG")


@pytest.fixture
def make_session() -> Callable[..., Any]:
    """Factory returning ``(session, server)`` wired together, not initialized.

    Must be called from inside a running event loop.
    """

    def factory(results: Optional[Dict[str, Any]] = None, **kwargs: Any):
        server = FakeServer(results)
        kwargs.setdefault("options", fast_options())
        session = LspSession(
            server.reader, server, project_root=PROJECT_ROOT, **kwargs
        )
        return session, server

    return factory


@pytest.fixture
def ready_session(make_session) -> Callable[..., Any]:
    """Async factory returning an initialized ``(session, server)`` pair."""

    async def factory(results: Optional[Dict[str, Any]] = None, **kwargs: Any):
        session, server = make_session(results, **kwargs)
        await session.initialize()
        return session, server

    return factory
