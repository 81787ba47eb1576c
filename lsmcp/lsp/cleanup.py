"""
Shut language servers down when the host process goes away.

Nothing here is installed implicitly. A host that owns the event loop calls
`register_cleanup_handlers` once, after which SIGINT/SIGTERM, uncaught
exceptions, unhandled task errors and interpreter exit all end in
`SessionRegistry.shutdown_all` (or `kill_all` where no loop is left).
"""

from __future__ import annotations

import asyncio
import atexit
import signal
import sys
from typing import Any, Dict, List, Optional

from lsmcp.lsp.registry import SessionRegistry, get_session_registry
from lsmcp.utils.logger import setup_logger

logger = setup_logger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_installed: Optional["CleanupHandlers"] = None


class CleanupHandlers:
    """The hooks installed by `register_cleanup_handlers`."""

    def __init__(
        self,
        registry: SessionRegistry,
        loop: asyncio.AbstractEventLoop,
        exit_process: bool = True,
    ) -> None:
        self.registry = registry
        self.loop = loop
        self.exit_process = exit_process
        self.shutdown_task: Optional[asyncio.Task] = None
        self._signals: List[int] = []
        self._previous_excepthook = sys.excepthook
        self._previous_loop_handler = loop.get_exception_handler()

    def install(self) -> None:
        for sig in HANDLED_SIGNALS:
            try:
                self.loop.add_signal_handler(sig, self.on_signal, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError) as exc:
                # e.g. Windows event loops or a loop not in the main thread
                logger.debug(f"Cannot handle {signal.Signals(sig).name} on this loop: {exc}")
        sys.excepthook = self.excepthook
        self.loop.set_exception_handler(self.loop_exception_handler)
        atexit.register(self.at_exit)

    def uninstall(self) -> None:
        for sig in self._signals:
            self.loop.remove_signal_handler(sig)
        self._signals.clear()
        if sys.excepthook is self.excepthook:
            sys.excepthook = self._previous_excepthook
        if not self.loop.is_closed():
            self.loop.set_exception_handler(self._previous_loop_handler)
        atexit.unregister(self.at_exit)

    def _schedule_shutdown(self, exit_code: int) -> Optional[asyncio.Task]:
        if self.shutdown_task is None:
            self.shutdown_task = self.loop.create_task(self._shutdown(exit_code))
        return self.shutdown_task

    async def _shutdown(self, exit_code: int) -> None:
        try:
            await self.registry.shutdown_all()
        finally:
            if self.exit_process:
                sys.exit(exit_code)

    def on_signal(self, sig: int) -> None:
        logger.warning(
            f"Received {signal.Signals(sig).name}, shutting down language servers"
        )
        self._schedule_shutdown(128 + sig)

    def loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]
    ) -> None:
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)
        logger.error(
            f"Unhandled error in event loop, shutting down language servers: "
            f"{context.get('message')}"
        )
        self._schedule_shutdown(1)

    def excepthook(self, exc_type, exc, tb) -> None:
        logger.opt(exception=(exc_type, exc, tb)).critical(
            "Uncaught exception, killing language servers"
        )
        self.registry.kill_all()
        self._previous_excepthook(exc_type, exc, tb)

    def at_exit(self) -> None:
        self.registry.kill_all()


def register_cleanup_handlers(
    registry: Optional[SessionRegistry] = None,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    exit_process: bool = True,
) -> CleanupHandlers:
    """
    Route process termination to the session registry. Idempotent.

    Args:
        registry: Registry to shut down; the global one by default.
        loop: Loop running the sessions; the running loop by default.
        exit_process: Exit with ``128 + signum`` (or 1 after an unhandled
            loop error) once every session has been shut down.
    """
    global _installed
    if _installed is not None:
        return _installed

    if loop is None:
        loop = asyncio.get_running_loop()
    handlers = CleanupHandlers(registry or get_session_registry(), loop, exit_process)
    handlers.install()
    _installed = handlers
    logger.debug("Installed language server cleanup handlers")
    return handlers


def unregister_cleanup_handlers() -> None:
    global _installed
    if _installed is None:
        return
    _installed.uninstall()
    _installed = None
