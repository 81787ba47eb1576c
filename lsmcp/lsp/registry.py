"""
Process-wide bookkeeping of language server sessions.

Sessions are keyed by project root and language and stay alive until they are
released, shut down, or their server exits. The most recently initialized
session is the "active client" that single-session callers use.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from lsmcp.config import ClientOptions, LanguageServerConfig
from lsmcp.exceptions import ConfigurationError, NotInitializedError
from lsmcp.lsp.session import LspSession
from lsmcp.lsp.types import SessionState
from lsmcp.utils.logger import log_context, setup_logger

logger = setup_logger(__name__)

# Global registry instance shared by the tool layer
_session_registry: Optional["SessionRegistry"] = None


def get_session_registry() -> "SessionRegistry":
    """Get the global session registry, creating it if needed."""
    global _session_registry
    if _session_registry is None:
        logger.info("SessionRegistry: Creating new global registry instance")
        _session_registry = SessionRegistry()
    return _session_registry


def reset_session_registry() -> None:
    """Drop the global registry, killing any server it still tracks."""
    global _session_registry
    if _session_registry is not None:
        logger.info("SessionRegistry: Resetting global registry instance")
        _session_registry.kill_all()
    _session_registry = None


@dataclass(frozen=True)
class SessionKey:
    """Composite key identifying a language server session."""

    project_root: str
    language: str

    def __str__(self) -> str:
        return f"{self.language}:{self.project_root}"


class SessionRegistry:
    """
    Owns every live session and the "active client" pointer.

    Two ways in:

    - ``initialize`` wraps a server process the caller already started.
    - ``acquire``/``release`` spawn servers from registered configurations and
      reference-count them, so callers for the same project share one server.
    """

    def __init__(
        self,
        language_configs: Optional[Dict[str, LanguageServerConfig]] = None,
    ) -> None:
        self._language_configs: Dict[str, LanguageServerConfig] = dict(
            language_configs or {}
        )
        self._sessions: Dict[SessionKey, LspSession] = {}
        self._ref_counts: Dict[SessionKey, int] = {}
        self._starting: Dict[SessionKey, asyncio.Task] = {}
        self._active: Optional[LspSession] = None

    def register_language(self, language: str, config: LanguageServerConfig) -> None:
        logger.info(f"Registered language server for {language}: {config.command}")
        self._language_configs[language] = config

    def list_languages(self) -> List[str]:
        return sorted(self._language_configs)

    def _get_language_config(self, language: str) -> LanguageServerConfig:
        try:
            return self._language_configs[language]
        except KeyError:
            raise ConfigurationError(
                f"No language server configured for '{language}'."
            ) from None

    @property
    def sessions(self) -> Dict[SessionKey, LspSession]:
        return dict(self._sessions)

    def _track(self, key: SessionKey, session: LspSession) -> None:
        self._sessions[key] = session
        session.add_termination_callback(
            lambda terminated: self._on_session_terminated(key, terminated)
        )

    def _on_session_terminated(self, key: SessionKey, session: LspSession) -> None:
        if self._sessions.get(key) is session:
            del self._sessions[key]
            self._ref_counts.pop(key, None)
            logger.info(f"Dropped terminated session {key}")
        if self._active is session:
            self._active = None

    def _begin_start(self, key: SessionKey, start: Any) -> asyncio.Task:
        task = asyncio.ensure_future(start)
        self._starting[key] = task
        task.add_done_callback(lambda done: self._forget_start(key, done))
        return task

    def _forget_start(self, key: SessionKey, task: asyncio.Task) -> None:
        if self._starting.get(key) is task:
            del self._starting[key]

    async def _wait_for_start(self, key: SessionKey) -> None:
        """Block until no start-up for ``key`` is in flight, whatever its outcome."""
        task = self._starting.get(key)
        while task is not None:
            await asyncio.wait({task})
            self._forget_start(key, task)
            task = self._starting.get(key)

    async def _replace_previous(self, key: SessionKey) -> None:
        previous = self._sessions.get(key)
        if previous is not None:
            logger.info(f"Replacing existing session {key}")
            await previous.shutdown()

    async def initialize(
        self,
        project_root: str,
        process: asyncio.subprocess.Process,
        language_id: str = "typescript",
        options: Optional[ClientOptions] = None,
    ) -> LspSession:
        """Wrap ``process`` in a session, take it to Ready and make it active.

        Returns only once the handshake finished, so the active client is
        never observed half-initialized. A start-up already in flight for the
        same key finishes first and is then replaced.
        """
        key = SessionKey(str(project_root), language_id)
        await self._wait_for_start(key)
        task = self._begin_start(
            key, self._adopt_session(key, process, language_id, options)
        )
        return await asyncio.shield(task)

    async def _adopt_session(
        self,
        key: SessionKey,
        process: asyncio.subprocess.Process,
        language_id: str,
        options: Optional[ClientOptions],
    ) -> LspSession:
        with log_context(session=str(key)):
            await self._replace_previous(key)
            session = LspSession.from_process(
                process, key.project_root, language_id, options
            )
            return await self._bring_up(key, session)

    async def _bring_up(self, key: SessionKey, session: LspSession) -> LspSession:
        self._track(key, session)
        try:
            await session.initialize()
        except asyncio.CancelledError:
            session.kill()
            raise
        self._active = session
        logger.info(f"Session {key} is the active client")
        return session

    def get_active_client(self) -> LspSession:
        if self._active is None or self._active.state is SessionState.TERMINATED:
            raise NotInitializedError(
                "No language server session has been initialized"
            )
        return self._active

    def get(self, project_root: str, language: str) -> Optional[LspSession]:
        return self._sessions.get(SessionKey(str(project_root), language))

    async def acquire(
        self,
        project_root: str,
        language: str,
        config: Optional[LanguageServerConfig] = None,
    ) -> LspSession:
        """Get the Ready session for a key, spawning its server on first use.

        Concurrent callers for the same key, including an ``initialize`` in
        progress, share one start-up; each successful call must be paired
        with ``release``.
        """
        key = SessionKey(str(project_root), language)
        session = self._sessions.get(key)
        if key in self._starting or session is None or not session.is_ready:
            task = self._starting.get(key)
            if task is None:
                task = self._begin_start(key, self._start_session(key, config))
            session = await asyncio.shield(task)

        self._ref_counts[key] = self._ref_counts.get(key, 0) + 1
        return session

    async def _start_session(
        self, key: SessionKey, config: Optional[LanguageServerConfig]
    ) -> LspSession:
        with log_context(session=str(key)):
            config = config or self._get_language_config(key.language)
            await self._replace_previous(key)
            session = await LspSession.spawn(config, key.project_root, key.language)
            return await self._bring_up(key, session)

    async def release(self, project_root: str, language: str) -> None:
        """Drop one reference; the session is shut down with its last one."""
        key = SessionKey(str(project_root), language)
        count = self._ref_counts.get(key, 0) - 1
        if count > 0:
            self._ref_counts[key] = count
            return
        self._ref_counts.pop(key, None)
        await self.shutdown_session(project_root, language)

    async def shutdown_session(self, project_root: str, language: str) -> bool:
        key = SessionKey(str(project_root), language)
        session = self._sessions.pop(key, None)
        self._ref_counts.pop(key, None)
        if session is None:
            return False
        if self._active is session:
            self._active = None
        await session.shutdown()
        return True

    async def shutdown_all(self) -> None:
        """Shut every session down; one failing server does not stop the others."""
        for task in list(self._starting.values()):
            task.cancel()

        sessions = list(self._sessions.items())
        self._sessions.clear()
        self._ref_counts.clear()
        self._active = None
        if not sessions:
            return

        logger.info(f"Shutting down {len(sessions)} language server session(s)")
        results = await asyncio.gather(
            *(session.shutdown() for _, session in sessions),
            return_exceptions=True,
        )
        for (key, session), result in zip(sessions, results):
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(
                    f"Failed to shut down session {key}: {result}"
                )
                session.kill()

    def kill_all(self) -> None:
        """Kill every server without the shutdown handshake. Safe outside a loop."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._ref_counts.clear()
        self._active = None
        for session in sessions:
            session.kill()

    def stats(self) -> List[Dict[str, Any]]:
        return [
            {
                "project_root": key.project_root,
                "language": key.language,
                "state": session.state.value,
                "active": session is self._active,
                "ref_count": self._ref_counts.get(key, 0),
                "open_documents": len(session.documents),
                "pending_requests": len(session.pending_requests),
            }
            for key, session in self._sessions.items()
        ]
