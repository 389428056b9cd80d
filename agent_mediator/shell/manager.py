from __future__ import annotations

"""Shell session manager.

``ShellSessionManager`` owns the session table: one implicit default session
plus any number of explicitly named ones. It is the only component that adds
or removes sessions; callers get references through the lookup methods.
"""

import asyncio
import logging
import shutil
from typing import Dict, List, Optional
from uuid import uuid4

from ..errors import RequestValidationError, UnknownSessionError
from ..permissions.engine import PermissionEngine
from ..schemas.reports import CleanupReport
from .models import SessionStats, ShellConfig
from .session import ShellSession

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


class ShellSessionManager:
    """
    Pool of :class:`ShellSession` objects sharing one permission engine.

    Notes:
        - ``get_default_session`` creates the default session on first use
          and returns the same instance afterwards.
        - Sessions start their shell lazily, so creating one never blocks.
        - ``cleanup`` closes every session, tolerates already-dead processes
          and empties the table; it may be called any number of times.
    """

    def __init__(self, permissions: PermissionEngine, config: Optional[ShellConfig] = None) -> None:
        self._permissions = permissions
        self._config = config or ShellConfig()
        self._sessions: Dict[str, ShellSession] = {}

    @property
    def config(self) -> ShellConfig:
        return self._config

    def initialize(self) -> None:
        """
        Verify the configured shell binary is available.

        Raises:
            RuntimeError: If ``shell_path`` cannot be resolved to an executable.
        """
        if shutil.which(self._config.shell_path) is None:
            raise RuntimeError(f"Shell binary not found: {self._config.shell_path}")
        logger.debug("ShellSessionManager.initialize: shell=%s", self._config.shell_path)

    def get_default_session(self) -> ShellSession:
        session = self._sessions.get(DEFAULT_SESSION_ID)
        if session is None:
            session = self._create(DEFAULT_SESSION_ID, None)
        return session

    def get_session(self, session_id: Optional[str] = None) -> ShellSession:
        """
        Look up a session by id; ``None`` means the default session.

        Raises:
            UnknownSessionError: If no session with ``session_id`` exists.
        """
        if session_id is None or session_id == DEFAULT_SESSION_ID:
            return self.get_default_session()
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownSessionError(session_id) from None

    def create_session(
        self, session_id: Optional[str] = None, *, working_directory: Optional[str] = None
    ) -> ShellSession:
        """
        Create a new named session.

        Raises:
            RequestValidationError: If a session with ``session_id`` already exists.
        """
        session_id = session_id or f"session-{uuid4().hex[:12]}"
        if session_id in self._sessions:
            raise RequestValidationError(f"Shell session already exists: '{session_id}'")
        return self._create(session_id, working_directory)

    async def remove_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise UnknownSessionError(session_id)
        await session.close()
        logger.info("ShellSessionManager.remove_session: session_id=%s", session_id)

    def get_session_ids(self) -> List[str]:
        return list(self._sessions)

    def get_all_stats(self) -> List[SessionStats]:
        return [session.get_stats() for session in list(self._sessions.values())]

    async def cleanup(self) -> CleanupReport:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        outcomes = await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)
        errors: List[str] = []
        for session, outcome in zip(sessions, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("ShellSessionManager.cleanup: session_id=%s error=%r", session.session_id, outcome)
                errors.append(f"shell session '{session.session_id}': {outcome}")
        logger.info("ShellSessionManager.cleanup: closed=%d errors=%d", len(sessions), len(errors))
        return CleanupReport(closed=len(sessions) - len(errors), errors=errors)

    def _create(self, session_id: str, working_directory: Optional[str]) -> ShellSession:
        session = ShellSession(session_id, self._permissions, self._config, working_directory=working_directory)
        self._sessions[session_id] = session
        logger.debug("ShellSessionManager: created session_id=%s cwd=%s", session_id, session.working_directory)
        return session
