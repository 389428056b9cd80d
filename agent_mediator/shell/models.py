from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import Field

from ..errors import CommandTimeoutError, SessionDeadError
from ..schemas.base import BaseSchema
from ..schemas.domain import utc_now


def _default_environment() -> Dict[str, str]:
    return {
        "DEBIAN_FRONTEND": "noninteractive",
        "COREPACK_ENABLE_DOWNLOAD_PROMPT": "0",
        "GIT_EDITOR": "true",
    }


class ShellConfig(BaseSchema):
    """Settings applied to every shell session a manager creates."""

    shell_path: str = Field(default="/bin/bash", description="Shell binary started for each session.")
    default_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_history_size: int = Field(default=100, ge=1)
    working_directory: Optional[str] = Field(
        default=None, description="Initial working directory for new sessions (defaults to the process cwd)."
    )
    environment: Dict[str, str] = Field(default_factory=_default_environment)
    kill_grace_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="How long to wait for the shell to report a killed command before declaring the session dead.",
    )


class ShellStatus(str, Enum):
    completed = "completed"
    timed_out = "timed_out"
    session_dead = "session_dead"


class ShellResult(BaseSchema):
    """
    Outcome of one ``ShellSession.execute`` call.

    ``exit_status`` is None when the command never reported one (the session
    was dead, or the command was killed before the shell could reap it).
    """

    correlation_id: str
    session_id: str
    command: str
    result_text: str
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    success: bool
    duration_ms: int
    status: ShellStatus
    working_directory: str
    timeout_seconds: float

    def raise_for_status(self) -> "ShellResult":
        if self.status == ShellStatus.timed_out:
            raise CommandTimeoutError(
                self.command,
                self.timeout_seconds,
                correlation_id=self.correlation_id,
                details=self.model_dump(mode="json"),
            )
        if self.status == ShellStatus.session_dead:
            raise SessionDeadError(
                self.session_id, correlation_id=self.correlation_id, details=self.model_dump(mode="json")
            )
        return self


class CommandRecord(BaseSchema):
    correlation_id: str
    command: str
    exit_status: Optional[int] = None
    duration_ms: int
    success: bool
    status: ShellStatus
    executed_at: datetime = Field(default_factory=utc_now)


class SessionStats(BaseSchema):
    session_id: str
    created_at: datetime
    total_commands: int
    successful_commands: int
    failed_commands: int
    average_duration_ms: float
    working_directory: str
    alive: bool


class SessionInfo(BaseSchema):
    session_id: str
    working_directory: str
    shell: str
    alive: bool
    pending_commands: int
    pid: Optional[int] = None