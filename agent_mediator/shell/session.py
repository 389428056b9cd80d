from __future__ import annotations

"""Persistent shell session.

A ``ShellSession`` owns one long-lived ``bash`` process. Commands are fed to
it over stdin; each command runs as a background job in its own process group
so a timeout can kill the whole job tree with one ``killpg`` while the shell
itself survives for the next call.

Protocol per command
--------------------

The session writes a small script to the shell::

    ( cd -- <cwd> && [export NAME=value && ...] exec bash -c <command> ) </dev/null >OUT 2>ERR &
    __am_pid=$!
    echo "<token> pid $__am_pid"
    wait "$__am_pid"
    echo "<token> exit $?"

and reads the two marker lines back from the shell's stdout. The command's
own output goes to per-command files under the session's private temp
directory, so markers can never be confused with command output.
"""

import asyncio
import logging
import os
import re
import shlex
import shutil
import signal
import tempfile
import time
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from ..errors import RequestValidationError, SessionDeadError
from ..permissions.engine import PermissionEngine
from ..schemas.domain import PermissionRequest, PermissionScope, PermissionType, new_correlation_id, utc_now
from .models import (
    CommandRecord,
    SessionInfo,
    SessionStats,
    ShellConfig,
    ShellResult,
    ShellStatus,
)

logger = logging.getLogger(__name__)

_ENV_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class _ShellExited(Exception):
    """The shell closed its stdout: the process is gone."""


def _kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as exc:
        logger.warning("ShellSession: cannot kill process group %d: %s", pgid, exc)


def _format_failure(exit_status: Optional[int], stdout: str, stderr: str) -> str:
    return f"Command failed. Exit code: {exit_status}\nStderr: {stderr}\nStdout: {stdout}"


class ShellSession:
    """
    One managed process-execution context.

    The underlying shell is started lazily on the first ``execute`` (or by an
    explicit ``start``). Once the shell dies the session is never restarted;
    every later ``execute`` returns a ``session_dead`` result.

    Notes:
        - Commands on one session are serialized; different sessions do not
          block each other.
        - Statistics count every executed command (completed, timed out or
          session dead) and are never reset. Denied and malformed requests are
          rejected before execution and are not counted.
    """

    def __init__(
        self,
        session_id: str,
        permissions: PermissionEngine,
        config: Optional[ShellConfig] = None,
        *,
        working_directory: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.created_at = utc_now()
        self._permissions = permissions
        self._config = config or ShellConfig()
        self._cwd = str(Path(working_directory or self._config.working_directory or os.getcwd()).resolve())

        self._process: Optional[asyncio.subprocess.Process] = None
        self._ipc_dir: Optional[str] = None
        self._running_pgid: Optional[int] = None
        self._lock = asyncio.Lock()
        self._pending = 0
        self._dead = False
        self._closed = False
        self._env_overrides: Dict[str, str] = {}

        self._history: Deque[CommandRecord] = deque(maxlen=self._config.max_history_size)
        self._total = 0
        self._succeeded = 0
        self._total_duration_ms = 0

    @property
    def working_directory(self) -> str:
        return self._cwd

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def alive(self) -> bool:
        """False once the shell has exited, was killed, or the session was closed."""
        if self._closed or self._dead:
            return False
        return self._process is None or self._process.returncode is None

    async def start(self) -> None:
        """
        Start the underlying shell if it is not running yet.

        Raises:
            SessionDeadError: The session was closed, including by a ``close``
                that ran while the shell was being spawned.
        """
        if self._process is not None:
            return
        if self._closed:
            raise SessionDeadError(self.session_id)
        ipc_dir = tempfile.mkdtemp(prefix=f"agent-mediator-{self.session_id}-")
        env = {**os.environ, **self._config.environment}
        try:
            process = await asyncio.create_subprocess_exec(
                self._config.shell_path,
                "--noprofile",
                "--norc",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=self._cwd,
                env=env,
                start_new_session=True,
            )
        except BaseException:
            shutil.rmtree(ipc_dir, ignore_errors=True)
            raise
        if self._closed:
            # close() finished while the spawn was in flight
            _kill_group(process.pid)
            await process.wait()
            if process.stdin is not None:
                process.stdin.close()
            shutil.rmtree(ipc_dir, ignore_errors=True)
            raise SessionDeadError(self.session_id)
        self._process, self._ipc_dir = process, ipc_dir
        # job control puts every background command in its own process group
        await self._send("set -m\n")
        logger.debug("ShellSession.start: session_id=%s pid=%s cwd=%s", self.session_id, self._process.pid, self._cwd)

    async def execute(
        self,
        command: Union[Sequence[str], str],
        working_directory: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> ShellResult:
        """
        Run one command in this session.

        Args:
            command: Command tokens; they are joined with single spaces and
                interpreted by the shell.
            working_directory: Directory to run in (relative paths resolve
                against the session's working directory).
            timeout_seconds: Hard deadline; defaults to the configured timeout.
            correlation_id: Audit token; generated when omitted.

        Returns:
            A ``ShellResult``. Timeouts and a dead session are reported through
            ``status``; call ``raise_for_status`` to turn them into exceptions.

        Raises:
            RequestValidationError: Empty command or non-positive timeout.
            PermissionDeniedError: The shell-execute grant was denied.
        """
        correlation_id = correlation_id or new_correlation_id()
        tokens = [command] if isinstance(command, str) else [str(token) for token in command]
        if not any(token.strip() for token in tokens):
            raise RequestValidationError(
                "Command must contain at least one non-empty token", correlation_id=correlation_id
            )
        timeout = self._config.default_timeout_seconds if timeout_seconds is None else timeout_seconds
        if timeout <= 0:
            raise RequestValidationError(
                f"timeout_seconds must be positive, got {timeout}", correlation_id=correlation_id
            )

        command_text = " ".join(tokens)
        cwd = self._resolve(working_directory)
        await self._permissions.require(
            PermissionRequest(
                type=PermissionType.shell_execute,
                scope=PermissionScope.project_only,
                command=command_text,
                path=cwd,
                description=f"Execute shell command: {command_text}",
                correlation_id=correlation_id,
            )
        )

        self._pending += 1
        try:
            async with self._lock:
                result = await self._run(command_text, cwd, timeout, correlation_id)
                self._record(result)
        finally:
            self._pending -= 1

        logger.debug(
            "ShellSession.execute: session_id=%s correlation_id=%s status=%s exit=%s duration_ms=%d",
            self.session_id,
            correlation_id,
            result.status.value,
            result.exit_status,
            result.duration_ms,
        )
        return result

    def change_directory(self, path: str) -> str:
        """Set the session's default working directory; the target must exist."""
        target = self._resolve(path)
        if not Path(target).is_dir():
            raise RequestValidationError(f"Not a directory: {target}")
        self._cwd = target
        return target

    def set_env(self, name: str, value: str) -> None:
        """Set an environment variable for every later command in this session."""
        if not _ENV_NAME.fullmatch(name or ""):
            raise RequestValidationError(f"Invalid environment variable name: {name!r}")
        self._env_overrides[name] = str(value)

    def get_stats(self) -> SessionStats:
        average = self._total_duration_ms / self._total if self._total else 0.0
        return SessionStats(
            session_id=self.session_id,
            created_at=self.created_at,
            total_commands=self._total,
            successful_commands=self._succeeded,
            failed_commands=self._total - self._succeeded,
            average_duration_ms=average,
            working_directory=self._cwd,
            alive=self.alive,
        )

    def get_history(self, limit: Optional[int] = None) -> List[CommandRecord]:
        records = list(self._history)
        return records[-limit:] if limit else records

    def get_recent_failures(self, limit: int = 5) -> List[CommandRecord]:
        failures = [record for record in self._history if not record.success]
        return failures[-limit:] if limit else failures

    def get_session_info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            working_directory=self._cwd,
            shell=self._config.shell_path,
            alive=self.alive,
            pending_commands=self._pending,
            pid=self.pid,
        )

    async def close(self) -> None:
        """Terminate the shell and any running command. Safe on a dead or never-started session."""
        if self._closed:
            return
        self._closed = True
        if self._running_pgid is not None:
            _kill_group(self._running_pgid)
        await self._terminate_shell()
        if self._ipc_dir is not None:
            shutil.rmtree(self._ipc_dir, ignore_errors=True)
            self._ipc_dir = None
        logger.debug("ShellSession.close: session_id=%s", self.session_id)

    async def _run(self, command_text: str, cwd: str, timeout: float, correlation_id: str) -> ShellResult:
        started = time.monotonic()
        if not self.alive:
            return self._dead_result(command_text, cwd, timeout, correlation_id, started)
        try:
            await self.start()
        except SessionDeadError:
            return self._dead_result(command_text, cwd, timeout, correlation_id, started)
        except OSError as exc:
            logger.error("ShellSession.start failed: session_id=%s error=%s", self.session_id, exc)
            self._dead = True
            return self._dead_result(command_text, cwd, timeout, correlation_id, started)

        token = uuid4().hex
        out_path = os.path.join(self._ipc_dir, f"{token}.out")
        err_path = os.path.join(self._ipc_dir, f"{token}.err")
        exports = "".join(f"export {name}={shlex.quote(value)} && " for name, value in self._env_overrides.items())
        script = (
            f"( cd -- {shlex.quote(cwd)} && {exports}exec {shlex.quote(self._config.shell_path)} --noprofile --norc "
            f"-c {shlex.quote(command_text)} ) </dev/null >{shlex.quote(out_path)} 2>{shlex.quote(err_path)} &\n"
            "__am_pid=$!\n"
            f'echo "{token} pid $__am_pid"\n'
            'wait "$__am_pid"\n'
            f'echo "{token} exit $?"\n'
        )
        deadline = started + timeout
        exit_status: Optional[int] = None
        pgid: Optional[int] = None
        try:
            await self._send(script)
            pgid = int(await asyncio.wait_for(self._read_marker(token, "pid"), self._remaining(deadline)))
            self._running_pgid = pgid
            exit_status = int(await asyncio.wait_for(self._read_marker(token, "exit"), self._remaining(deadline)))
            status = ShellStatus.completed
        except asyncio.TimeoutError:
            status = ShellStatus.timed_out
            exit_status = await self._kill_and_reap(token, pgid)
        except (_ShellExited, BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("ShellSession: shell exited during command: session_id=%s error=%r", self.session_id, exc)
            self._dead = True
            status = ShellStatus.session_dead
        finally:
            self._running_pgid = None

        stdout, stderr = await asyncio.to_thread(self._collect_output, out_path, err_path)
        duration_ms = int((time.monotonic() - started) * 1000)
        success = status == ShellStatus.completed and exit_status == 0
        if success:
            result_text = stdout
        elif status == ShellStatus.timed_out:
            result_text = f"Command timed out after {timeout}s\nStderr: {stderr}\nStdout: {stdout}"
        elif status == ShellStatus.session_dead:
            result_text = f"Shell session '{self.session_id}' is no longer alive"
        else:
            result_text = _format_failure(exit_status, stdout, stderr)

        return ShellResult(
            correlation_id=correlation_id,
            session_id=self.session_id,
            command=command_text,
            result_text=result_text,
            stdout=stdout,
            stderr=stderr,
            exit_status=exit_status,
            success=success,
            duration_ms=duration_ms,
            status=status,
            working_directory=cwd,
            timeout_seconds=timeout,
        )

    async def _kill_and_reap(self, token: str, pgid: Optional[int]) -> Optional[int]:
        """Kill the timed-out job; if the shell cannot confirm it, the session is declared dead."""
        grace = self._config.kill_grace_seconds
        try:
            if pgid is None:
                pgid = int(await asyncio.wait_for(self._read_marker(token, "pid"), grace))
            _kill_group(pgid)
            return int(await asyncio.wait_for(self._read_marker(token, "exit"), grace))
        except (asyncio.TimeoutError, _ShellExited, ValueError) as exc:
            logger.warning(
                "ShellSession: could not reap timed-out command, closing shell: session_id=%s error=%r",
                self.session_id,
                exc,
            )
            self._dead = True
            await self._terminate_shell()
            return None

    async def _send(self, text: str) -> None:
        proc = self._process
        if proc is None or proc.stdin is None:
            raise _ShellExited()
        proc.stdin.write(text.encode())
        await proc.stdin.drain()

    async def _read_marker(self, token: str, kind: str) -> str:
        prefix = f"{token} {kind} "
        proc = self._process
        if proc is None or proc.stdout is None:
            raise _ShellExited()
        while True:
            line = await proc.stdout.readline()
            if not line:
                raise _ShellExited()
            text = line.decode(errors="replace").strip()
            if text.startswith(prefix):
                return text[len(prefix):]

    async def _terminate_shell(self) -> None:
        proc = self._process
        if proc is None:
            return
        if proc.returncode is None:
            # the shell leads its own session, so its pgid equals its pid
            _kill_group(proc.pid)
            await proc.wait()
        if proc.stdin is not None:
            proc.stdin.close()

    def _resolve(self, path: Optional[str]) -> str:
        if not path:
            return self._cwd
        target = Path(path).expanduser()
        if not target.is_absolute():
            target = Path(self._cwd) / target
        return str(target.resolve())

    def _record(self, result: ShellResult) -> None:
        self._history.append(
            CommandRecord(
                correlation_id=result.correlation_id,
                command=result.command,
                exit_status=result.exit_status,
                duration_ms=result.duration_ms,
                success=result.success,
                status=result.status,
            )
        )
        self._total += 1
        self._total_duration_ms += result.duration_ms
        if result.success:
            self._succeeded += 1

    def _dead_result(
        self, command_text: str, cwd: str, timeout: float, correlation_id: str, started: float
    ) -> ShellResult:
        return ShellResult(
            correlation_id=correlation_id,
            session_id=self.session_id,
            command=command_text,
            result_text=f"Shell session '{self.session_id}' is no longer alive",
            success=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            status=ShellStatus.session_dead,
            working_directory=cwd,
            timeout_seconds=timeout,
        )

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(deadline - time.monotonic(), 0.0)

    @staticmethod
    def _collect_output(out_path: str, err_path: str) -> Tuple[str, str]:
        outputs = []
        for path in (out_path, err_path):
            try:
                outputs.append(Path(path).read_bytes().decode(errors="replace"))
            except FileNotFoundError:
                outputs.append("")
            else:
                os.unlink(path)
        return outputs[0], outputs[1]
