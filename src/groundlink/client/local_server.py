"""Supervision of a server process launched on this machine.

When the settings ask for a local server, the connection manager asks the
supervisor to launch it before connecting and to terminate it when the
connection is torn down. At most one local server runs at a time.
"""

import asyncio
import json
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from groundlink.errors import LocalProcessError

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("groundlink.local_server")

Disposer = Callable[[], Awaitable[None]]

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}


def translate_log_level(severity: Any) -> int:
    """Map the textual severity of a server log record to a numeric level."""
    if isinstance(severity, str):
        return LOG_LEVELS.get(severity.strip().lower(), logging.INFO)
    return logging.INFO


def short_module_name(name: Any) -> str:
    """Keep only the last dot-separated segment of a module name."""
    if not isinstance(name, str) or not name:
        return ""
    return name.rsplit(".", 1)[-1]


@dataclass
class LocalServerCallbacks:
    error: Callable[[LocalProcessError], None] | None = None
    exit: Callable[[int | None, str | None, LocalProcessError], None] | None = None
    log: Callable[[int, str, str], None] | None = None


@dataclass
class LocalServerHandle:
    """The single local server process owned by the supervisor."""

    process: asyncio.subprocess.Process
    port: int
    disposer: Disposer | None = None
    running: bool = True
    started: bool = False
    tasks: list[asyncio.Task[None]] = field(default_factory=list)
    startup_timer: asyncio.TimerHandle | None = None


class LocalProcessSupervisor:
    """Launches, watches and terminates the local server process.

    Args:
        executable: Name of the server executable to look up.
        search_paths: Extra folders to search before the system PATH.
        startup_grace: Seconds after which a silent process counts as started.
        shutdown_timeout: Seconds to wait for the process after each signal.
    """

    def __init__(
        self,
        executable: str = "skybrushd",
        *,
        search_paths: Sequence[str] = (),
        startup_grace: float = 1.0,
        shutdown_timeout: float = 5.0,
        spawner: Callable[..., Awaitable[asyncio.subprocess.Process]] = (
            asyncio.create_subprocess_exec
        ),
    ) -> None:
        self.executable = executable
        self.search_paths = list(search_paths)
        self.startup_grace = startup_grace
        self.shutdown_timeout = shutdown_timeout
        self._spawner = spawner
        self._handle: LocalServerHandle | None = None

    @property
    def handle(self) -> LocalServerHandle | None:
        return self._handle

    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.running

    def find_executable(self) -> str | None:
        """Search the extra folders, then the system PATH."""
        if os.path.dirname(self.executable):
            return self.executable if os.path.exists(self.executable) else None
        path = os.pathsep.join([*self.search_paths, os.environ.get("PATH", "")])
        return shutil.which(self.executable, path=path)

    async def ensure_running(
        self,
        args: Sequence[str] = (),
        port: int = 5000,
        callbacks: LocalServerCallbacks | None = None,
        timeout: float = 5.0,
    ) -> Disposer:
        """Launch the local server.

        Returns:
            Disposer: Coroutine function that terminates this very process.

        Raises:
            RuntimeError: If a local server launched earlier is still running.
            LocalProcessError: If the executable is missing or fails to spawn.
        """
        if self._handle is not None:
            raise RuntimeError("A local server is already running")

        callbacks = callbacks or LocalServerCallbacks()

        executable = self.find_executable()
        if executable is None:
            raise LocalProcessError(
                f"Local server executable '{self.executable}' not found",
                never_started=True,
            )

        command = [executable, "--log-style", "json", *args]
        logger.info(f"Launching local server instance on port {port}")
        logger.debug(f"Local server command: {command}")

        try:
            process = await asyncio.wait_for(
                self._spawner(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=None,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=os.path.dirname(executable) or None,
                ),
                timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise LocalProcessError(
                f"Failed to start local server: {e}", never_started=True
            ) from e

        handle = LocalServerHandle(process=process, port=port)
        self._handle = handle

        async def dispose() -> None:
            if self._handle is handle:
                await self.terminate()

        handle.disposer = dispose
        handle.startup_timer = asyncio.get_running_loop().call_later(
            self.startup_grace, self._mark_started, handle
        )
        handle.tasks = [
            asyncio.create_task(
                self._forward_logs(handle, callbacks), name="local_server_logs"
            ),
            asyncio.create_task(
                self._watch(handle, callbacks), name="local_server_watch"
            ),
        ]

        logger.debug(f"Local server started (PID: {process.pid})")
        return dispose

    async def terminate(self) -> None:
        """Terminate the local server. Safe to call multiple times."""
        handle = self._handle
        if handle is None:
            return

        self._handle = None
        handle.running = False
        if handle.startup_timer is not None:
            handle.startup_timer.cancel()

        logger.info("Terminating local server process")
        await self._shutdown_process(handle.process)

        current = asyncio.current_task()
        for task in handle.tasks:
            if task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _mark_started(self, handle: LocalServerHandle) -> None:
        handle.started = True
        handle.startup_timer = None

    async def _forward_logs(
        self, handle: LocalServerHandle, callbacks: LocalServerCallbacks
    ) -> None:
        stream = handle.process.stderr
        if stream is None:
            return

        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                self._handle_log_line(
                    handle, callbacks, line.decode("utf-8", errors="replace")
                )
        except OSError as e:
            error = LocalProcessError(f"Cannot read local server output: {e}")
            logger.error(str(error))
            if handle.running and callbacks.error:
                callbacks.error(error)

    def _handle_log_line(
        self, handle: LocalServerHandle, callbacks: LocalServerCallbacks, line: str
    ) -> None:
        text = line.strip()
        if not text:
            return

        try:
            record = json.loads(text)
        except json.JSONDecodeError:
            record = None

        if not isinstance(record, dict):
            level, module, message = logging.INFO, "", text
        else:
            level = translate_log_level(record.get("levelname", record.get("level")))
            module = short_module_name(record.get("name", record.get("module")))
            message = str(record.get("message", record.get("msg", "")))

        handle.started = True
        server_logger.getChild(module or "server").log(level, message)

        if callbacks.log:
            try:
                callbacks.log(level, module, message)
            except Exception as e:
                logger.error(f"Local server log callback failed: {e}")

    async def _watch(
        self, handle: LocalServerHandle, callbacks: LocalServerCallbacks
    ) -> None:
        code = await handle.process.wait()
        if not handle.running:
            return

        handle.running = False
        if handle.startup_timer is not None:
            handle.startup_timer.cancel()
        if self._handle is handle:
            self._handle = None

        signal_name = _signal_name(code)
        error = LocalProcessError(
            _describe_exit(code, signal_name, handle.started),
            never_started=not handle.started,
        )
        logger.error(str(error))

        if callbacks.exit:
            try:
                callbacks.exit(code, signal_name, error)
            except Exception as e:
                logger.error(f"Local server exit callback failed: {e}")

    async def _shutdown_process(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process does not exit in time."""
        if process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug("Local server already dead, skipping SIGTERM")
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            logger.debug("Local server exited after SIGTERM")
            return
        except asyncio.TimeoutError:
            logger.debug("Local server didn't exit after SIGTERM, sending SIGKILL")

        try:
            process.kill()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.error("Local server didn't die after SIGKILL")


def _signal_name(code: int | None) -> str | None:
    if code is None or code >= 0:
        return None
    try:
        return signal.Signals(-code).name
    except ValueError:
        return f"signal {-code}"


def _describe_exit(code: int | None, signal_name: str | None, started: bool) -> str:
    detail = f"killed by {signal_name}" if signal_name else f"exit code {code}"
    if started:
        return f"Local server exited unexpectedly while running ({detail})"
    return f"Local server stopped before it started ({detail})"
