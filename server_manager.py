"""Supervise the local opencode server process."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional

from agent_errors import (
    AgentError,
    ProcessExitedNonzero,
    ProcessNotFound,
    ProcessStartTimeout,
)
from agent_server_client import HEALTH_TIMEOUT, probe_health

logger = logging.getLogger(__name__)

DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 4096
START_TIMEOUT = 30.0
STOP_GRACE = 5.0
BINARY_NAME = "opencode"
INSTALL_DIRS = (
    "~/.opencode/bin",
    "~/.local/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
)
READY_RE = re.compile(r"opencode server listening on\s+(\S+)", re.IGNORECASE)

STOPPED = "stopped"
STARTING = "starting"
RUNNING = "running"
ERROR = "error"


@dataclass
class ServerState:
    status: str = STOPPED
    base_url: Optional[str] = None
    last_error: Optional[str] = None
    directory: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def find_binary(explicit: Optional[str] = None, install_dirs=INSTALL_DIRS) -> tuple[Optional[str], List[str]]:
    """Return ``(path, searched)`` for the agent binary."""
    searched: List[str] = []
    if explicit:
        path = os.path.expanduser(explicit)
        searched.append(path)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path, searched
        resolved = shutil.which(explicit)
        return resolved, searched
    for directory in install_dirs:
        candidate = os.path.join(os.path.expanduser(directory), BINARY_NAME)
        searched.append(candidate)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate, searched
    resolved = shutil.which(BINARY_NAME)
    if resolved:
        return resolved, searched
    searched.append("PATH")
    return None, searched


async def _read_line(stream: asyncio.StreamReader) -> bytes:
    """Next output line; lines over the reader limit are dropped."""
    while True:
        try:
            return await stream.readline()
        except ValueError as exc:
            logger.warning("skipping overlong agent server output line: %s", exc)


class ServerManager:
    """Start, health-check and stop the agent server; one instance per hub."""

    def __init__(
        self,
        binary: Optional[str] = None,
        hostname: str = DEFAULT_HOSTNAME,
        port: int = DEFAULT_PORT,
        start_timeout: float = START_TIMEOUT,
        health_timeout: float = HEALTH_TIMEOUT,
        install_dirs=INSTALL_DIRS,
    ) -> None:
        self.binary = binary
        self.hostname = hostname
        self.port = int(port)
        self.start_timeout = start_timeout
        self.health_timeout = health_timeout
        self.install_dirs = tuple(install_dirs)
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.external = False
        self.stderr_lines: deque[str] = deque(maxlen=500)
        self._state = ServerState()
        self._listeners: List[Callable[[ServerState], None]] = []
        self._pump_tasks: List[asyncio.Task] = []
        self._lock = asyncio.Lock()

    @property
    def default_url(self) -> str:
        return f"http://{self.hostname}:{self.port}"

    @property
    def state(self) -> ServerState:
        return ServerState(**asdict(self._state))

    @property
    def base_url(self) -> Optional[str]:
        return self._state.base_url

    def is_running(self) -> bool:
        return self._state.status == RUNNING and self._state.base_url is not None

    def add_listener(self, callback: Callable[[ServerState], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[ServerState], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set_state(self, **fields) -> None:
        new_state = ServerState(**fields)
        if new_state == self._state:
            return
        self._state = new_state
        for callback in list(self._listeners):
            try:
                callback(self.state)
            except Exception:
                logger.exception("server state listener failed")

    async def start(self, directory: Optional[str] = None) -> None:
        async with self._lock:
            if self._state.status == RUNNING:
                logger.info("agent server already running at %s", self._state.base_url)
                return
            self._set_state(status=STARTING, directory=directory)
            try:
                await self._start(directory)
            except AgentError as exc:
                logger.error("failed to start agent server: %s", exc)
                self._set_state(status=ERROR, last_error=str(exc), directory=directory)
                raise
            except asyncio.CancelledError:
                self._set_state(status=ERROR, last_error="start cancelled", directory=directory)
                raise

    async def _start(self, directory: Optional[str]) -> None:
        url = self.default_url
        if await probe_health(url, timeout=self.health_timeout):
            logger.info("adopting running agent server at %s", url)
            self.external = True
            self._set_state(status=RUNNING, base_url=url, directory=directory)
            return

        binary, searched = find_binary(self.binary, self.install_dirs)
        if not binary:
            raise ProcessNotFound(searched)

        args = [binary, "serve", f"--hostname={self.hostname}", f"--port={self.port}"]
        logger.info("starting agent server: %s", " ".join(args))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout
        output: List[str] = []
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=directory or None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=1 << 16,
            )
            self.external = False
            self._pump_tasks = [asyncio.create_task(self._pump_stderr(), name="agent-server-stderr")]
            try:
                base_url = await asyncio.wait_for(self._wait_ready(output), timeout=self.start_timeout)
                if base_url is None:
                    # stdout closed; the process must also exit before the deadline
                    remaining = max(deadline - loop.time(), 0.01)
                    returncode = await asyncio.wait_for(self.proc.wait(), timeout=remaining)
                    captured = "\n".join(output + list(self.stderr_lines)[-20:])
                    raise ProcessExitedNonzero(returncode, captured)
            except asyncio.TimeoutError:
                raise ProcessStartTimeout(self.start_timeout) from None
        except BaseException as exc:
            await self._kill()
            if isinstance(exc, AgentError) or not isinstance(exc, Exception):
                raise
            raise AgentError(f"opencode server failed to start: {exc}") from exc

        self._pump_tasks.append(asyncio.create_task(self._pump_stdout(), name="agent-server-stdout"))
        logger.info("agent server listening on %s", base_url)
        self._set_state(status=RUNNING, base_url=base_url, directory=directory)

    async def _wait_ready(self, output: List[str]) -> Optional[str]:
        assert self.proc and self.proc.stdout
        while True:
            line = await _read_line(self.proc.stdout)
            if not line:
                return None
            text = line.decode(errors="ignore").rstrip()
            output.append(text)
            match = READY_RE.search(text)
            if match:
                return match.group(1).rstrip("/")

    async def _pump_stdout(self) -> None:
        assert self.proc and self.proc.stdout
        try:
            while True:
                line = await _read_line(self.proc.stdout)
                if not line:
                    break
                logger.debug("agent server: %s", line.decode(errors="ignore").rstrip())
        except asyncio.CancelledError:
            return

    async def _pump_stderr(self) -> None:
        assert self.proc and self.proc.stderr
        try:
            while True:
                line = await _read_line(self.proc.stderr)
                if not line:
                    break
                text = line.decode(errors="ignore").rstrip("\n")
                self.stderr_lines.append(text)
                logger.warning("agent server stderr: %s", text)
        except asyncio.CancelledError:
            return

    def _cancel_pumps(self) -> None:
        for task in self._pump_tasks:
            task.cancel()
        self._pump_tasks = []

    async def _kill(self) -> None:
        if self.proc:
            if self.proc.returncode is None:
                try:
                    self.proc.kill()
                except ProcessLookupError:
                    pass
            await self.proc.wait()
        self.proc = None
        self._cancel_pumps()

    async def shutdown(self) -> None:
        async with self._lock:
            if self.proc and not self.external:
                logger.info("stopping agent server")
                try:
                    self.proc.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(self.proc.wait(), timeout=STOP_GRACE)
                except asyncio.TimeoutError:
                    await self._kill()
            self.proc = None
            self.external = False
            self._cancel_pumps()
            self._set_state(status=STOPPED)
