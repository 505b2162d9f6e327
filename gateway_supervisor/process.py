"""
Process supervisor for the messaging gateway.

Owns the single child-process slot. Handles starting, stopping and restarting
the gateway, forwards its stdout/stderr to the supervisor log, and restarts it
after a backoff delay when it crashes. Every transition of the slot happens
under one lock, so crash, sync and operator restarts can never leave two
gateways running.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import Config
from .models import ChildState

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("gateway_supervisor.child")

READ_CHUNK = 64 * 1024


class SpawnFailed(Exception):
    """The gateway command could not be executed."""


@dataclass
class ChildHandle:
    """A live gateway process."""

    process: asyncio.subprocess.Process
    exited: asyncio.Future  # resolved once with the exit code
    started_at: datetime = field(default_factory=datetime.now)
    intentional: bool = False  # set when we are the ones stopping it
    readers: list = field(default_factory=list)
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def uptime(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


class ProcessSupervisor:
    """Keeps exactly one gateway process alive."""

    def __init__(
        self,
        command: list[str],
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        *,
        name: str = "gateway",
        restart_delay: float = 5.0,
        restart_backoff: float = 1.0,
        max_restart_delay: float = 300.0,
        max_restart_attempts: int = 0,
        min_uptime: float = 30.0,
        stop_timeout: float = 10.0,
        drain_timeout: float = 5.0,
        skills_lock: Optional[asyncio.Lock] = None,
    ):
        self.command = list(command)
        self.cwd = cwd
        self.env = env or {}
        self.name = name
        self.restart_delay = restart_delay
        self.restart_backoff = restart_backoff
        self.max_restart_delay = max_restart_delay
        self.max_restart_attempts = max_restart_attempts
        self.min_uptime = min_uptime
        self.stop_timeout = stop_timeout
        self.drain_timeout = drain_timeout

        self._lock = asyncio.Lock()
        self._skills_lock = skills_lock or asyncio.Lock()
        self._state = ChildState.ABSENT
        self._handle: Optional[ChildHandle] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._restart_pending = False
        self._auto_restart_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._stop_requested = False

        self.restart_count = 0  # consecutive crash restarts
        self.spawn_count = 0
        self.gave_up = False
        self.last_exit_code: Optional[int] = None
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(cls, config: Config, skills_lock: Optional[asyncio.Lock] = None) -> "ProcessSupervisor":
        return cls(
            config.gateway_argv(),
            cwd=str(config.workspace_dir),
            env=config.gateway_env(),
            restart_delay=config.restart_delay,
            restart_backoff=config.restart_backoff,
            max_restart_delay=config.max_restart_delay,
            max_restart_attempts=config.max_restart_attempts,
            min_uptime=config.min_uptime,
            stop_timeout=config.stop_timeout,
            skills_lock=skills_lock,
        )

    # Status

    def status(self) -> ChildState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        handle = self._handle
        if handle is None or handle.process.returncode is not None:
            return None
        return handle.pid

    def is_running(self) -> bool:
        return self.pid is not None

    @property
    def restart_in_progress(self) -> bool:
        return self._restart_task is not None and not self._restart_task.done()

    def info(self) -> dict:
        """Snapshot of the child slot for status and health reports."""
        handle = self._handle
        return {
            "state": self._state.value,
            "pid": self.pid,
            "started_at": handle.started_at.isoformat() if handle else None,
            "uptime_seconds": round(handle.uptime(), 1) if handle else 0,
            "restart_count": self.restart_count,
            "spawn_count": self.spawn_count,
            "last_exit_code": self.last_exit_code,
            "last_error": self.last_error,
            "restart_pending": self.restart_in_progress or self._auto_restart_scheduled(),
            "gave_up": self.gave_up,
        }

    def backoff_delay(self, attempt: Optional[int] = None) -> float:
        """Delay before crash restart number `attempt` (1-based)."""
        attempt = self.restart_count if attempt is None else attempt
        delay = self.restart_delay * self.restart_backoff ** max(attempt - 1, 0)
        return min(delay, self.max_restart_delay)

    # Lifecycle

    async def start(self) -> bool:
        """Start the gateway if it is not running. Returns True if it is running afterwards."""
        async with self._lock:
            self._shutting_down = False
            self._stop_requested = False
            self.gave_up = False
            return await self._start_locked()

    async def stop(self, sig: int = signal.SIGTERM, timeout: Optional[float] = None) -> bool:
        """Stop the gateway without restarting it. Queued or pending restarts are dropped."""
        self._cancel_auto_restart()
        self._stop_requested = True
        self._restart_pending = False
        if self.restart_in_progress:
            # The restart loop checks _stop_requested before spawning; if it
            # already spawned, the child is stopped below.
            await asyncio.wait({self._restart_task})
        async with self._lock:
            handle = self._handle
            if handle is None:
                logger.info(f"{self.name} is not running")
                return True
            await self._stop_locked(handle, sig, timeout)
        return True

    def request_restart(self, reason: str = "requested") -> bool:
        """
        Ask for the gateway to be restarted and return immediately.

        Returns True if a restart was scheduled, False if the request was
        folded into one already in progress or ignored during shutdown.
        """
        if self._shutting_down:
            logger.info(f"Ignoring {reason} restart request, supervisor is shutting down")
            return False

        if reason != "crash":
            self.gave_up = False
        self._stop_requested = False

        if self.restart_in_progress:
            self._restart_pending = True
            logger.info(f"Restart ({reason}) coalesced with restart already in progress")
            return False

        logger.info(f"Restarting {self.name} ({reason})")
        self._restart_task = asyncio.create_task(self._restart_loop(reason))
        return True

    async def shutdown(self):
        """Stop the gateway for good. Crash restarts are not attempted afterwards."""
        self._shutting_down = True
        self._cancel_auto_restart()
        await self.stop()

    # Internals

    async def _restart_loop(self, reason: str):
        while True:
            async with self._lock:
                handle = self._handle
                if handle is not None:
                    await self._stop_locked(handle)
                if self._shutting_down or self._stop_requested:
                    return
                # Requests made up to here are served by the spawn below.
                self._restart_pending = False
                await self._start_locked()

            if not self._restart_pending or self._shutting_down or self._stop_requested:
                return
            logger.info(f"Honoring restart requested during previous {reason} restart")
            reason = "pending"

    async def _start_locked(self) -> bool:
        if self._handle is not None:
            logger.info(f"{self.name} is already running (pid {self._handle.pid})")
            return True

        self._state = ChildState.STARTING
        try:
            async with self._skills_lock:
                process = await self._spawn()
        except SpawnFailed as e:
            self._state = ChildState.ABSENT
            self.last_error = str(e)
            logger.error(f"Failed to start {self.name}: {e}")
            return False

        loop = asyncio.get_running_loop()
        handle = ChildHandle(process=process, exited=loop.create_future())
        handle.readers = [
            asyncio.create_task(self._capture_output(process.stdout, logging.INFO)),
            asyncio.create_task(self._capture_output(process.stderr, logging.ERROR)),
        ]
        self._handle = handle
        self._state = ChildState.RUNNING
        self.spawn_count += 1
        self.last_error = None
        handle.watcher = asyncio.create_task(self._watch(handle))

        logger.info(f"Started {self.name} with PID {process.pid}")
        return True

    async def _spawn(self) -> asyncio.subprocess.Process:
        if not self.command:
            raise SpawnFailed("no command configured")
        env = os.environ.copy()
        env.update(self.env)
        try:
            return await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                start_new_session=True,  # own process group
            )
        except OSError as e:
            if self.cwd is not None and e.filename == os.fspath(self.cwd):
                raise SpawnFailed(f"working directory {self.cwd}: {e.strerror}") from e
            raise SpawnFailed(f"{self.command[0]}: {e}") from e

    async def _stop_locked(self, handle: ChildHandle, sig: int = signal.SIGTERM, timeout: Optional[float] = None):
        timeout = self.stop_timeout if timeout is None else timeout
        self._state = ChildState.STOPPING
        handle.intentional = True

        logger.info(f"Stopping {self.name} (pid {handle.pid}) with {signal.Signals(sig).name}")
        self._signal(handle, sig)
        try:
            await asyncio.wait_for(asyncio.shield(handle.exited), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} did not stop within {timeout}s, forcing kill")
            self._signal(handle, signal.SIGKILL)
            await handle.exited

        self.last_exit_code = handle.exited.result()
        self._handle = None
        self._state = ChildState.ABSENT
        logger.info(f"Stopped {self.name}")

    def _signal(self, handle: ChildHandle, sig: int):
        try:
            os.killpg(os.getpgid(handle.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.error(f"Cannot signal {self.name} (pid {handle.pid}): {e}")

    async def _watch(self, handle: ChildHandle):
        """Wait for the process to exit and decide what happens next."""
        returncode = await handle.process.wait()
        done, pending = await asyncio.wait(handle.readers, timeout=self.drain_timeout)
        for task in pending:
            task.cancel()
        uptime = handle.uptime()
        if not handle.exited.done():
            handle.exited.set_result(returncode)

        logger.info(f"{self.name} process {handle.pid} exited with code {returncode} after {uptime:.1f}s")
        if handle.intentional:
            return

        async with self._lock:
            if self._handle is not handle:
                return
            self._handle = None
            self._state = ChildState.ABSENT
            self.last_exit_code = returncode
            self._on_unexpected_exit(returncode, uptime)

    def _on_unexpected_exit(self, returncode: int, uptime: float):
        if uptime >= self.min_uptime:
            self.restart_count = 0

        if self._shutting_down or self._stop_requested:
            return
        if returncode == 0:
            logger.info(f"{self.name} exited cleanly, not restarting")
            return
        if self.max_restart_attempts and self.restart_count >= self.max_restart_attempts:
            self.gave_up = True
            logger.error(f"{self.name} exceeded max restart attempts ({self.max_restart_attempts}), giving up")
            return

        self.restart_count += 1
        delay = self.backoff_delay()
        logger.warning(
            f"{self.name} crashed with code {returncode}, restarting in {delay:.1f}s "
            f"(attempt {self.restart_count})"
        )
        self._auto_restart_task = asyncio.create_task(self._restart_after(delay))

    async def _restart_after(self, delay: float):
        await asyncio.sleep(delay)
        if self._shutting_down or self._stop_requested or self._handle is not None:
            return
        self.request_restart("crash")

    def _auto_restart_scheduled(self) -> bool:
        return self._auto_restart_task is not None and not self._auto_restart_task.done()

    def _cancel_auto_restart(self):
        if self._auto_restart_scheduled():
            self._auto_restart_task.cancel()
        self._auto_restart_task = None

    async def _capture_output(self, stream: asyncio.StreamReader, level: int):
        """Forward process output line by line to the child logger."""
        buffer = b""
        try:
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                buffer += chunk
                *lines, buffer = buffer.split(b"\n")
                for line in lines:
                    self._emit(line, level)
        except Exception as e:
            logger.error(f"Error in log capture for {self.name}: {e}")
        finally:
            if buffer:
                self._emit(buffer, level)

    def _emit(self, line: bytes, level: int):
        decoded = line.decode("utf-8", errors="replace").rstrip()
        if not decoded:
            return

        # Detect error level from content
        detected_level = level
        lower = decoded.lower()
        if "error" in lower or "exception" in lower or "traceback" in lower:
            detected_level = logging.ERROR
        elif "warning" in lower or "warn" in lower:
            detected_level = logging.WARNING

        child_logger.log(detected_level, f"{self.name}: {decoded}")
