"""Spawns, tracks and tears down backend bridge processes."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from stdio_gateway.config import ServerConfig
from stdio_gateway.errors import ReadinessTimeout, SpawnError
from stdio_gateway.process_manager.readiness import ReadinessProbe

log = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for some JSON log lines
STREAM_LIMIT = 1024 * 1024


class BackendStatus(str, Enum):
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"


_TRANSITIONS: dict[BackendStatus, frozenset[BackendStatus]] = {
    BackendStatus.STARTING: frozenset(
        {BackendStatus.READY, BackendStatus.ERROR, BackendStatus.STOPPED}
    ),
    BackendStatus.READY: frozenset({BackendStatus.ERROR, BackendStatus.STOPPED}),
    BackendStatus.ERROR: frozenset(),
    BackendStatus.STOPPED: frozenset(),
}

StatusListener = Callable[["BackendProcess", BackendStatus, BackendStatus], None]


@dataclass
class BackendProcess:
    """State for a single supervised backend."""

    config: ServerConfig
    status: BackendStatus = BackendStatus.STARTING
    pid: int | None = None
    exit_code: int | None = None
    terminating: bool = False
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    _probe: ReadinessProbe | None = field(default=None, repr=False)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    _exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def wait(self) -> None:
        """Block until the OS process has exited and been reaped."""
        await self._exited.wait()


class ProcessSupervisor:
    """Owns every backend process of the gateway.

    One instance lives in the composition root and is passed by reference
    to the components that read backend state. Status changes are reported
    through the single ``on_status_change`` callback.
    """

    def __init__(
        self,
        *,
        probe_host: str = "127.0.0.1",
        ready_timeout: float = 1.0,
        ready_interval: float = 1.0,
        ready_max_attempts: int = 60,
        on_status_change: StatusListener | None = None,
    ) -> None:
        self._backends: dict[str, BackendProcess] = {}
        self.probe_host = probe_host
        self.ready_timeout = ready_timeout
        self.ready_interval = ready_interval
        self.ready_max_attempts = ready_max_attempts
        self.on_status_change = on_status_change

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, name: str) -> BackendProcess:
        if name not in self._backends:
            raise KeyError(f"No backend named '{name}'")
        return self._backends[name]

    def status(self, name: str) -> BackendStatus:
        backend = self._backends.get(name)
        return backend.status if backend else BackendStatus.STOPPED

    def all(self) -> list[BackendProcess]:
        return list(self._backends.values())

    async def spawn(self, config: ServerConfig) -> BackendProcess:
        """Launch the backend described by ``config`` and start probing it.

        Raises :class:`SpawnError` if the executable cannot be started; the
        backend stays registered with status ``error``.
        """
        if config.name in self._backends:
            raise ValueError(f"Backend '{config.name}' already spawned")

        backend = BackendProcess(config=config)
        self._backends[config.name] = backend

        spawn_env = os.environ.copy()
        spawn_env.update(config.env)

        try:
            process = await asyncio.create_subprocess_exec(
                config.command,
                *config.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=spawn_env,
                limit=STREAM_LIMIT,
                # New process group so bridge and wrapped server stop together
                preexec_fn=os.setsid,
            )
        except OSError as exc:
            self._transition(backend, BackendStatus.ERROR)
            backend._exited.set()
            raise SpawnError(config.name, config.command, str(exc)) from exc

        backend._process = process
        backend.pid = process.pid
        log.info("Started '%s' (pid=%s): %s", config.name, process.pid, config.command_line)

        backend._probe = ReadinessProbe(
            self.probe_host,
            config.port,
            attempt_timeout=self.ready_timeout,
            interval=self.ready_interval,
            max_attempts=self.ready_max_attempts,
        )
        pattern = re.compile(config.ready_pattern) if config.ready_pattern else None

        readiness = asyncio.create_task(
            self._await_ready(backend), name=f"{config.name}-ready"
        )
        backend._tasks = [
            asyncio.create_task(
                self._read_stream(backend, process.stdout, "stdout", pattern),  # type: ignore[arg-type]
                name=f"{config.name}-stdout",
            ),
            asyncio.create_task(
                self._read_stream(backend, process.stderr, "stderr", pattern),  # type: ignore[arg-type]
                name=f"{config.name}-stderr",
            ),
            readiness,
        ]
        backend._tasks.append(asyncio.create_task(
            self._wait_for_exit(backend, readiness), name=f"{config.name}-waiter",
        ))
        return backend

    def terminate(self, name: str, sig: int = signal.SIGTERM) -> bool:
        """Signal the backend's process group.

        The group outlives the bridge when a wrapped server is still
        running, so it is signalled even after the bridge has exited.
        Returns False if no process in the group was left to signal.
        """
        backend = self.get(name)
        if backend.pid is None:
            return False
        if backend.alive:
            backend.terminating = True
        try:
            # The bridge is a session leader, so its pid is the group id
            os.killpg(backend.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def terminate_all(self, sig: int = signal.SIGTERM) -> list[str]:
        """Signal every backend group; returns the names that were signalled."""
        return [
            backend.name
            for backend in self._backends.values()
            if self.terminate(backend.name, sig)
        ]

    async def wait_all(self, timeout: float) -> bool:
        """Wait until every backend has exited. Returns False on timeout."""
        waiters = [b.wait() for b in self._backends.values()]
        if not waiters:
            return True
        try:
            await asyncio.wait_for(asyncio.gather(*waiters), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def kill_remaining(self) -> list[str]:
        """SIGKILL whatever survived the grace period."""
        return self.terminate_all(signal.SIGKILL)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, backend: BackendProcess, new: BackendStatus) -> bool:
        old = backend.status
        if new not in _TRANSITIONS[old]:
            log.debug("Ignoring transition %s -> %s for '%s'", old.value, new.value, backend.name)
            return False
        backend.status = new
        log.info("Backend '%s': %s -> %s", backend.name, old.value, new.value)
        if self.on_status_change is not None:
            self.on_status_change(backend, old, new)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _await_ready(self, backend: BackendProcess) -> None:
        assert backend._probe is not None
        try:
            attempts = await backend._probe.wait_ready()
        except ReadinessTimeout as exc:
            log.error("Backend '%s' failed readiness: %s", backend.name, exc)
            self._transition(backend, BackendStatus.ERROR)
            self.terminate(backend.name)
            return
        log.debug("Backend '%s' listening after %d probe(s)", backend.name, attempts)
        self._transition(backend, BackendStatus.READY)

    @staticmethod
    async def _read_stream(
        backend: BackendProcess,
        stream: asyncio.StreamReader,
        label: str,
        ready_pattern: re.Pattern[str] | None,
    ) -> None:
        """Log backend output line by line, tagged with the backend name."""
        out = logging.getLogger(f"stdio_gateway.backend.{backend.name}")
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line exceeded STREAM_LIMIT; drop what is buffered and go on
                out.warning("[%s] %s line too long, truncated", backend.name, label)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            out.info("[%s] %s", backend.name, line)
            if (
                ready_pattern is not None
                and backend._probe is not None
                and ready_pattern.search(line)
            ):
                backend._probe.nudge.set()

    async def _wait_for_exit(
        self, backend: BackendProcess, readiness: asyncio.Task[None]
    ) -> None:
        proc = backend._process
        assert proc is not None
        code = await proc.wait()
        readiness.cancel()
        backend.exit_code = code
        backend._exited.set()

        if code == 0 or backend.terminating:
            log.info("Backend '%s' exited (code=%s)", backend.name, code)
            self._transition(backend, BackendStatus.STOPPED)
        else:
            log.error("Backend '%s' exited unexpectedly (code=%s)", backend.name, code)
            self._transition(backend, BackendStatus.ERROR)
