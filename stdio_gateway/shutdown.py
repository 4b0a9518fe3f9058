"""Ordered, best-effort teardown of the listener and every backend."""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Any

from .process_manager.supervisor import ProcessSupervisor
from .server import GatewayServer

log = logging.getLogger(__name__)

DEFAULT_GRACE = 2.0
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CoordinatorState(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ShutdownCoordinator:
    """Drives ``running -> stopping -> stopped`` exactly once.

    Shutdown can be requested by a signal, an unhandled loop exception or
    any component calling :meth:`request_shutdown`; only the first request
    counts and decides the exit code.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        listener: GatewayServer | None = None,
        *,
        grace: float = DEFAULT_GRACE,
    ) -> None:
        self.supervisor = supervisor
        self.listener = listener
        self.grace = grace
        self.state = CoordinatorState.RUNNING
        self.exit_code = 0
        self.reason: str | None = None
        self._requested = asyncio.Event()

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)
        loop.set_exception_handler(self._on_loop_exception)

    def uninstall(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
        loop.set_exception_handler(None)

    def request_shutdown(self, reason: str, exit_code: int = 0) -> bool:
        if self._requested.is_set():
            log.debug("Shutdown already requested (%s); ignoring %s", self.reason, reason)
            return False
        self.reason = reason
        self.exit_code = exit_code
        self._requested.set()
        log.info("Shutdown requested: %s", reason)
        return True

    async def wait_requested(self) -> None:
        await self._requested.wait()

    async def shutdown(self) -> int:
        """Run the stop sequence and return the process exit code."""
        if self.state is not CoordinatorState.RUNNING:
            return self.exit_code
        if not self._requested.is_set():
            self.request_shutdown("shutdown")
        self.state = CoordinatorState.STOPPING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace

        if self.listener is not None:
            self.listener.stop_accepting()

        signalled = self.supervisor.terminate_all(signal.SIGTERM)
        if signalled:
            log.info("Sent SIGTERM to %s", ", ".join(signalled))

        if not await self.supervisor.wait_all(self.grace):
            killed = self.supervisor.kill_remaining()
            log.warning("Grace period elapsed; sent SIGKILL to %s", ", ".join(killed))

        if self.listener is not None:
            remaining = max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(self.listener.wait_closed(), timeout=remaining)
            except asyncio.TimeoutError:
                log.warning("Listener did not drain in time; closing open streams")
            except Exception:
                log.exception("Listener failed while stopping")
                self.exit_code = self.exit_code or 1
            await self.listener.abort()

        self.state = CoordinatorState.STOPPED
        log.info("Gateway stopped (exit code %d)", self.exit_code)
        return self.exit_code

    def _on_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]
    ) -> None:
        loop.default_exception_handler(context)
        message = context.get("message") or repr(context.get("exception"))
        self.request_shutdown(f"unhandled error: {message}", exit_code=1)
