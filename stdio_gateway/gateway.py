"""Composition root: wires supervisor, routes, proxy, listener and shutdown."""

from __future__ import annotations

import logging
import socket

from .config import GatewayConfig
from .errors import SpawnError
from .process_manager.supervisor import BackendProcess, BackendStatus, ProcessSupervisor
from .proxy import StreamingProxy
from .routes import RouteTable
from .server import GatewayServer
from .shutdown import ShutdownCoordinator

log = logging.getLogger(__name__)


class Gateway:
    """Owns every long-lived component; nothing here is module-global.

    Startup policy: degraded by default (a backend that fails to spawn or
    become ready keeps answering 503 while the others serve). With
    ``config.fail_fast`` any such failure while some backend is still
    ``starting`` shuts the gateway down with exit code 1.
    """

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self.supervisor = ProcessSupervisor(
            ready_timeout=config.ready_timeout,
            ready_interval=config.ready_interval,
            ready_max_attempts=config.ready_max_attempts,
            on_status_change=self._on_status_change,
        )
        self.routes = RouteTable.from_configs(config.servers)
        self.proxy = StreamingProxy(cors_origin=config.cors_origin)
        self.server = GatewayServer(
            name=config.name,
            routes=self.routes,
            backends=self.supervisor,
            proxy=self.proxy,
            cors_origin=config.cors_origin,
        )
        self.coordinator = ShutdownCoordinator(
            self.supervisor, self.server, grace=config.shutdown_grace
        )
        self.starting = True

    async def start(self, sock: socket.socket | None = None) -> None:
        """Spawn every backend, then open the public listener."""
        for server in self.config.servers:
            try:
                await self.supervisor.spawn(server)
            except SpawnError as exc:
                log.error("%s", exc)
            if self.coordinator.requested:
                return

        await self.server.start(
            self.config.host,
            self.config.port,
            keep_alive_timeout=self.config.keep_alive_timeout,
            graceful_timeout=self.config.shutdown_grace,
            access_log=self.config.access_log,
            sock=sock,
        )

    async def run(
        self, *, install_signals: bool = True, sock: socket.socket | None = None
    ) -> int:
        """Run until shutdown is requested; returns the process exit code."""
        if install_signals:
            self.coordinator.install()
        try:
            await self.start(sock)
            await self.coordinator.wait_requested()
        except Exception:
            log.exception("Fatal gateway error")
            self.coordinator.request_shutdown("fatal error", exit_code=1)
        finally:
            exit_code = await self.coordinator.shutdown()
            await self.proxy.aclose()
            if install_signals:
                self.coordinator.uninstall()
        return exit_code

    def _on_status_change(
        self, backend: BackendProcess, old: BackendStatus, new: BackendStatus
    ) -> None:
        if not self.starting:
            return
        if new is BackendStatus.ERROR and self.config.fail_fast:
            self.coordinator.request_shutdown(
                f"backend '{backend.name}' failed during startup", exit_code=1
            )
            return
        # Startup ends once every backend has settled, ready or not
        backends = self.supervisor.all()
        if len(backends) == len(self.config.servers) and not any(
            b.status is BackendStatus.STARTING for b in backends
        ):
            self.starting = False
            ready = sum(b.status is BackendStatus.READY for b in backends)
            log.info("Startup complete: %d of %d backends ready", ready, len(backends))
