"""TCP readiness probe for backend listeners."""

from __future__ import annotations

import asyncio
import logging

from stdio_gateway.errors import ReadinessTimeout

log = logging.getLogger(__name__)

DEFAULT_ATTEMPT_TIMEOUT = 1.0
DEFAULT_INTERVAL = 1.0
DEFAULT_MAX_ATTEMPTS = 60


class ReadinessProbe:
    """Polls ``host:port`` until it accepts a TCP connection.

    Total wait is bounded by ``max_attempts * (attempt_timeout + interval)``.
    Setting :attr:`nudge` skips the remainder of the current interval so a
    backend announcing readiness on stdout is checked right away.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.host = host
        self.port = port
        self.attempt_timeout = attempt_timeout
        self.interval = interval
        self.max_attempts = max_attempts
        self.nudge = asyncio.Event()

    async def check(self) -> bool:
        """Single connection attempt. Closes the socket without sending data."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.attempt_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def wait_ready(self) -> int:
        """Retry :meth:`check` until it succeeds.

        Returns the number of attempts used. Raises
        :class:`ReadinessTimeout` once ``max_attempts`` is exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            self.nudge.clear()
            if await self.check():
                log.debug("%s:%d ready after %d attempt(s)", self.host, self.port, attempt)
                return attempt
            if attempt == self.max_attempts:
                break
            try:
                await asyncio.wait_for(self.nudge.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        raise ReadinessTimeout(self.port, self.max_attempts)
