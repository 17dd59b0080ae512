"""
Keep-alive configuration, periodic timers and traffic accounting.

Provides:
- KeepaliveConfig: Keep-alive and traffic sample periods
- PeriodicTimer: Restartable asyncio timer firing a callback every period
- TrafficCounter: Bytes sent/received since the last sample

Two timers run per session:
1. Keep-alive: only while authenticated, asks the engine for a keep-alive
2. Rate sampler: for the session object's whole lifetime, reports and
   zeroes the traffic counters

Dead peer detection is asyncssh's: with keepalive_interval set it sends
keepalive@openssh.com requests that want a reply and closes the
connection after keepalive_count_max of them go unanswered.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class KeepaliveConfig:
    """
    Timer periods for a session.

    - interval_sec: Seconds between keep-alives once authenticated
    - max_count: Unanswered keep-alives before the peer is declared dead
    - rate_interval_sec: Seconds between traffic rate samples

    Usage:
        # Defaults: 10s keep-alive, dead after 3 misses, 1s rate sample
        config = KeepaliveConfig()

        # Faster failure detection
        config = KeepaliveConfig(interval_sec=5.0, max_count=2)

        # Slower sampling for long transfers
        config = KeepaliveConfig(rate_interval_sec=5.0)
    """
    interval_sec: float = 10.0
    max_count: int = 3
    rate_interval_sec: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        assert self.interval_sec > 0, \
            f"interval_sec must be positive, got {self.interval_sec}"
        assert self.max_count > 0, \
            f"max_count must be positive, got {self.max_count}"
        assert self.rate_interval_sec > 0, \
            f"rate_interval_sec must be positive, got {self.rate_interval_sec}"

    @property
    def total_timeout_sec(self) -> float:
        """Silence tolerated before the peer is declared dead."""
        return self.interval_sec * self.max_count

    def to_asyncssh_options(self) -> dict[str, Any]:
        """
        Convert to asyncssh connection options.

        Returns:
            Dict with keepalive_interval and keepalive_count_max keys.
        """
        return {
            "keepalive_interval": self.interval_sec,
            "keepalive_count_max": self.max_count,
        }


class PeriodicTimer:
    """
    Fires a callback every ``period_sec`` on the running event loop.

    The callback runs on the loop thread, never concurrently with itself.
    An exception raised by the callback is logged and the timer keeps
    running.

    Usage:
        timer = PeriodicTimer(10.0, engine.send_keep_alive, name="keepalive")
        timer.start()
        ...
        timer.stop()
    """

    def __init__(
        self,
        period_sec: float,
        callback: Callable[[], None],
        name: str = "timer",
    ) -> None:
        assert period_sec > 0, f"period_sec must be positive, got {period_sec}"
        self._period_sec = period_sec
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def period_sec(self) -> float:
        return self._period_sec

    @property
    def is_running(self) -> bool:
        """Return True if the timer task is alive."""
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Number of times the callback has fired since start()."""
        return self._ticks

    def start(self) -> None:
        """Start the timer. Restarting a running timer resets its phase."""
        self.stop()
        self._ticks = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop the timer. Idempotent."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._period_sec)
                self._ticks += 1
                try:
                    self._callback()
                except Exception:
                    logger.exception("%s callback failed", self._name)
        except asyncio.CancelledError:
            # Expected path: stop() cancels the task.
            pass


class TrafficCounter:
    """
    Bytes moved through the transport since the last sample.

    Fed by the transport's byte callbacks; purely observational.
    """

    def __init__(self) -> None:
        self.bytes_sent = 0
        self.bytes_received = 0

    def add_sent(self, count: int) -> None:
        self.bytes_sent += count

    def add_received(self, count: int) -> None:
        self.bytes_received += count

    def sample(self) -> tuple[int, int]:
        """Return (bytes_sent, bytes_received) and reset both to zero."""
        result = (self.bytes_sent, self.bytes_received)
        self.bytes_sent = 0
        self.bytes_received = 0
        return result
