import logging
import time
from typing import Any, Callable, Optional

from ..protocol.commands import KEEPALIVE_INTERVAL_S

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    """Default clock for latency measurement, in milliseconds."""
    return time.monotonic() * 1000.0


class LatencyEstimator:
    """
    Tracks the outstanding keepalive probe and the last measured round trip.

    A probe is recorded each time a PING frame is sent. The matching PONG
    computes `now - sent_at`. If a PONG never arrives the previous latency is
    kept; only `reset()` (disconnect or keepalive stop) makes it unknown again.

    Attributes:
        latency_ms (Optional[float]): Last measured round trip, None when unknown.
        outstanding (Optional[float]): Send time of the unacknowledged probe.
    """
    def __init__(self, clock: Callable[[], float] = monotonic_ms):
        self._clock = clock
        self.latency_ms: Optional[float] = None
        self.outstanding: Optional[float] = None

    def probe_sent(self, now: Optional[float] = None):
        self.outstanding = self._clock() if now is None else now

    def acknowledged(self, now: Optional[float] = None) -> Optional[float]:
        """
        Completes the outstanding probe.

        Returns:
            The new latency in milliseconds, or None if no probe was outstanding
            (e.g. a PONG that arrived after a reset).
        """
        if self.outstanding is None:
            logger.debug("LatencyEstimator: Acknowledgment with no outstanding probe ignored.")
            return None
        now = self._clock() if now is None else now
        self.latency_ms = max(0.0, now - self.outstanding)
        self.outstanding = None
        return self.latency_ms

    def reset(self):
        self.latency_ms = None
        self.outstanding = None


class KeepaliveTimer:
    """
    Periodic timer driven by an injected scheduler.

    The scheduler only needs `call_later(delay, callback)` returning a handle
    with `cancel()`, which is exactly what an asyncio event loop provides.
    `start()` fires the callback immediately and then every `interval` seconds
    until `stop()` is called.
    """
    def __init__(self, scheduler: Any, callback: Callable[[], None],
                 interval: float = KEEPALIVE_INTERVAL_S):
        self.scheduler = scheduler
        self.callback = callback
        self.interval = interval
        self._handle: Optional[Any] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        self.stop()
        self._running = True
        logger.debug(f"KeepaliveTimer: Started with interval {self.interval}s.")
        self._fire()

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._running:
            logger.debug("KeepaliveTimer: Stopped.")
        self._running = False

    def _fire(self):
        if not self._running:
            return
        self._handle = self.scheduler.call_later(self.interval, self._fire)
        self.callback()
