"""Forced reload when every realtime channel stays disconnected for too long."""
import logging
import threading
import time
from typing import Callable, Optional

from kiosklink.core.config import settings
from kiosklink.services.realtime import RealtimeClient

logger = logging.getLogger(__name__)


class ConnectionHealthMonitor:
    """
    Backstop for a push channel that degrades without erroring loudly.

    Never fires while at least one channel is healthy or while no channel
    exists; fires exactly once when all channels have been closed or errored
    for `max_downtime` seconds. When the socket comes back after an outage,
    channels get `online_grace` seconds to rejoin; if all of them are still
    down by then the reload fires without waiting out `max_downtime`.
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        on_reload: Callable[[], None],
        interval: float = None,
        max_downtime: float = None,
        online_grace: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.realtime = realtime
        self.interval = interval or settings.health_check_interval_seconds
        self.max_downtime = max_downtime or settings.max_disconnect_seconds
        self.online_grace = online_grace or settings.health_check_interval_seconds
        self._on_reload = on_reload
        self._clock = clock
        self._disconnected_since: Optional[float] = None
        self._recheck_at: Optional[float] = None
        self._fired = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def disconnected_since(self) -> Optional[float]:
        return self._disconnected_since

    def handle_reconnected(self, now: float = None) -> None:
        """The realtime socket reopened; schedule a one-off check after the grace period."""
        now = self._clock() if now is None else now
        self._recheck_at = now + self.online_grace

    def _fire(self, reason: str) -> bool:
        self._fired = True
        logger.error(f"{reason}, forcing reload")
        self._on_reload()
        return True

    def check(self, now: float = None) -> bool:
        """Inspect channel states once. Returns True when it triggered the reload."""
        if self._fired:
            return False
        now = self._clock() if now is None else now

        channels = self.realtime.get_channels()
        all_down = bool(channels) and all(channel.is_disconnected for channel in channels)

        if self._recheck_at is not None and now >= self._recheck_at:
            self._recheck_at = None
            if all_down:
                return self._fire("Realtime channels did not rejoin after reconnect")

        if not all_down:
            if self._disconnected_since is not None:
                logger.info("Realtime connection restored")
            self._disconnected_since = None
            return False

        if self._disconnected_since is None:
            logger.warning(f"All {len(channels)} realtime channels disconnected")
            self._disconnected_since = now
            return False

        if now - self._disconnected_since >= self.max_downtime:
            return self._fire(f"Realtime down for {now - self._disconnected_since:.0f}s")
        return False

    def start(self) -> None:
        self.realtime.add_reconnect_listener(self.handle_reconnected)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="ConnectionHealth")
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                if self.check():
                    return
            except Exception as e:
                logger.error(f"Connection health check failed: {e}", exc_info=True)

    def stop(self) -> None:
        self._stop.set()
        self.realtime.remove_reconnect_listener(self.handle_reconnected)
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval)
        self._thread = None
