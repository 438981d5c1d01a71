"""Heartbeat (pull) and change notification (push) delivery of screen assignments."""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from kiosklink.core.config import settings
from kiosklink.core.errors import StoreError, RowNotFoundError
from kiosklink.schemas.screens import ScreenHeartbeat
from kiosklink.services.local_cache import LocalCache, PATH_KEY
from kiosklink.services.realtime import RealtimeClient, RealtimeChannel
from kiosklink.services.store import ScreenStore

logger = logging.getLogger(__name__)

RELOAD_EVENT = "reload"


class AssignmentChannel:
    """
    Keeps one page load's screen row alive and follows its assignment.

    Pull: a heartbeat every `interval` seconds writes the liveness fields and
    reads back `assigned_path` in the same request.
    Push: a realtime subscription on the row delivers post-update snapshots.

    Both paths feed apply_assignment(). The first one to see a new target
    navigates; navigation ends this page load, so every later call is a no-op.
    """

    def __init__(
        self,
        screen_id: str,
        current_path: str,
        store: ScreenStore,
        realtime: RealtimeClient,
        cache: LocalCache,
        on_navigate: Callable[[str], None],
        on_reload: Callable[[], None],
        hostname: Optional[str] = None,
        user_agent: Optional[str] = None,
        interval: float = None,
        pairing_path: str = None,
    ):
        self.screen_id = screen_id
        self.current_path = current_path
        self.store = store
        self.realtime = realtime
        self.cache = cache
        self.hostname = hostname
        self.user_agent = user_agent
        self.interval = interval or settings.heartbeat_interval_seconds
        self.pairing_path = pairing_path or settings.pairing_path
        self._on_navigate = on_navigate
        self._on_reload = on_reload
        self._lock = threading.Lock()
        self._finished = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._channels: List[RealtimeChannel] = []
        self._log_extra = {"screen_id": screen_id}

    @property
    def on_assigned_page(self) -> bool:
        return self.current_path != self.pairing_path

    @property
    def finished(self) -> bool:
        return self._finished

    def _finish(self) -> bool:
        """Claim the single exit of this page load. False if already taken."""
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            return True

    def apply_assignment(self, path: Optional[str]) -> bool:
        """
        Act on an observed `assigned_path`. Safe to call repeatedly from both
        delivery paths; returns True only for the call that navigated.

        A null path means "unassigned": an assigned page goes back to the
        pairing page, the pairing page keeps waiting.
        """
        if path is None:
            if not self.on_assigned_page:
                return False
            target = self.pairing_path
        elif path == self.current_path:
            return False
        else:
            target = path

        if not self._finish():
            return False

        if target == self.pairing_path:
            # Otherwise the next boot would resume the stale cached page
            self.cache.remove(PATH_KEY)
        else:
            self.cache.remember_path(target)
        logger.info(f"Assignment changed: {self.current_path} -> {target}", extra=self._log_extra)
        self._on_navigate(target)
        return True

    def heartbeat_once(self) -> None:
        """One pull cycle. Never raises."""
        if self._finished:
            return

        beat = ScreenHeartbeat(
            last_seen=datetime.now(timezone.utc),
            current_page=self.current_path if self.on_assigned_page else None,
            user_agent=self.user_agent,
            name=self.hostname,
        )
        try:
            screen = self.store.heartbeat(self.screen_id, beat)
        except RowNotFoundError:
            logger.warning("Screen row deleted, restarting registration", extra=self._log_extra)
            if self._finish():
                self.cache.purge_identity()
                self._on_navigate(self.pairing_path)
            return
        except StoreError as e:
            logger.warning(f"Heartbeat failed, retrying next tick: {e}", extra=self._log_extra)
            return
        except Exception as e:
            logger.error(f"Unexpected heartbeat failure: {e}", exc_info=True, extra=self._log_extra)
            return

        self.apply_assignment(screen.assigned_path)

    def handle_row_update(self, record: Dict[str, Any]) -> None:
        """Push path: a post-update snapshot of this screen's row."""
        if record.get("id") not in (None, self.screen_id) or "assigned_path" not in record:
            return
        self.apply_assignment(record.get("assigned_path"))

    def handle_reload_command(self, payload: Dict[str, Any]) -> None:
        """An operator asked this device to reload its current page."""
        if self._finish():
            logger.info("Reload command received", extra=self._log_extra)
            self._on_reload()

    def start(self) -> None:
        """Subscribe to pushes, send the first heartbeat now, then tick every interval."""
        assignment = (
            self.realtime.channel(f"screen-assign-{self.screen_id}")
            .on_postgres_update(settings.screens_table, f"id=eq.{self.screen_id}", self.handle_row_update)
            .subscribe()
        )
        commands = (
            self.realtime.channel(f"screen-cmd-{self.screen_id}")
            .on_broadcast(RELOAD_EVENT, self.handle_reload_command)
            .subscribe()
        )
        self._channels = [assignment, commands]

        self.heartbeat_once()

        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="Heartbeat")
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self._finished:
                return
            self.heartbeat_once()

    def stop(self) -> None:
        """Release the timer and the subscriptions."""
        self._stop.set()
        for channel in self._channels:
            self.realtime.remove_channel(channel)
        self._channels = []
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval)
        self._thread = None
