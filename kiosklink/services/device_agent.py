"""Device state machine: one PageSession per page load, navigation as its only exit."""
import logging
import queue
import threading
from typing import Callable, Optional

from kiosklink.core.config import settings
from kiosklink.schemas.screens import DeviceState, DeviceStatusResponse
from kiosklink.services.assignment_channel import AssignmentChannel
from kiosklink.services.connection_health import ConnectionHealthMonitor
from kiosklink.services.identity_resolver import (
    LaunchEnvironment,
    OutcomeKind,
    TierOutcome,
    resolve_identity,
)
from kiosklink.services.local_cache import LocalCache
from kiosklink.services.navigator import Navigator, build_page_url
from kiosklink.services.realtime import RealtimeClient
from kiosklink.services.store import ScreenStore

logger = logging.getLogger(__name__)

_RELOAD = object()
_STOP = object()


class PageSession:
    """Everything owned by one page load, released together by teardown()."""

    def __init__(self, path: str):
        self.path = path
        self.state = DeviceState.BOOTING
        self.screen_id: Optional[str] = None
        self.code: Optional[str] = None
        self.channel: Optional[AssignmentChannel] = None
        self.monitor: Optional[ConnectionHealthMonitor] = None
        self._terminal = False
        self._lock = threading.Lock()

    @property
    def terminal(self) -> bool:
        return self._terminal

    def mark_terminal(self) -> bool:
        """First exit wins; any later exit request from this page load is ignored."""
        with self._lock:
            if self._terminal:
                return False
            self._terminal = True
            self.state = DeviceState.NAVIGATING
            return True

    def teardown(self) -> None:
        if self.channel is not None:
            self.channel.stop()
            self.channel = None
        if self.monitor is not None:
            self.monitor.stop()
            self.monitor = None


class DeviceAgent:
    """
    Drives the browser through page loads.

    Navigation requests are queued and handled on the agent thread: the
    current session is torn down, the browser loads the destination, and a
    new session boots for it. The pairing page runs identity resolution;
    any other page only runs the assignment channel.
    """

    def __init__(
        self,
        store: ScreenStore,
        realtime: RealtimeClient,
        cache: LocalCache,
        navigator: Navigator,
        env: LaunchEnvironment = None,
        resolver: Callable[..., TierOutcome] = resolve_identity,
    ):
        self.store = store
        self.realtime = realtime
        self.cache = cache
        self.navigator = navigator
        self.env = env or LaunchEnvironment.from_settings(cache)
        self.resolver = resolver
        self.session: Optional[PageSession] = None
        # Identity resolved by the last pairing page load; the cache is only read on a cold boot
        self.screen_id: Optional[str] = None
        self.code: Optional[str] = None
        self._queue: "queue.Queue" = queue.Queue()

    # Exit requests (any thread)

    def request_navigation(self, path: str, session: PageSession = None) -> bool:
        if session is not None and not session.mark_terminal():
            logger.debug(f"Ignoring navigation to {path}: page load already exiting")
            return False
        self._queue.put(path)
        return True

    def request_reload(self, session: PageSession = None) -> bool:
        if session is not None and not session.mark_terminal():
            return False
        self._queue.put(_RELOAD)
        return True

    # Agent thread

    def run(self, initial_path: str = None) -> None:
        """Process page loads until stop() is called."""
        self._queue.put(initial_path or settings.pairing_path)
        try:
            while True:
                item = self._queue.get()
                if item is _STOP:
                    break
                path = self._destination(item)
                try:
                    self.transition(path)
                except Exception as e:
                    logger.error(f"Page load of {path} failed: {e}", exc_info=True)
                    self._stall(path)
        finally:
            self._teardown_session()
            self.realtime.stop()
            self.navigator.close()

    def stop(self) -> None:
        self._queue.put(_STOP)

    def _destination(self, item) -> str:
        if item is _RELOAD:
            path = self.session.path if self.session else settings.pairing_path
            logger.info(f"Reloading {path}")
            return path
        return item

    def _stall(self, path: str) -> None:
        """Leave the device on a STALLED page load until a reload is requested."""
        session = self.session
        if session is None or session.path != path:
            self._teardown_session()
            session = PageSession(path)
            self.session = session
        else:
            session.teardown()
        session.state = DeviceState.STALLED

    def _teardown_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            session.teardown()

    def transition(self, path: str) -> PageSession:
        """Leave the current page load and boot a new one on `path`."""
        self._teardown_session()
        session = PageSession(path)
        self.session = session
        self.navigator.open(build_page_url(path))
        if path == settings.pairing_path:
            self._boot_pairing_page(session)
        else:
            self._boot_assigned_page(session)
        return session

    def _boot_pairing_page(self, session: PageSession) -> None:
        session.state = DeviceState.REGISTERING
        outcome = self.resolver(self.env, self.cache, self.store)

        if outcome.kind == OutcomeKind.NAVIGATE:
            session.screen_id = outcome.screen_id
            self.screen_id, self.code = outcome.screen_id, outcome.code
            self.request_navigation(outcome.path, session)
        elif outcome.kind == OutcomeKind.WAIT:
            session.screen_id = outcome.screen_id
            session.code = outcome.code
            self.screen_id, self.code = outcome.screen_id, outcome.code
            session.state = DeviceState.WAITING
            self._start_channels(session)
        else:
            session.state = DeviceState.STALLED
            self.screen_id = self.code = None
            logger.error(f"Device stalled: {outcome.reason}")

    def _boot_assigned_page(self, session: PageSession) -> None:
        screen_id = self.screen_id or self.cache.screen_id
        if not screen_id:
            # Identity was lost while on a content page; recover it through the pairing page
            logger.warning(f"No cached identity on {session.path}, returning to pairing page")
            self.request_navigation(settings.pairing_path, session)
            return
        session.screen_id = screen_id
        session.code = self.code or self.cache.code
        session.state = DeviceState.ASSIGNED
        self._start_channels(session)

    def _start_channels(self, session: PageSession) -> None:
        session.channel = AssignmentChannel(
            screen_id=session.screen_id,
            current_path=session.path,
            store=self.store,
            realtime=self.realtime,
            cache=self.cache,
            on_navigate=lambda path: self.request_navigation(path, session),
            on_reload=lambda: self.request_reload(session),
            hostname=self.env.hostname,
            user_agent=self.env.user_agent,
        )
        session.monitor = ConnectionHealthMonitor(
            self.realtime, on_reload=lambda: self.request_reload(session)
        )
        session.channel.start()
        session.monitor.start()

    def status(self) -> DeviceStatusResponse:
        session = self.session
        if session is None:
            return DeviceStatusResponse(state=DeviceState.BOOTING, hostname=self.env.hostname)
        return DeviceStatusResponse(
            state=session.state,
            current_path=session.path,
            screen_id=session.screen_id,
            code=session.code,
            hostname=self.env.hostname,
        )
