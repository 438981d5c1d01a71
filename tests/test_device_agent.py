"""Tests for the device state machine."""
import threading
import time
import pytest
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from kiosklink.schemas.screens import DeviceState
from kiosklink.services.device_agent import DeviceAgent, PageSession
from kiosklink.services.identity_resolver import TierOutcome
from kiosklink.services.local_cache import LocalCache
from kiosklink.services.realtime import ChannelState

PAIRING_URL = "http://127.0.0.1:8765/screen"
CONTENT = "http://127.0.0.1:3000"


@pytest.fixture
def agent(device_agent):
    return device_agent


def drain(agent):
    """Handle queued navigations synchronously, like the agent thread would."""
    while not agent._queue.empty():
        agent.transition(agent._destination(agent._queue.get()))


class TestPairingPage:
    """Boot on the pairing page."""

    def test_new_device_waits_with_code(self, agent, store, navigator, realtime):
        session = agent.transition("/screen")

        assert navigator.history == [PAIRING_URL]
        assert session.state == DeviceState.WAITING
        assert len(session.code) == 4
        assert session.screen_id in store.rows
        assert session.channel is not None and session.monitor is not None
        assert len(realtime.get_channels()) == 2

    def test_assigned_device_navigates(self, agent, store, cache, navigator):
        screen = store.add_screen(assigned_path="/tv1")
        cache.remember_identity(screen.id)
        cache.remember_path("/tv1")

        session = agent.transition("/screen")
        assert session.state == DeviceState.NAVIGATING
        assert session.channel is None

        drain(agent)

        assert navigator.history == [PAIRING_URL, f"{CONTENT}/tv1"]
        assert agent.session.path == "/tv1"
        assert agent.session.state == DeviceState.ASSIGNED

    def test_stalled_registration(self, store, realtime, cache, navigator, env):
        resolver = MagicMock(return_value=TierOutcome.stalled("registration failed after 10 attempts"))
        agent = DeviceAgent(store=store, realtime=realtime, cache=cache, navigator=navigator, env=env, resolver=resolver)

        session = agent.transition("/screen")

        assert session.state == DeviceState.STALLED
        assert session.code is None
        assert realtime.get_channels() == []
        assert agent.status().state == DeviceState.STALLED

    def test_push_assignment_while_waiting(self, agent, store, realtime, navigator):
        session = agent.transition("/screen")
        store.rows[session.screen_id] = store.rows[session.screen_id].model_copy(update={"assigned_path": "/x"})

        realtime.push_row({"id": session.screen_id, "assigned_path": "/x"})
        session.channel.heartbeat_once()
        drain(agent)

        assert navigator.history == [PAIRING_URL, f"{CONTENT}/x"]
        assert agent.session.path == "/x"


class TestAssignedPage:
    """Boot on a content page."""

    def test_unassignment_returns_to_pairing(self, agent, store, cache, realtime, navigator):
        screen = store.add_screen(assigned_path="/tv1")
        cache.remember_identity(screen.id, screen.code)
        cache.remember_path("/tv1")
        agent.transition("/tv1")

        store.rows[screen.id] = store.rows[screen.id].model_copy(update={"assigned_path": None})
        realtime.push_row({"id": screen.id, "assigned_path": None})
        drain(agent)

        assert navigator.history == [f"{CONTENT}/tv1", PAIRING_URL]
        assert agent.session.path == "/screen"
        assert agent.session.state == DeviceState.WAITING
        assert agent.session.screen_id == screen.id

    def test_missing_identity_returns_to_pairing(self, agent, navigator):
        session = agent.transition("/tv1")

        assert session.state == DeviceState.NAVIGATING
        drain(agent)
        assert agent.session.path == "/screen"

    def test_deleted_row_reregisters(self, agent, store, cache, navigator):
        cache.remember_identity("gone", "AB2C")
        cache.remember_path("/tv1")

        session = agent.transition("/tv1")
        assert session.state == DeviceState.NAVIGATING

        drain(agent)

        assert agent.session.path == "/screen"
        assert agent.session.state == DeviceState.WAITING
        assert agent.session.screen_id != "gone"
        assert cache.screen_id == agent.session.screen_id


class TestTeardown:
    """Every exit releases the page load's resources."""

    def test_navigation_tears_down_previous_session(self, agent, store, realtime):
        session = agent.transition("/screen")
        old_channels = realtime.get_channels()

        agent.transition("/screen")

        assert session.channel is None and session.monitor is None
        assert all(ch.state == ChannelState.CLOSED for ch in old_channels)
        assert len(realtime.get_channels()) == 2

    def test_forced_reload_keeps_path(self, agent, store, cache, realtime, navigator):
        screen = store.add_screen(assigned_path="/tv1")
        cache.remember_identity(screen.id)
        session = agent.transition("/tv1")

        realtime.set_all(ChannelState.ERRORED)
        session.monitor.check(now=0)
        assert session.monitor.check(now=120) is True
        assert session.state == DeviceState.NAVIGATING

        # Later exits from the same page load are dropped
        assert agent.request_navigation("/tv9", session) is False
        assert agent.request_reload(session) is False
        assert agent._queue.qsize() == 1

        drain(agent)

        assert navigator.history == [f"{CONTENT}/tv1", f"{CONTENT}/tv1"]
        assert agent.session.path == "/tv1"
        assert agent.session.state == DeviceState.ASSIGNED

    def test_session_mark_terminal_once(self):
        session = PageSession("/tv1")
        assert session.mark_terminal() is True
        assert session.mark_terminal() is False


class TestRunLoop:
    """The agent thread."""

    def test_run_boots_pairing_page_and_stops(self, agent, store, realtime, navigator):
        thread = threading.Thread(target=agent.run, daemon=True)
        thread.start()

        deadline = time.time() + 2
        while (agent.session is None or agent.session.state != DeviceState.WAITING) and time.time() < deadline:
            time.sleep(0.01)
        assert agent.status().state == DeviceState.WAITING

        agent.stop()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert agent.session is None
        assert realtime.stopped

    def test_manual_reload_reruns_resolution(self, agent, store, navigator):
        first = agent.transition("/screen")

        assert agent.request_reload() is True
        drain(agent)

        assert navigator.history == [PAIRING_URL, PAIRING_URL]
        assert agent.session is not first
        assert agent.session.state == DeviceState.WAITING
        assert agent.session.screen_id == first.screen_id
        assert agent.session.code == first.code
        assert len(store.rows) == 1

    def test_failed_page_load_stalls_and_recovers(self, store, realtime, cache, navigator, env):
        """An unexpected error stalls the page load; the agent thread keeps serving reloads."""
        screen = store.add_screen(code="AB2C")
        resolver = MagicMock(side_effect=[ValueError("boom"), TierOutcome.wait(screen.id, screen.code)])
        agent = DeviceAgent(store=store, realtime=realtime, cache=cache, navigator=navigator, env=env, resolver=resolver)
        thread = threading.Thread(target=agent.run, daemon=True)
        thread.start()

        try:
            assert wait_for_state(agent, DeviceState.STALLED)
            assert thread.is_alive()
            assert agent.session.path == "/screen"
            assert realtime.get_channels() == []

            assert agent.request_reload() is True
            assert wait_for_state(agent, DeviceState.WAITING)
            assert agent.session.screen_id == screen.id
        finally:
            agent.stop()
            thread.join(timeout=2)

        assert not thread.is_alive()


def wait_for_state(agent, state, timeout=2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        session = agent.session
        if session is not None and session.state == state:
            return True
        time.sleep(0.01)
    return False


class TestUnwritableCache:
    """A cache file that rejects every write must not bounce the device between pages."""

    @pytest.fixture
    def broken_cache(self):
        # No tables: every read and write fails
        engine = create_engine("sqlite://")
        yield LocalCache(sessionmaker(bind=engine))
        engine.dispose()

    def test_hostname_recovery_settles_on_assigned_page(self, store, realtime, navigator, host_env, broken_cache):
        store.add_screen(name=host_env.hostname, assigned_path="/tv1")
        agent = DeviceAgent(store=store, realtime=realtime, cache=broken_cache, navigator=navigator, env=host_env)

        agent.transition("/screen")
        drain(agent)

        assert navigator.history == [PAIRING_URL, f"{CONTENT}/tv1"]
        assert agent.session.state == DeviceState.ASSIGNED
        assert agent._queue.empty()
        agent._teardown_session()

    def test_resolved_identity_is_used_when_cache_reads_nothing(
        self, monkeypatch, store, realtime, navigator, host_env, broken_cache
    ):
        screen = store.add_screen(name=host_env.hostname, assigned_path="/tv1")
        monkeypatch.setattr(broken_cache, "get", lambda key: None)
        agent = DeviceAgent(store=store, realtime=realtime, cache=broken_cache, navigator=navigator, env=host_env)

        agent.transition("/screen")
        drain(agent)

        assert navigator.history == [PAIRING_URL, f"{CONTENT}/tv1"]
        assert agent.session.screen_id == screen.id
        assert agent.session.state == DeviceState.ASSIGNED
        agent._teardown_session()
