"""Pytest configuration and fixtures."""
import pytest
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Generator
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test environment variables BEFORE importing kiosklink modules
os.environ["KIOSK_ENVIRONMENT"] = "test"
os.environ["KIOSK_CACHE_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["KIOSK_AUTOSTART_AGENT"] = "false"
os.environ.pop("KIOSK_DEVICE_HOSTNAME", None)
os.environ.pop("KIOSK_BROWSER_COMMAND", None)

from kiosklink.core.errors import RowNotFoundError, UniqueViolationError
from kiosklink.db.models import CacheEntry
from kiosklink.db.session import Base
from kiosklink.schemas.screens import Screen, ScreenInsert, ScreenHeartbeat
from kiosklink.main import app
from kiosklink.services.device_agent import DeviceAgent
from kiosklink.services.identity_resolver import LaunchEnvironment
from kiosklink.services.local_cache import LocalCache
from kiosklink.services.navigator import HeadlessNavigator
from kiosklink.services.realtime import ChannelState, RealtimeChannel


class FakeStore:
    """In-memory screens table with the same error behavior as ScreenStore."""

    def __init__(self):
        self.rows: Dict[str, Screen] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.inserted_codes: List[str] = []

    def add_screen(self, code: str = "ABCD", name: str = None, assigned_path: str = None,
                   last_seen: datetime = None) -> Screen:
        screen = Screen(
            id=str(uuid.uuid4()),
            code=code,
            name=name,
            assigned_path=assigned_path,
            last_seen=last_seen or datetime.now(timezone.utc),
            created_at=datetime.now(timezone.utc),
        )
        self.rows[screen.id] = screen
        return screen

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls to `method` raise these errors, in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def get_screen(self, screen_id: str) -> Screen:
        self._enter("get_screen")
        if screen_id not in self.rows:
            raise RowNotFoundError(screen_id)
        return self.rows[screen_id].model_copy()

    def find_latest_by_name(self, name: str) -> Optional[Screen]:
        self._enter("find_latest_by_name")
        matches = [row for row in self.rows.values() if row.name == name]
        if not matches:
            return None
        return max(matches, key=lambda row: row.last_seen).model_copy()

    def insert_screen(self, screen: ScreenInsert) -> Screen:
        self.inserted_codes.append(screen.code)
        self._enter("insert_screen")
        if any(row.code == screen.code for row in self.rows.values()):
            raise UniqueViolationError(f"duplicate code {screen.code}")
        row = Screen(id=str(uuid.uuid4()), created_at=datetime.now(timezone.utc), **screen.model_dump())
        self.rows[row.id] = row
        return row.model_copy()

    def heartbeat(self, screen_id: str, beat: ScreenHeartbeat) -> Screen:
        self._enter("heartbeat")
        if screen_id not in self.rows:
            raise RowNotFoundError(screen_id)
        updated = self.rows[screen_id].model_copy(update=beat.model_dump(exclude_none=True))
        self.rows[screen_id] = updated
        return updated.model_copy()


class FakeRealtime:
    """Realtime client without a socket: subscribing joins immediately."""

    def __init__(self):
        self.channels: Dict[str, RealtimeChannel] = {}
        self.stopped = False
        self.api_key = ""
        self.join_timeout = 10.0
        self.clock = time.monotonic
        self.reconnect_listeners: List = []

    def channel(self, topic: str) -> RealtimeChannel:
        return RealtimeChannel(self, topic)

    def join(self, channel: RealtimeChannel) -> None:
        self.channels[channel.topic] = channel
        channel.state = ChannelState.JOINED

    def remove_channel(self, channel: RealtimeChannel) -> None:
        self.channels.pop(channel.topic, None)
        channel.state = ChannelState.CLOSED

    def get_channels(self) -> List[RealtimeChannel]:
        return list(self.channels.values())

    def set_all(self, state: ChannelState) -> None:
        for channel in self.channels.values():
            channel.state = state

    def push_row(self, record: dict) -> None:
        """Deliver a post-update snapshot to every channel, like the server would."""
        for channel in list(self.channels.values()):
            channel.dispatch("postgres_changes", {"data": {"type": "UPDATE", "table": "screens", "record": record}})

    def broadcast(self, event: str, payload: dict = None) -> None:
        for channel in list(self.channels.values()):
            channel.dispatch("broadcast", {"type": "broadcast", "event": event, "payload": payload or {}})

    def add_reconnect_listener(self, callback) -> None:
        self.reconnect_listeners.append(callback)

    def remove_reconnect_listener(self, callback) -> None:
        if callback in self.reconnect_listeners:
            self.reconnect_listeners.remove(callback)

    def reconnect(self) -> None:
        """Simulate the socket reopening after an outage."""
        for callback in list(self.reconnect_listeners):
            callback()

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture(scope="function")
def cache_session_factory() -> Generator[sessionmaker, None, None]:
    """Session factory for a fresh in-memory cache database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _ = CacheEntry
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def cache(cache_session_factory) -> LocalCache:
    return LocalCache(cache_session_factory)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def realtime() -> FakeRealtime:
    return FakeRealtime()


@pytest.fixture
def navigator() -> HeadlessNavigator:
    return HeadlessNavigator()


@pytest.fixture
def env() -> LaunchEnvironment:
    """Launch environment without a hostname."""
    return LaunchEnvironment(hostname=None, user_agent="test-agent")


@pytest.fixture
def host_env() -> LaunchEnvironment:
    return LaunchEnvironment(hostname="ic-kiosk-a1b2", user_agent="test-agent")


@pytest.fixture
def device_agent(store, realtime, cache, navigator, env) -> Generator[DeviceAgent, None, None]:
    """Agent wired to the fakes; its loop is not running, tests drive transition()."""
    agent = DeviceAgent(store=store, realtime=realtime, cache=cache, navigator=navigator, env=env)
    yield agent
    agent._teardown_session()


@pytest.fixture
def client(device_agent) -> Generator[TestClient, None, None]:
    """Test client with the device agent attached."""
    with TestClient(app) as test_client:
        app.state.agent = device_agent
        yield test_client
    del app.state.agent


@pytest.fixture
def bare_client() -> Generator[TestClient, None, None]:
    """Test client before any agent has been attached."""
    with TestClient(app) as test_client:
        yield test_client
