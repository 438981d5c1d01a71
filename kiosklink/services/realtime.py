"""Realtime change-notification client (Phoenix channel protocol over websockets)."""
import enum
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from kiosklink.core.config import settings

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"

RowCallback = Callable[[Dict[str, Any]], None]
BroadcastCallback = Callable[[Dict[str, Any]], None]


class ChannelState(str, enum.Enum):
    """Transport state of one realtime channel."""
    CLOSED = "closed"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"
    ERRORED = "errored"


DISCONNECTED_STATES = (ChannelState.CLOSED, ChannelState.ERRORED)


class RealtimeChannel:
    """A subscription to one topic: row-change listeners plus broadcast listeners."""

    def __init__(self, client: "RealtimeClient", topic: str):
        self.client = client
        self.topic = f"realtime:{topic}"
        self._state = ChannelState.CLOSED
        # Start of the current run of join attempts that have not been acknowledged
        self._unjoined_since: Optional[float] = None
        self.join_ref: Optional[str] = None
        self.join_sent_at: Optional[float] = None
        self._postgres_changes: List[Dict[str, str]] = []
        self._row_callbacks: List[tuple] = []
        self._broadcast_callbacks: Dict[str, List[BroadcastCallback]] = {}

    def on_postgres_update(
        self, table: str, filter: str, callback: RowCallback, schema: str = "public"
    ) -> "RealtimeChannel":
        """Deliver post-update row snapshots of `table` matching `filter` to `callback`."""
        self._postgres_changes.append(
            {"event": "UPDATE", "schema": schema, "table": table, "filter": filter}
        )
        self._row_callbacks.append((table, callback))
        return self

    def on_broadcast(self, event: str, callback: BroadcastCallback) -> "RealtimeChannel":
        self._broadcast_callbacks.setdefault(event, []).append(callback)
        return self

    def subscribe(self) -> "RealtimeChannel":
        self.client.join(self)
        return self

    @property
    def state(self) -> ChannelState:
        return self._state

    @state.setter
    def state(self, value: ChannelState) -> None:
        if value in (ChannelState.JOINING, ChannelState.ERRORED):
            if self._unjoined_since is None:
                self._unjoined_since = self.client.clock()
        else:
            self._unjoined_since = None
        self._state = value

    @property
    def is_disconnected(self) -> bool:
        """
        Closed or errored, or still joining after the join timeout.

        The joining clock is not reset by errors or rejoins, only by a
        successful join, so a server that accepts the socket but never
        acknowledges a join still reads as disconnected.
        """
        if self._state in DISCONNECTED_STATES:
            return True
        if self._state == ChannelState.JOINING and self._unjoined_since is not None:
            return self.client.clock() - self._unjoined_since >= self.client.join_timeout
        return False

    def join_payload(self) -> Dict[str, Any]:
        return {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": list(self._postgres_changes),
            },
            "access_token": self.client.api_key or None,
        }

    def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        """Route one inbound message to this channel's listeners."""
        if event == "postgres_changes":
            data = payload.get("data") or {}
            if data.get("type") != "UPDATE":
                return
            record = data.get("record") or {}
            for table, callback in self._row_callbacks:
                if data.get("table") in (None, table):
                    self._safe_call(callback, record)
        elif event == "broadcast":
            for callback in self._broadcast_callbacks.get(payload.get("event"), []):
                self._safe_call(callback, payload.get("payload") or {})
        elif event == "phx_error":
            logger.warning(f"Channel {self.topic} errored")
            self.state = ChannelState.ERRORED
        elif event == "phx_close":
            self.state = ChannelState.CLOSED

    def _safe_call(self, callback: Callable, arg: Dict[str, Any]) -> None:
        # A failing listener must not take down the reader thread
        try:
            callback(arg)
        except Exception as e:
            logger.error(f"Realtime listener on {self.topic} failed: {e}", exc_info=True)


class RealtimeClient:
    """
    Websocket client multiplexing realtime channels over one connection.

    A background reader thread owns the socket. When the connection drops,
    every channel goes to ERRORED, the thread waits `reconnect_delay` seconds,
    reconnects and rejoins the channels that are still registered. A join
    that is not acknowledged within `join_timeout` seconds goes to ERRORED
    and is sent again.
    """

    def __init__(
        self,
        url: str = None,
        api_key: str = None,
        heartbeat_interval: float = None,
        reconnect_delay: float = None,
        join_timeout: float = None,
        connect: Callable[..., Any] = ws_connect,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url or settings.resolved_realtime_url
        self.api_key = api_key if api_key is not None else settings.store_api_key
        self.heartbeat_interval = heartbeat_interval or settings.realtime_heartbeat_seconds
        self.reconnect_delay = reconnect_delay or settings.realtime_reconnect_seconds
        self.join_timeout = join_timeout or settings.realtime_join_timeout_seconds
        self.clock = clock
        self._connect = connect
        self._reconnect_listeners: List[Callable[[], None]] = []
        self._channels: Dict[str, RealtimeChannel] = {}
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._socket = None
        self._ref = 0
        self._pending_heartbeat: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def endpoint(self) -> str:
        query = f"vsn={PROTOCOL_VERSION}"
        if self.api_key:
            query = f"apikey={self.api_key}&{query}"
        return f"{self.url}?{query}"

    def channel(self, topic: str) -> RealtimeChannel:
        return RealtimeChannel(self, topic)

    def get_channels(self) -> List[RealtimeChannel]:
        with self._lock:
            return list(self._channels.values())

    def join(self, channel: RealtimeChannel) -> None:
        with self._lock:
            self._channels[channel.topic] = channel
        channel.state = ChannelState.JOINING
        if self._socket is not None:
            self._send_join(channel)
        self.start()

    def remove_channel(self, channel: RealtimeChannel) -> None:
        with self._lock:
            self._channels.pop(channel.topic, None)
        if self._socket is not None and channel.state == ChannelState.JOINED:
            channel.state = ChannelState.LEAVING
            self._send(channel.topic, "phx_leave", {}, join_ref=channel.join_ref)
        channel.state = ChannelState.CLOSED

    def add_reconnect_listener(self, callback: Callable[[], None]) -> None:
        """Call `callback` each time the socket reopens after having been lost."""
        with self._lock:
            self._reconnect_listeners.append(callback)

    def remove_reconnect_listener(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._reconnect_listeners:
                self._reconnect_listeners.remove(callback)

    def _notify_reconnected(self) -> None:
        with self._lock:
            listeners = list(self._reconnect_listeners)
        for callback in listeners:
            try:
                callback()
            except Exception as e:
                logger.error(f"Reconnect listener failed: {e}", exc_info=True)

    def start(self) -> None:
        """Start the reader thread if it is not running yet."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="RealtimeReader")
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._close_socket()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        for channel in self.get_channels():
            channel.state = ChannelState.CLOSED

    def _next_ref(self) -> str:
        with self._send_lock:
            self._ref += 1
            return str(self._ref)

    def _send(self, topic: str, event: str, payload: Dict[str, Any], join_ref: str = None) -> str:
        ref = self._next_ref()
        message = {"topic": topic, "event": event, "payload": payload, "ref": ref}
        if join_ref:
            message["join_ref"] = join_ref
        socket = self._socket
        if socket is None:
            return ref
        try:
            with self._send_lock:
                socket.send(json.dumps(message))
        except (OSError, WebSocketException) as e:
            logger.warning(f"Realtime send of {event} on {topic} failed: {e}")
        return ref

    def _send_join(self, channel: RealtimeChannel) -> None:
        channel.state = ChannelState.JOINING
        channel.join_sent_at = self.clock()
        channel.join_ref = self._send(channel.topic, "phx_join", channel.join_payload())
        logger.debug(f"Joining {channel.topic} (ref {channel.join_ref})")

    def _expire_joins(self, now: float) -> None:
        """Error out and resend joins that went unanswered for `join_timeout` seconds."""
        for channel in self.get_channels():
            if channel.state != ChannelState.JOINING or channel.join_sent_at is None:
                continue
            if now - channel.join_sent_at >= self.join_timeout:
                logger.warning(f"Join of {channel.topic} timed out, rejoining")
                channel.state = ChannelState.ERRORED
                self._send_join(channel)

    def _send_heartbeat(self) -> bool:
        """Send a protocol heartbeat; False when the previous one was never answered."""
        if self._pending_heartbeat is not None:
            logger.warning("Realtime heartbeat timed out, dropping connection")
            return False
        self._pending_heartbeat = self._send(PHOENIX_TOPIC, "heartbeat", {})
        return True

    def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                socket.close()
            except (OSError, WebSocketException):
                pass

    def _mark_all(self, state: ChannelState) -> None:
        for channel in self.get_channels():
            channel.state = state

    def _run(self) -> None:
        opened_before = False
        while not self._stop.is_set():
            try:
                self._socket = self._connect(self.endpoint, open_timeout=settings.store_timeout_seconds)
                logger.info("Realtime connection open")
                self._pending_heartbeat = None
                for channel in self.get_channels():
                    self._send_join(channel)
                if opened_before:
                    self._notify_reconnected()
                opened_before = True
                self._read_loop()
            except (OSError, WebSocketException) as e:
                if not self._stop.is_set():
                    logger.warning(f"Realtime connection lost: {e}")
            except Exception as e:
                logger.error(f"Realtime reader crashed: {e}", exc_info=True)
            finally:
                self._close_socket()
            if self._stop.is_set():
                break
            self._mark_all(ChannelState.ERRORED)
            self._stop.wait(self.reconnect_delay)

    def _read_loop(self) -> None:
        next_heartbeat = self.clock() + self.heartbeat_interval
        while not self._stop.is_set():
            socket = self._socket
            if socket is None:
                return
            timeout = max(0.0, min(next_heartbeat - self.clock(), self.join_timeout))
            try:
                self._handle_message(socket.recv(timeout=timeout))
            except TimeoutError:
                pass
            now = self.clock()
            self._expire_joins(now)
            if now >= next_heartbeat:
                if not self._send_heartbeat():
                    return
                next_heartbeat = now + self.heartbeat_interval

    def _handle_message(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed realtime message: {raw!r}")
            return

        topic = message.get("topic")
        event = message.get("event")
        payload = message.get("payload") or {}
        ref = message.get("ref")

        if topic == PHOENIX_TOPIC:
            if event == "phx_reply" and ref == self._pending_heartbeat:
                self._pending_heartbeat = None
            return

        with self._lock:
            channel = self._channels.get(topic)
        if channel is None:
            return

        if event == "phx_reply" and ref is not None and ref == channel.join_ref:
            if payload.get("status") == "ok":
                channel.state = ChannelState.JOINED
                logger.info(f"Joined {channel.topic}")
            else:
                channel.state = ChannelState.ERRORED
                logger.warning(f"Join of {channel.topic} rejected: {payload.get('response')}")
            return

        channel.dispatch(event, payload)
