"""WebSocket transport channel for presence clients.

Runs in a background thread with its own asyncio event loop. Each client
connection gets an opaque identifier that is announced to the client in
a ``connect`` frame; the client uses it to recognise its own echoes.

All connection events (open, join-room, send-location, close) are handled
on the single event-loop thread, one at a time. Fan-out uses
``websockets.asyncio.server.broadcast``, which writes to every recipient
without awaiting them individually, so one slow phone never delays the
rest of the room.

Usage:
    registry = RoomRegistry()
    channel = PresenceChannelServer(PresenceBroadcaster(registry), port=3002)
    channel.start()                     # non-blocking, spawns thread
    channel.shutdown()
"""

import asyncio
import logging
import secrets
import threading
import time
from typing import Any, Dict, List, Optional

from websockets.asyncio.server import broadcast, serve

from .broadcaster import Delivery, PresenceBroadcaster
from .protocol import (
    ChannelEvent,
    InvalidPayloadError,
    ProtocolError,
    decode_frame,
    encode_frame,
)

logger = logging.getLogger(__name__)


def new_connection_id() -> str:
    """Opaque, URL-safe, unguessable connection identifier."""
    return secrets.token_urlsafe(15)


class PresenceChannelServer:
    """Async WebSocket presence server running in a background thread.

    Args:
        broadcaster: Fan-out rules (owns the room registry).
        host: Bind address (default "0.0.0.0").
        port: WebSocket port (default 3002).
        allowed_origins: Origin allow-list; None accepts any origin.
    """

    # Client events the server acts on; everything else is dropped
    _ALLOWED_EVENTS = frozenset({
        ChannelEvent.JOIN_ROOM.value,
        ChannelEvent.SEND_LOCATION.value,
        ChannelEvent.PING.value,
        ChannelEvent.GET_STATS.value,
    })

    def __init__(self, broadcaster: PresenceBroadcaster, host: str = "0.0.0.0",
                 port: int = 3002,
                 allowed_origins: Optional[List[str]] = None) -> None:
        self.host = host
        self.port = port
        self.allowed_origins = allowed_origins
        self._broadcaster = broadcaster

        # connection id -> websocket; touched on the loop thread, read elsewhere
        self._sockets: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Future] = None
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[Any] = None
        self._started = threading.Event()
        self._bound = False
        self._stats = _ChannelStats()

    # ------------------------------------------------------------------
    # Public API (called from any thread)
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start the server in a background thread.

        Returns True once the socket is bound, False if binding failed or
        the server is already running.
        """
        if self._thread and self._thread.is_alive():
            logger.debug("Presence channel already running")
            return False

        self._started.clear()
        self._bound = False
        self._thread = threading.Thread(
            target=self._run_loop,
            name="presence-channel",
            daemon=True,
        )
        self._thread.start()
        # Wait for the server to actually bind (up to 5s)
        self._started.wait(timeout=5.0)
        if not self._bound:
            self._join_thread()
            return False
        return True

    def shutdown(self) -> None:
        """Stop the server and close all connections."""
        loop = self._loop
        if loop is not None:
            try:
                loop.call_soon_threadsafe(self._request_stop)
            except RuntimeError:
                pass  # Loop already closed
        self._join_thread()
        self._loop = None
        self._server = None
        with self._lock:
            self._sockets.clear()

    @property
    def broadcaster(self) -> PresenceBroadcaster:
        return self._broadcaster

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._sockets)

    @property
    def stats(self) -> Dict[str, Any]:
        data = {
            "clients_connected": self.client_count,
            "total_connections": self._stats.total_connections,
            "total_messages_sent": self._stats.total_messages_sent,
            "total_frames_dropped": self._stats.total_frames_dropped,
        }
        data.update(self._broadcaster.stats)
        data["rooms"] = self._broadcaster.registry.rooms()
        return data

    # ------------------------------------------------------------------
    # Async internals (run on the event loop thread)
    # ------------------------------------------------------------------

    def _join_thread(self) -> None:
        if self._thread:
            self._thread.join(timeout=3.0)
            if self._thread.is_alive():
                logger.warning("Presence channel thread did not exit within 3s")
            self._thread = None

    def _request_stop(self) -> None:
        if self._stop is not None and not self._stop.done():
            self._stop.set_result(None)

    def _run_loop(self) -> None:
        """Entry point for the background thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._serve())
        except Exception:
            logger.exception("Presence channel loop error")
        finally:
            self._started.set()
            self._loop.close()

    async def _serve(self) -> None:
        """Bind, signal readiness, and serve until a stop is requested."""
        self._stop = asyncio.get_running_loop().create_future()
        serve_kwargs: Dict[str, Any] = {}
        if self.allowed_origins is not None:
            serve_kwargs["origins"] = list(self.allowed_origins)
        try:
            self._server = await serve(
                self._handler, self.host, self.port, **serve_kwargs,
            )
        except OSError as e:
            logger.error("Presence channel failed to bind %s:%d: %s",
                         self.host, self.port, e)
            self._started.set()  # unblock the waiter even on failure
            return

        logger.info("Presence channel listening on ws://%s:%d",
                    self.host, self.port)
        self._bound = True
        self._started.set()
        try:
            await self._stop
        finally:
            self._server.close()
            await self._server.wait_closed()

    async def _handler(self, websocket) -> None:
        """Handle a single client connection for its whole lifetime."""
        connection_id = new_connection_id()
        with self._lock:
            self._sockets[connection_id] = websocket
        self._broadcaster.handle_connect(connection_id)
        self._stats.record_connection()
        logger.info("Client connected: %s from %s (total: %d)",
                    connection_id, getattr(websocket, "remote_address", "unknown"),
                    self.client_count)

        try:
            await websocket.send(encode_frame(ChannelEvent.CONNECT, {"id": connection_id}))
            self._stats.record_message_sent()
            async for raw in websocket:
                await self._handle_frame(connection_id, websocket, raw)
        except Exception as e:
            logger.debug("Client %s connection error: %s", connection_id, e)
        finally:
            with self._lock:
                self._sockets.pop(connection_id, None)
            self._deliver(self._broadcaster.handle_disconnect(connection_id))
            logger.info("Client disconnected: %s (total: %d)",
                        connection_id, self.client_count)

    async def _handle_frame(self, connection_id: str, websocket, raw: Any) -> None:
        """Decode and dispatch one client frame."""
        try:
            event, data = decode_frame(raw)
        except ProtocolError as e:
            self._stats.record_frame_dropped()
            logger.debug("Dropped malformed frame from %s: %s", connection_id, e)
            return

        if event not in self._ALLOWED_EVENTS:
            self._stats.record_frame_dropped()
            logger.debug("Dropped unknown event %r from %s", event, connection_id)
            return

        if event == ChannelEvent.JOIN_ROOM.value:
            room = self._broadcaster.handle_join(connection_id, data)
            if room is not None:
                logger.info("Client %s joined room %r", connection_id, room)
        elif event == ChannelEvent.SEND_LOCATION.value:
            try:
                delivery = self._broadcaster.handle_location(connection_id, data)
            except InvalidPayloadError as e:
                self._stats.record_frame_dropped()
                logger.warning("Rejected location from %s: %s", connection_id, e)
                return
            self._deliver(delivery)
        elif event == ChannelEvent.PING.value:
            await websocket.send(encode_frame(ChannelEvent.PONG, {"timestamp": time.time()}))
            self._stats.record_message_sent()
        elif event == ChannelEvent.GET_STATS.value:
            await websocket.send(encode_frame(ChannelEvent.STATS, self.stats))
            self._stats.record_message_sent()

    def _deliver(self, delivery: Delivery) -> None:
        """Write a delivery to its recipients without awaiting any of them."""
        with self._lock:
            sockets = [
                self._sockets[cid] for cid in delivery.recipients
                if cid in self._sockets
            ]
        if not sockets:
            return
        broadcast(sockets, encode_frame(delivery.event, delivery.payload))
        self._stats.record_message_sent(len(sockets))


class _ChannelStats:
    """Thread-safe counters for channel diagnostics."""
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_connections = 0
        self._total_messages_sent = 0
        self._total_frames_dropped = 0

    @property
    def total_connections(self) -> int:
        with self._lock:
            return self._total_connections

    @property
    def total_messages_sent(self) -> int:
        with self._lock:
            return self._total_messages_sent

    @property
    def total_frames_dropped(self) -> int:
        with self._lock:
            return self._total_frames_dropped

    def record_connection(self) -> None:
        with self._lock:
            self._total_connections += 1

    def record_message_sent(self, count: int = 1) -> None:
        with self._lock:
            self._total_messages_sent += count

    def record_frame_dropped(self) -> None:
        with self._lock:
            self._total_frames_dropped += 1
