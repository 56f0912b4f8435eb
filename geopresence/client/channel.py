"""Client side of the presence transport channel.

Wraps a ``websockets`` client connection with named-event handlers and
automatic reconnection. The server announces the connection identifier
in its first frame; ``connect`` handlers fire only after that, so
``channel.id`` is always known inside them.

States: disconnected -> connecting -> connected (-> connecting on loss).

Usage:
    channel = PresenceChannel("ws://127.0.0.1:3002")
    channel.on("receive-location", renderer.handle_presence)
    await channel.run()          # until channel.close()
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..utils.protocol import ChannelEvent, ProtocolError, decode_frame, encode_frame
from ..utils.reconnect import ReconnectStrategy

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PresenceChannel:
    """Reconnecting, event-oriented WebSocket client.

    Args:
        url: Channel URL, e.g. ``ws://host:3002``.
        reconnect: Backoff policy between connection attempts.
        open_timeout: Seconds allowed for the handshake and welcome frame.
    """

    def __init__(self, url: str, reconnect: Optional[ReconnectStrategy] = None,
                 open_timeout: float = 10.0) -> None:
        self.url = url
        self._reconnect = reconnect or ReconnectStrategy.for_channel()
        self._open_timeout = open_timeout
        self._handlers: Dict[str, List[Handler]] = {}
        self._state = ChannelState.DISCONNECTED
        self._id: Optional[str] = None
        self._ws: Optional[Any] = None
        self._closing: Optional[asyncio.Event] = None
        self._dropped = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    @property
    def id(self) -> Optional[str]:
        """Server-assigned connection id (None while not connected)."""
        return self._id

    @property
    def dropped_count(self) -> int:
        """Messages discarded because the channel was not connected."""
        return self._dropped

    def on(self, event: Any, handler: Handler) -> None:
        """Register *handler* for a named event. Handlers may be coroutines."""
        name = event.value if isinstance(event, ChannelEvent) else str(event)
        self._handlers.setdefault(name, []).append(handler)

    async def emit(self, event: Any, data: Any = None) -> bool:
        """Send an event. Returns False (message dropped) when not connected."""
        ws = self._ws
        if not self.connected or ws is None:
            self._dropped += 1
            return False
        try:
            await ws.send(encode_frame(event, data))
        except ConnectionClosed:
            self._dropped += 1
            return False
        return True

    async def close(self) -> None:
        """Stop reconnecting and close the current connection."""
        if self._closing is None:
            self._closing = asyncio.Event()
        self._closing.set()
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def run(self) -> None:
        """Connect and keep reconnecting until close() is called."""
        if self._closing is None:
            self._closing = asyncio.Event()
        while not self._closing.is_set():
            self._state = ChannelState.CONNECTING
            try:
                await self._run_once()
            except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
                logger.warning("Channel connect to %s failed: %s", self.url, e)
                await self._dispatch(ChannelEvent.CONNECT_ERROR.value, e)
                if isinstance(e, InvalidURI):
                    break
            if self._closing.is_set() or not self._reconnect.should_retry():
                break
            delay = await self._reconnect.wait(self._closing)
            logger.debug("Reconnect attempt after %.1fs", delay)
        self._state = ChannelState.DISCONNECTED

    async def _run_once(self) -> None:
        async with connect(self.url, open_timeout=self._open_timeout) as ws:
            self._ws = ws
            try:
                welcome = await asyncio.wait_for(ws.recv(), timeout=self._open_timeout)
                await self._handle_welcome(welcome)
                async for raw in ws:
                    await self._handle_frame(raw)
            except ConnectionClosed as e:
                logger.debug("Channel closed: %s", e)
            finally:
                was_connected = self.connected
                self._ws = None
                self._id = None
                self._state = ChannelState.DISCONNECTED
                if was_connected:
                    logger.info("Channel disconnected from %s", self.url)
                    await self._dispatch(ChannelEvent.DISCONNECT.value, None)

    async def _handle_welcome(self, raw: Any) -> None:
        try:
            event, data = decode_frame(raw)
        except ProtocolError as e:
            raise ConnectionError(f"bad welcome frame: {e}") from e
        if event != ChannelEvent.CONNECT.value or not isinstance(data, dict) or not data.get("id"):
            raise ConnectionError(f"expected connect frame, got {event!r}")
        self._id = str(data["id"])
        self._state = ChannelState.CONNECTED
        self._reconnect.reset()
        logger.info("Channel connected to %s as %s", self.url, self._id)
        await self._dispatch(ChannelEvent.CONNECT.value, None)

    async def _handle_frame(self, raw: Any) -> None:
        try:
            event, data = decode_frame(raw)
        except ProtocolError as e:
            logger.debug("Dropped malformed frame: %s", e)
            return
        await self._dispatch(event, data)

    async def _dispatch(self, event: str, data: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %r failed", event)
