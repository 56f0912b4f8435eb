"""
GeoPresence - Client Location Producer

Samples device positions and pushes them to the relay.

State machine (mirrors the transport channel, plus tracking):

  DISCONNECTED -> CONNECTING -> CONNECTED -> TRACKING
        ^                                       |
        +------------- channel lost ------------+

On every ``connect`` the producer emits ``join-room`` for its room and
then makes sure the position watch is running (it is started once and
survives reconnects). Each fix becomes one ``send-location``; fixes taken
while the channel is down are dropped, not queued.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from ..utils.config import DEFAULT_ROOM, DEFAULT_USER_COLOR
from ..utils.protocol import ChannelEvent
from .channel import ChannelState, PresenceChannel
from .positions import (
    PositionError,
    PositionFix,
    PositionSource,
    PositionTimeout,
    PositionUnavailable,
    WatchOptions,
)
from .wake_lock import NullWakeLock, WakeLock, WakeLockError

logger = logging.getLogger(__name__)

FixListener = Callable[[PositionFix], None]


class ProducerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TRACKING = "tracking"


def resolve_room(url_or_query: Optional[str], default: str = DEFAULT_ROOM) -> str:
    """Room id from a page URL or bare query string (``?room=...``)."""
    if not url_or_query:
        return default
    query = urlparse(url_or_query).query if "://" in url_or_query else url_or_query
    values = parse_qs(query.lstrip("?")).get("room")
    if not values or not values[0].strip():
        return default
    return values[0].strip()


class LocationProducer:
    """Publishes this device's position over a presence channel.

    Args:
        channel: Transport channel to publish on.
        source: Where fixes come from.
        room: Room to join on every connect.
        name: Display name; None derives ``User <id prefix>`` on connect.
        color: Display color (CSS).
        options: Position watch options.
        wake_lock: Platform wake lock, acquired when tracking starts.
    """

    def __init__(self, channel: PresenceChannel, source: PositionSource,
                 room: str = DEFAULT_ROOM, name: Optional[str] = None,
                 color: str = DEFAULT_USER_COLOR,
                 options: Optional[WatchOptions] = None,
                 wake_lock: Optional[WakeLock] = None) -> None:
        self._channel = channel
        self._source = source
        self.room = room or DEFAULT_ROOM
        self._fixed_name = name
        self.name = name or "Anonymous"
        self.color = color
        self.options = options or WatchOptions()
        self._wake_lock = wake_lock or NullWakeLock()
        self._wake_lock_requested = False

        self._state = ProducerState.DISCONNECTED
        self._watch_task: Optional[asyncio.Task] = None
        self._listeners: List[FixListener] = []
        self.last_fix: Optional[PositionFix] = None
        self._sent = 0
        self._dropped = 0
        self._errors = 0

        channel.on(ChannelEvent.CONNECT, self._on_connect)
        channel.on(ChannelEvent.DISCONNECT, self._on_disconnect)

    @property
    def state(self) -> ProducerState:
        """Connection phases come from the channel; tracking is ours."""
        if self._channel.connected:
            if self._state == ProducerState.TRACKING:
                return ProducerState.TRACKING
            return ProducerState.CONNECTED
        if self._channel.state == ChannelState.CONNECTING:
            return ProducerState.CONNECTING
        return ProducerState.DISCONNECTED

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def add_fix_listener(self, listener: FixListener) -> None:
        """Call *listener* with every accepted fix (e.g. the renderer's self position)."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Channel events
    # ------------------------------------------------------------------

    async def _on_connect(self, _data: Any) -> None:
        self._state = ProducerState.CONNECTED
        channel_id = self._channel.id or ""
        if self._fixed_name is None:
            self.name = f"User {channel_id[:4]}"
        await self._channel.emit(ChannelEvent.JOIN_ROOM, self.room)
        self.start_tracking()

    def _on_disconnect(self, _data: Any) -> None:
        self._state = ProducerState.DISCONNECTED

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def start_tracking(self) -> None:
        """Start the position watch if it is not already running."""
        if self._channel.connected:
            self._state = ProducerState.TRACKING
        if self.watching:
            return
        self.request_wake_lock()
        self._watch_task = asyncio.get_running_loop().create_task(self._watch())

    async def stop(self) -> None:
        """Cancel the watch and release the wake lock."""
        task = self._watch_task
        self._watch_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._wake_lock.release()
        self._source.close()

    def request_wake_lock(self) -> bool:
        """Try to take the wake lock. Failure is logged, never raised."""
        self._wake_lock_requested = True
        try:
            self._wake_lock.acquire()
        except WakeLockError as e:
            logger.error("Wake lock failed: %s", e)
            return False
        return True

    def on_visibility_change(self, visible: bool) -> None:
        """Re-take the wake lock when the display becomes visible again."""
        if visible and self._wake_lock_requested and not self._wake_lock.held:
            self.request_wake_lock()

    async def _watch(self) -> None:
        timeout = self.options.timeout
        while True:
            started = time.time()
            try:
                fix = await self._source.read(timeout)
            except PositionTimeout as e:
                self._errors += 1
                logger.error("Geo error: %s", e)
                continue
            except PositionUnavailable as e:
                self._errors += 1
                logger.error("Geo error: %s, position watch ended", e)
                return
            except PositionError as e:
                self._errors += 1
                logger.error("Geo error: %s", e)
                await asyncio.sleep(timeout)
                continue
            if fix.timestamp < started - self.options.maximum_age:
                logger.debug("Discarding cached fix from %.1fs ago",
                             time.time() - fix.timestamp)
                continue
            await self.handle_fix(fix)

    async def handle_fix(self, fix: PositionFix) -> bool:
        """Record *fix* and publish it if the channel is up.

        Returns True if the update was sent.
        """
        self.last_fix = fix
        for listener in list(self._listeners):
            listener(fix)

        if not self._channel.connected:
            self._dropped += 1
            return False
        sent = await self._channel.emit(ChannelEvent.SEND_LOCATION, self.build_update(fix))
        if sent:
            self._sent += 1
        else:
            self._dropped += 1
        return sent

    def build_update(self, fix: PositionFix) -> Dict[str, Any]:
        return {
            "latitude": fix.latitude,
            "longitude": fix.longitude,
            "heading": fix.heading or 0,
            "name": self.name,
            "color": self.color,
            "room": self.room,
        }

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "room": self.room,
            "updates_sent": self._sent,
            "updates_dropped": self._dropped,
            "position_errors": self._errors,
            "wake_lock_held": self._wake_lock.held,
        }
