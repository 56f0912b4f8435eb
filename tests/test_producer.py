"""Tests for the location producer."""

import asyncio
import time

import pytest

from geopresence.client.channel import ChannelState, PresenceChannel
from geopresence.client.positions import (
    PositionError,
    PositionFix,
    PositionSource,
    PositionTimeout,
    PositionUnavailable,
    ReplayPositionSource,
    WatchOptions,
)
from geopresence.client.producer import LocationProducer, ProducerState, resolve_room
from geopresence.client.wake_lock import NullWakeLock, WakeLockError
from geopresence.utils.protocol import ChannelEvent
from geopresence.utils.reconnect import ReconnectStrategy

from conftest import async_wait_until, free_port


class FakeChannel:
    """In-memory stand-in for PresenceChannel."""

    def __init__(self, channel_id="abcdef123"):
        self.handlers = {}
        self.emitted = []
        self.connected = False
        self.id = None
        self._channel_id = channel_id
        self.state = ChannelState.DISCONNECTED

    def on(self, event, handler):
        self.handlers.setdefault(event.value, []).append(handler)

    async def emit(self, event, data=None):
        if not self.connected:
            return False
        self.emitted.append((event, data))
        return True

    async def fire(self, event, data=None):
        for handler in self.handlers.get(event, []):
            result = handler(data)
            if asyncio.iscoroutine(result):
                await result

    async def connect(self):
        self.connected = True
        self.state = ChannelState.CONNECTED
        self.id = self._channel_id
        await self.fire("connect")

    async def disconnect(self):
        self.connected = False
        self.state = ChannelState.DISCONNECTED
        self.id = None
        await self.fire("disconnect")

    def sent_locations(self):
        return [d for e, d in self.emitted if e == ChannelEvent.SEND_LOCATION]


class ScriptedSource(PositionSource):
    """Yields scripted fixes/errors, then reports the track exhausted."""

    def __init__(self, script, restamp=True):
        self._script = list(script)
        self._restamp = restamp

    async def read(self, timeout):
        await asyncio.sleep(0)
        if not self._script:
            raise PositionUnavailable("done")
        item = self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        if self._restamp:
            item.timestamp = time.time()
        return item


class FailingWakeLock(NullWakeLock):
    def acquire(self):
        raise WakeLockError("not allowed")


async def _drain(producer):
    task = producer._watch_task
    if task is not None:
        await asyncio.wait_for(task, timeout=2)


class TestResolveRoom:
    @pytest.mark.parametrize("value,expected", [
        ("https://host/?room=team", "team"),
        ("?room=alpha", "alpha"),
        ("room=beta&x=1", "beta"),
        ("https://host/", "default"),
        ("?room=", "default"),
        ("?room=%20", "default"),
        (None, "default"),
    ])
    def test_resolve(self, value, expected):
        assert resolve_room(value) == expected

    def test_custom_default(self):
        assert resolve_room("", default="lobby") == "lobby"


class TestConnectFlow:
    def test_connect_joins_room_and_tracks(self):
        channel = FakeChannel()
        source = ScriptedSource([PositionFix(10, 20, heading=None)])
        producer = LocationProducer(channel, source, room="r1", color="#111")

        async def _test():
            await channel.connect()
            assert producer.state == ProducerState.TRACKING
            await _drain(producer)

        asyncio.run(_test())
        assert channel.emitted[0] == (ChannelEvent.JOIN_ROOM, "r1")
        assert channel.sent_locations() == [{
            "latitude": 10, "longitude": 20, "heading": 0,
            "name": "User abcd", "color": "#111", "room": "r1",
        }]

    def test_fixed_name_kept(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([]), name="Alice")

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert producer.name == "Alice"

    def test_rejoin_on_reconnect_without_second_watch(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([]), room="r1")

        async def _test():
            await channel.connect()
            first = producer._watch_task
            await channel.disconnect()
            assert producer.state == ProducerState.DISCONNECTED
            await channel.connect()
            assert producer._watch_task is first
            await _drain(producer)

        asyncio.run(_test())
        joins = [d for e, d in channel.emitted if e == ChannelEvent.JOIN_ROOM]
        assert joins == ["r1", "r1"]

    def test_connecting_while_channel_connects(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([]))
        assert producer.state == ProducerState.DISCONNECTED
        channel.state = ChannelState.CONNECTING
        assert producer.state == ProducerState.CONNECTING

    def test_first_attempt_reports_connecting(self):
        channel = PresenceChannel(f"ws://127.0.0.1:{free_port()}",
                                  reconnect=ReconnectStrategy(base_delay=5.0),
                                  open_timeout=1.0)
        producer = LocationProducer(channel, ScriptedSource([]))
        errors = []
        channel.on(ChannelEvent.CONNECT_ERROR, errors.append)

        async def _test():
            task = asyncio.create_task(channel.run())
            assert await async_wait_until(lambda: errors)
            state = producer.state
            await channel.close()
            await asyncio.wait_for(task, timeout=3)
            return state

        assert asyncio.run(_test()) == ProducerState.CONNECTING
        assert producer.state == ProducerState.DISCONNECTED


class TestFixHandling:
    def test_fix_dropped_while_disconnected(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([]))
        sent = asyncio.run(producer.handle_fix(PositionFix(1, 2)))
        assert sent is False
        assert producer.stats["updates_dropped"] == 1
        assert producer.last_fix.latitude == 1

    def test_listeners_see_every_fix(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([]))
        seen = []
        producer.add_fix_listener(seen.append)
        asyncio.run(producer.handle_fix(PositionFix(1, 2)))
        assert len(seen) == 1

    def test_timeout_keeps_watching(self):
        channel = FakeChannel()
        source = ScriptedSource([PositionTimeout("slow"), PositionFix(1, 2)])
        producer = LocationProducer(channel, source)

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert len(channel.sent_locations()) == 1
        assert producer.stats["position_errors"] == 2  # timeout + exhausted

    def test_generic_error_backs_off_and_continues(self):
        channel = FakeChannel()
        source = ScriptedSource([PositionError("glitch"), PositionFix(1, 2)])
        producer = LocationProducer(channel, source,
                                    options=WatchOptions(timeout=0.01))

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert len(channel.sent_locations()) == 1

    def test_stale_fix_discarded(self):
        channel = FakeChannel()
        stale = PositionFix(1, 2, timestamp=time.time() - 100)
        producer = LocationProducer(channel, ScriptedSource([stale], restamp=False))

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert channel.sent_locations() == []

    def test_cached_fix_allowed_within_maximum_age(self):
        channel = FakeChannel()
        cached = PositionFix(1, 2, timestamp=time.time() - 5)
        producer = LocationProducer(channel, ScriptedSource([cached], restamp=False),
                                    options=WatchOptions(maximum_age=60))

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert len(channel.sent_locations()) == 1

    def test_replay_source_end_to_end(self):
        channel = FakeChannel()
        source = ReplayPositionSource(
            [PositionFix(1, 1), PositionFix(2, 2), PositionFix(3, 3)], interval=0,
        )
        producer = LocationProducer(channel, source)

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert [u["latitude"] for u in channel.sent_locations()] == [1, 2, 3]
        assert producer.stats["updates_sent"] == 3


class TestWakeLock:
    def test_wake_lock_taken_when_tracking(self):
        channel = FakeChannel()
        lock = NullWakeLock()
        producer = LocationProducer(channel, ScriptedSource([]), wake_lock=lock)

        async def _test():
            await channel.connect()
            assert lock.held
            await producer.stop()

        asyncio.run(_test())
        assert not lock.held

    def test_wake_lock_failure_does_not_stop_tracking(self):
        channel = FakeChannel()
        producer = LocationProducer(channel, ScriptedSource([PositionFix(1, 2)]),
                                    wake_lock=FailingWakeLock())

        async def _test():
            await channel.connect()
            await _drain(producer)

        asyncio.run(_test())
        assert len(channel.sent_locations()) == 1
        assert producer.stats["wake_lock_held"] is False

    def test_visibility_reacquires(self):
        channel = FakeChannel()
        lock = NullWakeLock()
        producer = LocationProducer(channel, ScriptedSource([]), wake_lock=lock)
        producer.request_wake_lock()
        lock.release()
        producer.on_visibility_change(False)
        assert not lock.held
        producer.on_visibility_change(True)
        assert lock.held

    def test_visibility_ignored_before_request(self):
        lock = NullWakeLock()
        producer = LocationProducer(FakeChannel(), ScriptedSource([]), wake_lock=lock)
        producer.on_visibility_change(True)
        assert not lock.held
