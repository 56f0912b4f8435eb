"""Shared fixtures for the geopresence test suite."""

import asyncio
import json
import socket
import time

import pytest

from geopresence.utils.broadcaster import PresenceBroadcaster
from geopresence.utils.channel_server import PresenceChannelServer
from geopresence.utils.room_registry import RoomRegistry


def free_port():
    """Get an available port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def free_port_pair():
    """Two consecutive free ports (HTTP + channel)."""
    for _ in range(50):
        port = free_port()
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(("127.0.0.1", port + 1))
        except OSError:
            continue
        return port
    raise RuntimeError("no consecutive free ports")


def wait_until(predicate, timeout=2.0, interval=0.02):
    """Poll *predicate* until it is truthy or *timeout* elapses."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


async def async_wait_until(predicate, timeout=2.0, interval=0.02):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


async def recv_event(ws, event, timeout=2.0):
    """Receive frames until one named *event* arrives; return its data."""
    while True:
        raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
        frame = json.loads(raw)
        if frame["event"] == event:
            return frame["data"]


async def send_event(ws, event, data=None):
    await ws.send(json.dumps({"event": event, "data": data}))


async def sync(ws, timeout=2.0):
    """Round-trip a ping; return every other frame received before the pong."""
    await send_event(ws, "ping")
    seen = []
    while True:
        frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))
        if frame["event"] == "pong":
            return seen
        seen.append(frame)


@pytest.fixture
def tmp_config(tmp_path):
    """Provide a temporary config file path."""
    return tmp_path / "settings.json"


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def sample_update():
    """Scenario payload: C1 in room r1 at (10, 20)."""
    return {
        "latitude": 10,
        "longitude": 20,
        "heading": 0,
        "name": "A",
        "color": "#111",
        "room": "r1",
    }


def _start_channel(room_scoped):
    server = PresenceChannelServer(
        PresenceBroadcaster(RoomRegistry(), room_scoped=room_scoped),
        host="127.0.0.1",
        port=free_port(),
    )
    assert server.start(), "presence channel failed to start"
    return server


@pytest.fixture
def channel_server():
    """Room-scoped presence channel on a random port."""
    server = _start_channel(room_scoped=True)
    yield server
    server.shutdown()


@pytest.fixture
def broadcast_channel_server():
    """Presence channel in broadcast-to-everyone mode."""
    server = _start_channel(room_scoped=False)
    yield server
    server.shutdown()
