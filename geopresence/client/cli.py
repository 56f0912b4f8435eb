"""
GeoPresence - Headless Tracker

Joins a room, publishes positions from a replayed track or a fixed
point, and keeps a GeoJSON picture of everyone else in the room.

Run
---
geopresence-track --url ws://127.0.0.1:3002 --room hike --replay track.csv --interval 2
geopresence-track --url "ws://127.0.0.1:3002" --static 48.8584,2.2945 --snapshot room.geojson
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from ..utils.config import DEFAULT_ROOM, DEFAULT_USER_COLOR
from .channel import PresenceChannel
from .geojson_view import GeoJsonMapView
from .positions import PositionSource, ReplayPositionSource, StaticPositionSource
from .producer import LocationProducer, resolve_room
from .renderer import PresenceRenderer
from .wake_lock import NullWakeLock, SystemdInhibitWakeLock

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="geopresence-track",
                                 description="Share a location with a GeoPresence room")
    ap.add_argument("--url", default="ws://127.0.0.1:3002",
                    help="Presence channel URL")
    ap.add_argument("--room", default=None,
                    help="Room to join (default: ?room= of --page-url, else 'default')")
    ap.add_argument("--page-url", default=None,
                    help="Client page URL whose ?room= parameter selects the room")
    ap.add_argument("--name", default=None,
                    help="Display name (default: 'User <id prefix>')")
    ap.add_argument("--color", default=DEFAULT_USER_COLOR, help="Display color")
    source = ap.add_mutually_exclusive_group(required=True)
    source.add_argument("--replay", type=Path, help="CSV track: lat,lon[,heading]")
    source.add_argument("--static", help="Fixed position 'lat,lon'")
    ap.add_argument("--interval", type=float, default=1.0,
                    help="Seconds between fixes")
    ap.add_argument("--loop", action="store_true", help="Loop the replayed track")
    ap.add_argument("--trail", type=_positive_int, default=None,
                    help="Cap breadcrumb trails at this many points")
    ap.add_argument("--snapshot", type=Path, default=None,
                    help="Write the rendered room as GeoJSON here on exit")
    ap.add_argument("--wake-lock", action="store_true",
                    help="Inhibit system sleep while tracking (systemd-inhibit)")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap.parse_args(argv)


def build_source(args: argparse.Namespace) -> PositionSource:
    if args.replay:
        return ReplayPositionSource.from_csv(args.replay, interval=args.interval,
                                             loop=args.loop)
    try:
        lat_s, lon_s = args.static.split(",", 1)
        return StaticPositionSource(float(lat_s), float(lon_s), interval=args.interval)
    except ValueError as e:
        raise SystemExit(f"--static expects 'lat,lon': {e}")


async def run(args: argparse.Namespace) -> int:
    room = args.room or resolve_room(args.page_url, DEFAULT_ROOM)
    channel = PresenceChannel(args.url)
    view = GeoJsonMapView()
    renderer = PresenceRenderer.attach(channel, view, max_trail_points=args.trail)
    producer = LocationProducer(
        channel,
        build_source(args),
        room=room,
        name=args.name,
        color=args.color,
        wake_lock=SystemdInhibitWakeLock() if args.wake_lock else NullWakeLock(),
    )
    producer.add_fix_listener(renderer.update_self_position)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(channel.close()))
        except (NotImplementedError, RuntimeError):
            pass

    logger.info("Joining room %r via %s", room, args.url)
    try:
        await channel.run()
    finally:
        await producer.stop()
        if args.snapshot:
            args.snapshot.write_text(json.dumps(view.snapshot(), indent=2))
            logger.info("Wrote %d features to %s", view.layer_count, args.snapshot)
    logger.info("Tracker stopped: %s", producer.stats)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
