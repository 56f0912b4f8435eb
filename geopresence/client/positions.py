"""
GeoPresence - Position Sources

A position source yields device fixes to the location producer, the way
a browser's geolocation watch does. Sources are pull-based: the producer
awaits ``read(timeout)`` in a loop, and a source that cannot deliver a
fix within the acquisition timeout raises PositionTimeout. A timed-out
read does not reschedule the pending fix; the next read keeps waiting
for it.

Sources:
    StaticPositionSource  - the same fix every interval (fixed beacons)
    ReplayPositionSource  - replays a recorded track from memory or CSV
"""

import asyncio
import csv
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..utils.geo import validate_coordinates

logger = logging.getLogger(__name__)


class PositionError(Exception):
    """Base class for position acquisition failures."""


class PositionTimeout(PositionError):
    """No fix was acquired within the acquisition timeout."""


class PositionUnavailable(PositionError):
    """The source has no more fixes or cannot produce any (e.g. denied)."""


@dataclass
class PositionFix:
    """One device position sample."""
    latitude: float
    longitude: float
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class WatchOptions:
    """Position watch configuration.

    Defaults ask for high accuracy, give each acquisition 5 seconds, and
    refuse cached fixes (maximum_age=0).
    """
    high_accuracy: bool = True
    timeout: float = 5.0
    maximum_age: float = 0.0


class PositionSource(ABC):
    """Base class for anything that produces position fixes."""

    @abstractmethod
    async def read(self, timeout: float) -> PositionFix:
        """Return the next fix, or raise PositionTimeout / PositionUnavailable."""

    def close(self) -> None:
        """Release any underlying device. Default: nothing to release."""


class _IntervalSource(PositionSource):
    """Shared pacing: the first fix is immediate, then one per interval."""

    def __init__(self, interval: float):
        self._interval = interval
        self._next_due: Optional[float] = None

    async def _wait_for_slot(self, timeout: float) -> None:
        now = time.monotonic()
        if self._next_due is None:
            self._next_due = now
        remaining = self._next_due - now
        if remaining > timeout:
            await asyncio.sleep(timeout)
            raise PositionTimeout(f"no fix within {timeout:.1f}s")
        if remaining > 0:
            await asyncio.sleep(remaining)
        self._next_due = max(self._next_due, now) + self._interval


class StaticPositionSource(_IntervalSource):
    """Reports a fixed position every *interval* seconds."""

    def __init__(self, latitude: float, longitude: float,
                 heading: Optional[float] = None, interval: float = 1.0):
        super().__init__(interval)
        coords = validate_coordinates(latitude, longitude)
        if coords is None:
            raise ValueError(f"invalid coordinates: {latitude}, {longitude}")
        self._lat, self._lon = coords
        self._heading = heading

    async def read(self, timeout: float) -> PositionFix:
        await self._wait_for_slot(timeout)
        return PositionFix(self._lat, self._lon, heading=self._heading)


class ReplayPositionSource(_IntervalSource):
    """Replays a recorded track, one fix per *interval* seconds.

    Args:
        fixes: Recorded fixes in playback order.
        interval: Seconds between fixes.
        loop: Start over after the last fix instead of ending.
    """

    def __init__(self, fixes: Iterable[PositionFix], interval: float = 1.0,
                 loop: bool = False):
        super().__init__(interval)
        self._fixes: List[PositionFix] = list(fixes)
        self._loop = loop
        self._index = 0

    @classmethod
    def from_csv(cls, path: Union[str, Path], interval: float = 1.0,
                 loop: bool = False) -> "ReplayPositionSource":
        """Load ``lat,lon[,heading]`` rows. Header and invalid rows are skipped."""
        fixes: List[PositionFix] = []
        with open(path, newline="") as f:
            for line_no, row in enumerate(csv.reader(f), start=1):
                if len(row) < 2:
                    continue
                coords = validate_coordinates(row[0].strip(), row[1].strip())
                if coords is None:
                    logger.debug("Skipping row %d of %s: %r", line_no, path, row)
                    continue
                heading = None
                if len(row) > 2 and row[2].strip():
                    try:
                        heading = float(row[2])
                    except ValueError:
                        heading = None
                fixes.append(PositionFix(coords[0], coords[1], heading=heading))
        logger.info("Loaded %d fixes from %s", len(fixes), path)
        return cls(fixes, interval=interval, loop=loop)

    @property
    def remaining(self) -> int:
        return max(0, len(self._fixes) - self._index)

    async def read(self, timeout: float) -> PositionFix:
        if self._index >= len(self._fixes):
            if not self._loop or not self._fixes:
                raise PositionUnavailable("replay track exhausted")
            self._index = 0
        await self._wait_for_slot(timeout)
        recorded = self._fixes[self._index]
        self._index += 1
        # Stamped with playback time so a replayed fix is never stale
        return PositionFix(recorded.latitude, recorded.longitude,
                           heading=recorded.heading, accuracy=recorded.accuracy)
