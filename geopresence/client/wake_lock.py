"""
GeoPresence - Wake Locks

Keeps the host from suspending while the producer is sampling positions.
Acquisition is opportunistic: callers log a WakeLockError and carry on
without the lock.

    NullWakeLock            - always succeeds, holds nothing
    SystemdInhibitWakeLock  - holds a ``systemd-inhibit`` child process
"""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

logger = logging.getLogger(__name__)


class WakeLockError(Exception):
    """The platform refused or does not support the wake lock."""


class WakeLock(ABC):
    """Base class for platform wake locks."""

    @abstractmethod
    def acquire(self) -> None:
        """Take the lock. Raises WakeLockError on failure."""

    @abstractmethod
    def release(self) -> None:
        """Drop the lock if held."""

    @property
    @abstractmethod
    def held(self) -> bool:
        """True while the lock is held."""


class NullWakeLock(WakeLock):
    """Wake lock for hosts that never sleep (servers, simulators)."""

    def __init__(self) -> None:
        self._held = False

    def acquire(self) -> None:
        self._held = True

    def release(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held


class SystemdInhibitWakeLock(WakeLock):
    """Inhibits idle/sleep via ``systemd-inhibit`` for as long as it is held."""

    BINARY = "systemd-inhibit"

    def __init__(self, who: str = "geopresence",
                 why: str = "Sharing live location") -> None:
        self._who = who
        self._why = why
        self._proc: Optional[subprocess.Popen] = None

    def _command(self, binary: str) -> List[str]:
        return [
            binary,
            "--what=idle:sleep",
            f"--who={self._who}",
            f"--why={self._why}",
            "--mode=block",
            "sleep", "infinity",
        ]

    def acquire(self) -> None:
        if self.held:
            return
        binary = shutil.which(self.BINARY)
        if binary is None:
            raise WakeLockError(f"{self.BINARY} not found")
        try:
            self._proc = subprocess.Popen(
                self._command(binary),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise WakeLockError(f"failed to start {self.BINARY}: {e}") from e
        logger.debug("Wake lock acquired (pid %d)", self._proc.pid)

    def release(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=2.0)
        except subprocess.TimeoutExpired:
            proc.kill()
        logger.debug("Wake lock released")

    @property
    def held(self) -> bool:
        return self._proc is not None and self._proc.poll() is None
