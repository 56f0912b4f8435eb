"""
GeoPresence - Relay Entry Point

Runs the HTTP page server and the WebSocket presence channel until
interrupted.

Usage:
  geopresence                     # installed console script
  python -m geopresence.main
  PORT=8080 geopresence           # HTTP on 8080, channel on 8081
"""

import datetime
import logging
import sys
import time
import traceback
from pathlib import Path

from .relay_server import RelayServer
from .utils.config import RelayConfig
from .utils.paths import get_app_dir

logger = logging.getLogger(__name__)


def _get_error_log_path() -> Path:
    """Get the path to the error log file."""
    try:
        log_dir = get_app_dir("cache") / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "relay_errors.log"
    except OSError:
        return Path("/tmp/geopresence_relay_errors.log")


def _write_fatal_error(error_log: Path) -> None:
    try:
        with open(error_log, "a") as f:
            f.write(f"\n{'=' * 60}\n")
            f.write(f"[{datetime.datetime.now().isoformat()}] FATAL ERROR\n")
            f.write(traceback.format_exc())
            f.write(f"{'=' * 60}\n")
    except OSError as e:
        logger.error("Could not write error log %s: %s", error_log, e)


def main() -> None:
    """Standalone entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    server = None
    exit_code = 0
    try:
        config = RelayConfig()
        server = RelayServer(config)

        if not server.start():
            logger.error("Failed to start relay. Check if the ports are available.")
            sys.exit(1)

        mode = "room-scoped" if config.get("room_scoped") else "broadcast"
        print(f"GeoPresence relay running at http://127.0.0.1:{server.port} "
              f"(channel ws://127.0.0.1:{server.ws_port}, {mode})")
        print("Press Ctrl+C to stop")

        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        error_log = _get_error_log_path()
        _write_fatal_error(error_log)
        logger.error("Relay encountered a fatal error: %s: %s", type(e).__name__, e)
        print(f"Full error details saved to:\n  {error_log}\n")
        exit_code = 1
    finally:
        if server:
            server.stop()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
