"""
GeoPresence - HTTP Relay Server

Lightweight HTTP server that serves:
  - The browser client page and its static assets
  - A small JSON API for the client bootstrap and relay status

and owns the lifecycle of the WebSocket presence channel, which binds the
port right after the HTTP port.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from . import __version__
from .utils.broadcaster import PresenceBroadcaster
from .utils.channel_server import PresenceChannelServer
from .utils.config import RelayConfig
from .utils.room_registry import RoomRegistry

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).parent / "web"

# Ports tried for each listener before giving up
PORT_ATTEMPTS = 5


@dataclass
class RelayServerContext:
    """Per-server state shared with request handlers via ``self.server``."""
    config: RelayConfig
    registry: RoomRegistry
    web_dir: str
    start_time: float
    channel: Optional[PresenceChannelServer] = None


class RelayHTTPServer(ThreadingHTTPServer):
    """HTTP server carrying a typed context for its handlers."""
    daemon_threads = True

    def __init__(self, server_address, handler_class, context: RelayServerContext):
        self.context = context
        super().__init__(server_address, handler_class)


class RelayRequestHandler(SimpleHTTPRequestHandler):
    """HTTP request handler for the relay page and JSON API."""

    _ROUTE_TABLE = {
        "": "_serve_index",
        "/index.html": "_serve_index",
        "/api/config": "_serve_config",
        "/api/status": "_serve_status",
        "/api/rooms": "_serve_rooms",
    }

    def _context(self) -> Optional[RelayServerContext]:
        return getattr(self.server, "context", None)

    def do_GET(self) -> None:
        path = urlparse(self.path).path.rstrip("/")
        method_name = self._ROUTE_TABLE.get(path)
        try:
            if method_name:
                getattr(self, method_name)()
            elif path.startswith("/api/"):
                self._send_json({"error": "Not found"}, 404)
            else:
                ctx = self._context()
                if ctx:
                    self.directory = ctx.web_dir
                super().do_GET()
        except (BrokenPipeError, ConnectionResetError):
            # Client disconnected before response completed
            pass
        except Exception as e:
            logger.error("Request handler error for %s: %s", self.path, e)
            try:
                self._send_json({"error": "Internal server error"}, 500)
            except (BrokenPipeError, ConnectionResetError):
                pass

    def do_OPTIONS(self) -> None:
        """Handle CORS preflight requests."""
        cors_origin = self._get_cors_origin()
        self.send_response(204)
        if cors_origin:
            self.send_header("Access-Control-Allow-Origin", cors_origin)
            self.send_header("Access-Control-Allow-Methods", "GET, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type, Accept")
            self.send_header("Access-Control-Max-Age", "86400")
        self.end_headers()

    def _get_cors_origin(self) -> Optional[str]:
        ctx = self._context()
        if ctx:
            return ctx.config.get("cors_allowed_origin")
        return None

    def _serve_index(self) -> None:
        """Serve the client page."""
        ctx = self._context()
        index = Path(ctx.web_dir if ctx else WEB_DIR) / "index.html"
        if not index.exists():
            self.send_error(404, "Client page not found")
            return
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.end_headers()
        with open(index, "rb") as f:
            self.wfile.write(f.read())

    def _serve_config(self) -> None:
        """Bootstrap data for the browser client (channel port, room defaults)."""
        ctx = self._context()
        if not ctx:
            self._send_json({})
            return
        cfg = ctx.config.client_settings()
        cfg["ws_port"] = ctx.channel.port if ctx.channel else None
        self._send_json(cfg)

    def _serve_rooms(self) -> None:
        ctx = self._context()
        rooms = ctx.registry.rooms() if ctx else {}
        self._send_json({"rooms": rooms, "room_count": len(rooms)})

    def _serve_status(self) -> None:
        """Relay health: uptime, channel counters, registry counters."""
        ctx = self._context()
        if not ctx:
            self._send_json({"status": "starting"}, 503)
            return
        self._send_json({
            "status": "ok",
            "service": "geopresence",
            "version": __version__,
            "uptime_seconds": int(time.time() - ctx.start_time),
            "room_scoped": bool(ctx.config.get("room_scoped")),
            "channel": ctx.channel.stats if ctx.channel else None,
            "registry": ctx.registry.stats,
        })

    def _send_json(self, data: Any, status: int = 200) -> None:
        try:
            body = json.dumps(data, default=str).encode("utf-8")
        except (TypeError, ValueError) as e:
            logger.error("JSON serialization error: %s", e)
            body = b'{"error": "serialization error"}'
            status = 500
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-cache")
        cors_origin = self._get_cors_origin()
        if cors_origin:
            self.send_header("Access-Control-Allow-Origin", cors_origin)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("HTTP %s", format % args)


class RelayServer:
    """Manages the HTTP server and presence channel lifecycle."""

    def __init__(self, config: RelayConfig, registry: Optional[RoomRegistry] = None):
        self._config = config
        self._registry = registry if registry is not None else RoomRegistry()
        self._broadcaster = PresenceBroadcaster(
            self._registry,
            room_scoped=bool(config.get("room_scoped", True)),
            validate_payloads=bool(config.get("validate_payloads", True)),
            default_room=config.get("default_room"),
        )
        self._server: Optional[RelayHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._channel: Optional[PresenceChannelServer] = None
        self._port: int = 0
        self._web_dir = str(WEB_DIR)

    def start(self) -> bool:
        """Start the HTTP server and the presence channel.

        Tries the configured port first, then up to 4 adjacent ports. The
        channel binds the port after the HTTP port with the same fallback.
        Returns False if either listener could not bind.
        """
        host = self._config.get("http_host", "0.0.0.0")
        base_port = self._config.get("http_port", 3001)
        last_error: Optional[Exception] = None

        for offset in range(PORT_ATTEMPTS):
            port = base_port + offset
            context = RelayServerContext(
                config=self._config,
                registry=self._registry,
                web_dir=self._web_dir,
                start_time=time.time(),
            )
            try:
                self._server = RelayHTTPServer((host, port), RelayRequestHandler, context)
            except OSError as e:
                last_error = e
                logger.debug("Port %d unavailable: %s", port, e)
                continue

            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="geopresence-http",
                daemon=True,
            )
            self._thread.start()
            self._port = port
            if offset > 0:
                logger.warning("Port %d in use, relay started on http://%s:%d",
                               base_port, host, port)
            else:
                logger.info("Relay HTTP server started on http://%s:%d", host, port)

            if not self._start_channel(host, port + 1):
                self.stop()
                return False
            context.channel = self._channel
            return True

        logger.error("Failed to start relay on ports %d-%d: %s",
                     base_port, base_port + PORT_ATTEMPTS - 1, last_error)
        return False

    def _start_channel(self, host: str, ws_port: int) -> bool:
        for offset in range(PORT_ATTEMPTS):
            port = ws_port + offset
            channel = PresenceChannelServer(
                self._broadcaster,
                host=host,
                port=port,
                allowed_origins=self._config.get("allowed_origins"),
            )
            if channel.start():
                self._channel = channel
                if offset > 0:
                    logger.warning("Channel port %d in use, started on ws://%s:%d",
                                   ws_port, host, port)
                return True
        logger.error("Presence channel could not bind ports %d-%d",
                     ws_port, ws_port + PORT_ATTEMPTS - 1)
        return False

    def stop(self) -> None:
        """Stop the channel and HTTP server. Safe to call more than once."""
        if self._channel:
            self._channel.shutdown()
            self._channel = None
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            logger.info("Relay server stopped")
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
            if self._thread.is_alive():
                logger.warning("HTTP server thread did not exit within 5s")
        self._server = None
        self._thread = None
        self._port = 0

    @property
    def port(self) -> int:
        """The HTTP port actually bound (0 if not running)."""
        return self._port

    @property
    def ws_port(self) -> int:
        """The channel port actually bound (0 if not running)."""
        return self._channel.port if self._channel else 0

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def broadcaster(self) -> PresenceBroadcaster:
        return self._broadcaster
