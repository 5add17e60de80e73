"""
backend_server.py

Lifecycle-aware HTTP backend with a readiness warm-up and graceful shutdown.

Features:
- Starts not-ready and reports ready once, after a fixed warm-up delay.
- /health answers 503 while starting and 200 once ready.
- /version and / always answer 200 with the configured version label.
- SIGTERM (or SIGINT) closes the listener and lets in-flight requests finish
  before the process exits with status 0.
- Optional drain timeout that force-closes connections still open after it.

Env vars (unprefixed, a .env file in the working directory is also read;
empty values count as unset):
- PORT                    (default: 3000)
- APP_VERSION             (default: v1)
- HOST                    (default: 0.0.0.0)
- STARTUP_DELAY_SECONDS   (default: 5)
- DRAIN_TIMEOUT_SECONDS   (default: unset, unbounded drain)
- LOG_LEVEL               (default: INFO)
- JSON_LOGS               (default: false)
- ACCESS_LOG              (default: false)

Exit codes: 0 after a graceful shutdown, 1 when the port cannot be bound,
2 on invalid configuration.
"""

import argparse
import enum
import json
import logging
import signal
import socket
import socketserver
import sys
import threading
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger("backend_server")


# =========================
# Constants
# =========================

DEFAULT_PORT = 3000
DEFAULT_APP_VERSION = "v1"
DEFAULT_STARTUP_DELAY_SECONDS = 5.0

EXIT_OK = 0
EXIT_BIND_FAILURE = 1
EXIT_CONFIG_ERROR = 2

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
HUMAN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

SERVE_POLL_INTERVAL = 0.1
DRAIN_POLL_INTERVAL = 0.05

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ReadinessState(str, enum.Enum):
    STARTING = "starting"
    READY = "ready"


class ShutdownPhase(str, enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


# =========================
# Settings
# =========================

class BackendSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        case_sensitive=False,
    )

    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    app_version: str = DEFAULT_APP_VERSION
    host: str = "0.0.0.0"
    startup_delay_seconds: float = Field(default=DEFAULT_STARTUP_DELAY_SECONDS, ge=0)
    drain_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    log_level: str = "INFO"
    json_logs: bool = False
    access_log: bool = False

    @field_validator("app_version")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("app_version must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def must_be_known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


# =========================
# Logging
# =========================

class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log collectors that parse structured output."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> logging.Handler:
    """Install a single stderr handler on the module logger and return it."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(HUMAN_LOG_FORMAT))
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler


# =========================
# Responses
# =========================

def health_payload(state: ReadinessState, version: str) -> Tuple[int, Dict[str, str]]:
    """Status code and body for /health in the given readiness state."""
    if state is ReadinessState.READY:
        return 200, {"status": "ok", "version": version}
    return 503, {"status": "starting", "version": version}


def version_payload(version: str) -> Tuple[int, Dict[str, str]]:
    return 200, {"version": version}


def root_body(version: str) -> str:
    return f"Hello from Backend {version}!"


class BackendRequestHandler(BaseHTTPRequestHandler):
    server_version = "BackendServer/1"

    def _write(self, code: int, body: bytes, content_type: str, send_body: bool = True):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def _write_json(self, code: int, payload: Dict[str, Any], send_body: bool = True):
        body = json.dumps(payload).encode("utf-8")
        self._write(code, body, "application/json; charset=utf-8", send_body)

    def _write_text(self, code: int, text: str, send_body: bool = True):
        self._write(code, text.encode("utf-8"), "text/plain; charset=utf-8", send_body)

    def _dispatch(self, send_body: bool):
        lifecycle: "BackendServer" = self.server.lifecycle
        path = urlsplit(self.path).path
        try:
            if path == "/health":
                code, payload = health_payload(lifecycle.state, lifecycle.version)
                self._write_json(code, payload, send_body)
            elif path == "/version":
                code, payload = version_payload(lifecycle.version)
                self._write_json(code, payload, send_body)
            elif path == "/":
                self._write_text(200, root_body(lifecycle.version), send_body)
            else:
                self._write_json(404, {"error": "not found", "path": path}, send_body)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Client {self.address_string()} went away before the response was written: {e}")

    def send_error(self, code: int, message: Optional[str] = None, explain: Optional[str] = None) -> None:
        # Methods without a do_* handler are answered like an unknown route.
        if code == HTTPStatus.NOT_IMPLEMENTED:
            self.close_connection = True
            path = urlsplit(self.path).path
            self._write_json(HTTPStatus.NOT_FOUND, {"error": "not found", "path": path})
            return
        super().send_error(code, message, explain)

    def do_GET(self):
        self._dispatch(send_body=True)

    def do_HEAD(self):
        self._dispatch(send_body=False)

    def log_message(self, format: str, *args: Any) -> None:
        level = logging.INFO if self.server.lifecycle.settings.access_log else logging.DEBUG
        logger.log(level, "%s - %s", self.address_string(), format % args)


# =========================
# HTTP server
# =========================

class LifecycleHTTPServer(ThreadingHTTPServer):
    """Threaded HTTP server that tracks open connections so shutdown can drain them."""

    daemon_threads = False
    block_on_close = True
    allow_reuse_port = False

    def __init__(self, server_address: Tuple[str, int], lifecycle: "BackendServer"):
        self.lifecycle = lifecycle
        self._active: Set[socket.socket] = set()
        self._active_lock = threading.Lock()
        super().__init__(server_address, BackendRequestHandler)

    @property
    def active_connections(self) -> int:
        with self._active_lock:
            return len(self._active)

    def process_request(self, request, client_address):
        with self._active_lock:
            self._active.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request):
        with self._active_lock:
            self._active.discard(request)
        super().shutdown_request(request)

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling request from {client_address}")

    def close_and_drain(self, timeout: Optional[float] = None) -> int:
        """
        Close the listening socket, then wait for in-flight requests to finish.

        Without a timeout the wait is unbounded. With one, connections still
        open when it elapses are shut down so their handler threads can exit.
        Returns how many connections were force-closed.
        """
        if timeout is None:
            self.server_close()
            return 0

        socketserver.TCPServer.server_close(self)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline and self.active_connections:
            time.sleep(DRAIN_POLL_INTERVAL)

        with self._active_lock:
            leftover: List[socket.socket] = list(self._active)
        for sock in leftover:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Already closed by the client or the handler.
                pass

        self.server_close()
        return len(leftover)


# =========================
# Lifecycle
# =========================

class BackendServer:
    """Owns the readiness flag, the warm-up timer, the listener and the shutdown sequence."""

    def __init__(self, settings: BackendSettings):
        self.settings = settings
        self._ready = threading.Event()
        self._phase = ShutdownPhase.RUNNING
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._httpd: Optional[LifecycleHTTPServer] = None

    @property
    def version(self) -> str:
        return self.settings.app_version

    @property
    def state(self) -> ReadinessState:
        return ReadinessState.READY if self._ready.is_set() else ReadinessState.STARTING

    @property
    def phase(self) -> ShutdownPhase:
        with self._lock:
            return self._phase

    @property
    def port(self) -> int:
        if self._httpd is None:
            raise RuntimeError("server is not bound")
        return self._httpd.server_address[1]

    @property
    def httpd(self) -> Optional[LifecycleHTTPServer]:
        return self._httpd

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def start(self) -> None:
        """Bind the listener and schedule the warm-up. Raises OSError if the bind fails."""
        self._httpd = LifecycleHTTPServer((self.settings.host, self.settings.port), lifecycle=self)
        logger.info(f"Backend {self.version} listening on port {self.port}")
        self._schedule_warmup()

    def _schedule_warmup(self) -> None:
        self._timer = threading.Timer(self.settings.startup_delay_seconds, self.mark_ready)
        self._timer.name = "backend-warmup"
        self._timer.daemon = True
        self._timer.start()

    def mark_ready(self) -> None:
        """Flip the readiness flag. Only the first call while running has any effect."""
        with self._lock:
            if self._ready.is_set() or self._phase is not ShutdownPhase.RUNNING:
                return
            logger.info(f"App ({self.version}) is ready to accept traffic.")
            self._ready.set()

    def serve_forever(self) -> None:
        if self._httpd is None:
            raise RuntimeError("start() must be called before serve_forever()")
        self._httpd.serve_forever(poll_interval=SERVE_POLL_INTERVAL)

    def install_signal_handlers(self) -> None:
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.request_shutdown(signal.Signals(signum).name)

    def request_shutdown(self, reason: str = "SIGTERM") -> bool:
        """
        Begin the shutdown protocol: stop the warm-up and ask the accept loop to exit.

        Safe to call from a signal handler running on the thread that is inside
        serve_forever(), since the blocking shutdown() call runs on its own thread.
        Returns False if shutdown was already under way.
        """
        with self._lock:
            if self._phase is not ShutdownPhase.RUNNING:
                logger.warning(f"{reason} received while already shutting down; ignoring")
                return False
            self._phase = ShutdownPhase.DRAINING

        logger.info(f"{reason} signal received: closing HTTP server")
        if self._timer is not None:
            self._timer.cancel()
        if self._httpd is not None:
            threading.Thread(target=self._httpd.shutdown, name="backend-shutdown", daemon=True).start()
        return True

    def close(self) -> int:
        """Close the listener, drain in-flight requests and report completion."""
        if self._httpd is None:
            return 0
        with self._lock:
            if self._phase is ShutdownPhase.STOPPED:
                return 0
            self._phase = ShutdownPhase.DRAINING
        if self._timer is not None:
            self._timer.cancel()

        timeout = self.settings.drain_timeout_seconds
        cut = self._httpd.close_and_drain(timeout)
        if cut:
            logger.warning(
                f"Drain timeout of {timeout}s elapsed; force-closed {cut} open connection(s)"
            )

        with self._lock:
            self._phase = ShutdownPhase.STOPPED
        logger.info("HTTP server closed")
        return cut

    def run(self) -> int:
        """Serve until a shutdown signal arrives, then drain. Returns the process exit code."""
        try:
            self.start()
        except OSError as e:
            logger.error(
                f"Failed to bind {self.settings.host}:{self.settings.port}: {e}"
            )
            return EXIT_BIND_FAILURE

        self.install_signal_handlers()
        self.serve_forever()
        self.close()
        return EXIT_OK


# =========================
# Entry point
# =========================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="backend-server",
        description="Serve /health, /version and / with a readiness warm-up and graceful shutdown",
    )
    parser.add_argument("--host", help="Address to bind (env: HOST)")
    parser.add_argument("--port", type=int, help="Port to listen on (env: PORT)")
    parser.add_argument("--app-version", help="Version label reported by every endpoint (env: APP_VERSION)")
    parser.add_argument("--startup-delay", type=float, help="Warm-up seconds before /health reports ready (env: STARTUP_DELAY_SECONDS)")
    parser.add_argument("--drain-timeout", type=float, help="Max seconds to wait for in-flight requests on shutdown (env: DRAIN_TIMEOUT_SECONDS)")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> BackendSettings:
    """Environment settings with any command line flags layered on top."""
    overrides = {
        "host": args.host,
        "port": args.port,
        "app_version": args.app_version,
        "startup_delay_seconds": args.startup_delay,
        "drain_timeout_seconds": args.drain_timeout,
    }
    return BackendSettings(**{k: v for k, v in overrides.items() if v is not None})


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = build_settings(args)
    except ValidationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    configure_logging(settings.log_level, settings.json_logs)
    return BackendServer(settings).run()


if __name__ == "__main__":
    sys.exit(main())
