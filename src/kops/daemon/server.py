"""Unix-socket server for kopsd.

One thread per connection. Each connection reads a request, dispatches it,
writes the response, and repeats until the client hangs up or a framing
error makes the stream unusable.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import socket
import socketserver
import threading
from pathlib import Path
from typing import Any

from kops.config import KopsConfig
from kops.daemon.attach import ClusterAttacher
from kops.daemon.handler import Handler
from kops.daemon.registry import DaemonRegistry
from kops.protocol.wire import WireError, read_request, write_message

logger = logging.getLogger(__name__)

SOCKET_MODE = 0o660


class DaemonStartupError(Exception):
    """The daemon could not take ownership of its socket."""


class ConnectionHandler(socketserver.StreamRequestHandler):
    """Serves one client connection, one request at a time."""

    server: DaemonServer

    def handle(self) -> None:
        logger.debug("Client connected")
        while not self.server.closing:
            try:
                request = read_request(self.rfile)
            except WireError as exc:
                logger.warning("Dropping connection: %s", exc)
                return
            if request is None:
                logger.debug("Client closed connection")
                return

            self.server.mark_busy(self.connection, True)
            try:
                logger.debug("Handling %s request", request.type)
                response = self.server.handler.handle(request)
                write_message(self.wfile, response)
            except WireError as exc:
                logger.warning("Failed to send response: %s", exc)
                return
            finally:
                self.server.mark_busy(self.connection, False)


class DaemonServer(socketserver.ThreadingUnixStreamServer):
    """Threaded Unix stream server that drains connections on shutdown.

    Connections are tracked from the accept thread, before their handler
    thread starts, so a shutdown never misses one.
    """

    daemon_threads = False
    block_on_close = True

    def __init__(self, socket_path: str | Path, handler: Handler) -> None:
        self.socket_path = Path(socket_path)
        self.handler = handler
        self.closing = False
        self._conn_lock = threading.Lock()
        self._connections: set[socket.socket] = set()
        self._busy: set[socket.socket] = set()
        super().__init__(str(self.socket_path), ConnectionHandler)

    def process_request(self, request: Any, client_address: Any) -> None:
        with self._conn_lock:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request: Any) -> None:
        with self._conn_lock:
            self._connections.discard(request)
            self._busy.discard(request)
        super().shutdown_request(request)

    def mark_busy(self, conn: socket.socket, busy: bool) -> None:
        with self._conn_lock:
            if busy:
                self._busy.add(conn)
            else:
                self._busy.discard(conn)

    def request_stop(self) -> None:
        """Stop accepting and wind down connections.

        Safe to call from a signal handler: ``shutdown()`` blocks until the
        accept loop exits, so it runs on a helper thread.
        """
        if self.closing:
            return
        self.closing = True
        threading.Thread(target=self._stop, name="kopsd-shutdown", daemon=True).start()

    def _stop(self) -> None:
        self.shutdown()
        with self._conn_lock:
            idle = self._connections - self._busy
        for conn in idle:
            # Unblocks the idle read; the handler thread then sees end-of-stream.
            with contextlib.suppress(OSError):
                conn.shutdown(socket.SHUT_RD)

    def server_close(self) -> None:
        super().server_close()
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove socket %s: %s", self.socket_path, exc)


def create_server(socket_path: str | Path, handler: Handler) -> DaemonServer:
    """Remove a stale socket, bind, and restrict permissions."""
    path = Path(socket_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise DaemonStartupError(f"cannot prepare socket path {path}: {exc}") from exc

    try:
        server = DaemonServer(path, handler)
    except OSError as exc:
        raise DaemonStartupError(f"cannot bind {path}: {exc}") from exc

    try:
        os.chmod(path, SOCKET_MODE)
    except OSError as exc:
        server.server_close()
        raise DaemonStartupError(f"cannot set permissions on {path}: {exc}") from exc
    return server


def build_handler(config: KopsConfig) -> Handler:
    registry = DaemonRegistry(default_cluster=config.effective_default_cluster)
    return Handler(registry, ClusterAttacher(registry, config))


def install_signal_handlers(server: DaemonServer) -> None:
    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        server.request_stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)


def run_server(server: DaemonServer) -> None:
    """Serve on an already bound socket; removes it on the way out."""
    install_signal_handlers(server)
    logger.info(
        "kopsd listening on %s (default cluster: %s)",
        server.socket_path, server.handler.registry.default_cluster or "none",
    )
    try:
        server.serve_forever()
    finally:
        server.server_close()
        logger.info("kopsd stopped")
