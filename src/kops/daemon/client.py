"""Blocking client for the kopsd socket, used by kopsctl."""

from __future__ import annotations

import contextlib
import logging
import socket
from pathlib import Path
from typing import Any

from kops.config import DEFAULT_SOCKET_PATH
from kops.models import (
    EnvRequest,
    PingRequest,
    PodsRequest,
)
from kops.protocol.wire import WireError, read_response, write_message

logger = logging.getLogger(__name__)


class DaemonClientError(Exception):
    """The daemon could not be reached or broke off the exchange."""


class DaemonClient:
    """One connection to kopsd, reused for every request sent through it.

    Usage::

        with DaemonClient("/tmp/kopsd.sock") as client:
            client.ping()
    """

    def __init__(
        self,
        socket_path: str | Path = DEFAULT_SOCKET_PATH,
        timeout: float | None = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self._sock: socket.socket | None = None
        self._rfile: Any = None
        self._wfile: Any = None

    def __enter__(self) -> DaemonClient:
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def connect(self) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
        except OSError as exc:
            sock.close()
            raise DaemonClientError(
                f"cannot connect to kopsd at {self.socket_path}: {exc} "
                "(is the daemon running?)"
            ) from exc
        self._sock = sock
        self._rfile = sock.makefile("rb")
        self._wfile = sock.makefile("wb")

    def close(self) -> None:
        for f in (self._rfile, self._wfile):
            if f is not None:
                with contextlib.suppress(OSError):
                    f.close()
        if self._sock is not None:
            self._sock.close()
        self._sock = self._rfile = self._wfile = None

    def request(self, message: Any) -> Any:
        """Send one request and wait for its response."""
        self.connect()
        try:
            write_message(self._wfile, message)
            response = read_response(self._rfile)
        except (WireError, OSError) as exc:
            self.close()
            raise DaemonClientError(f"kopsd connection failed: {exc}") from exc
        if response is None:
            self.close()
            raise DaemonClientError("kopsd closed the connection before replying")
        logger.debug("Received %s response", response.type)
        return response

    # --- Convenience wrappers ---

    def ping(self) -> Any:
        return self.request(PingRequest())

    def pods(
        self,
        cluster: str | None = None,
        namespace: str | None = None,
        failed_only: bool = False,
    ) -> Any:
        return self.request(
            PodsRequest(cluster=cluster, namespace=namespace, failed_only=failed_only)
        )

    def env(
        self,
        namespace: str,
        pod: str,
        *,
        cluster: str | None = None,
        container: str | None = None,
        filter_regex: str | None = None,
    ) -> Any:
        return self.request(
            EnvRequest(
                cluster=cluster,
                namespace=namespace,
                pod=pod,
                container=container,
                filter_regex=filter_regex,
            )
        )

