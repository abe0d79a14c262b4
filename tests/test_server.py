"""Tests for the kopsd socket server and client over a real Unix socket."""

from __future__ import annotations

import os
import socket
import stat
import struct
import tempfile
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from kops.daemon.client import DaemonClient, DaemonClientError
from kops.daemon.handler import Handler
from kops.daemon.registry import DaemonRegistry
from kops.daemon.server import ConnectionHandler, DaemonServer, DaemonStartupError, create_server
from kops.kube.reflector import ClusterMirror
from kops.models import ErrorResponse, PodsResponse, Pong

# --- Fixtures ---


@pytest.fixture()
def sock_dir() -> Iterator[Path]:
    # AF_UNIX paths are capped near 108 bytes; pytest's tmp_path can exceed that.
    with tempfile.TemporaryDirectory(prefix="kops-") as d:
        yield Path(d)


@pytest.fixture()
def running_server(sock_dir: Path, pod_factory) -> Iterator[DaemonServer]:
    registry = DaemonRegistry(default_cluster="prod")
    mirror = ClusterMirror("prod")
    mirror.replace([pod_factory("api-0", "web"), pod_factory("worker", "jobs")], "1")
    registry.attach_cluster("prod", mirror)

    server = create_server(sock_dir / "kopsd.sock", Handler(registry))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.request_stop()
    thread.join(5)
    server.server_close()


def _raw_connect(path: Path) -> socket.socket:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(5)
    s.connect(str(path))
    return s


# --- Startup ---


class TestStartup:
    def test_socket_mode_is_0660(self, running_server):
        mode = stat.S_IMODE(os.stat(running_server.socket_path).st_mode)
        assert mode == 0o660

    def test_stale_socket_file_replaced(self, sock_dir):
        path = sock_dir / "kopsd.sock"
        path.write_text("stale", encoding="utf-8")
        server = create_server(path, Handler(DaemonRegistry()))
        try:
            assert stat.S_ISSOCK(os.stat(path).st_mode)
        finally:
            server.server_close()

    def test_unusable_path_is_startup_error(self, sock_dir):
        blocker = sock_dir / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        with pytest.raises(DaemonStartupError):
            create_server(blocker / "kopsd.sock", Handler(DaemonRegistry()))

    def test_close_removes_socket(self, sock_dir):
        path = sock_dir / "kopsd.sock"
        server = create_server(path, Handler(DaemonRegistry()))
        server.server_close()
        assert not path.exists()


# --- Request cycle ---


class TestRequestCycle:
    def test_many_requests_on_one_connection(self, running_server):
        with DaemonClient(running_server.socket_path, timeout=5) as client:
            assert client.ping() == Pong()
            pods = client.pods()
            assert isinstance(pods, PodsResponse)
            assert [p.name for p in pods.pods] == ["worker", "api-0"]
            assert client.pods(namespace="web").pods[0].name == "api-0"
            assert client.ping() == Pong()

    def test_domain_error_keeps_connection_open(self, running_server):
        with DaemonClient(running_server.socket_path, timeout=5) as client:
            assert client.pods(cluster="nope") == ErrorResponse(message="cluster not found: nope")
            assert client.env("web", "missing") == ErrorResponse(message="pod web/missing not found")
            assert client.ping() == Pong()

    def test_concurrent_clients(self, running_server):
        errors: list[BaseException] = []

        def worker():
            try:
                with DaemonClient(running_server.socket_path, timeout=5) as client:
                    for _ in range(20):
                        assert client.ping() == Pong()
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []


# --- Wire errors ---


class TestWireErrors:
    def test_garbage_payload_closes_connection(self, running_server):
        s = _raw_connect(running_server.socket_path)
        try:
            s.sendall(struct.pack(">I", 1) + b"\xc1")
            assert s.recv(16) == b""
        finally:
            s.close()
        with DaemonClient(running_server.socket_path, timeout=5) as client:
            assert client.ping() == Pong()

    def test_oversized_prefix_closes_connection(self, running_server):
        s = _raw_connect(running_server.socket_path)
        try:
            s.sendall(b"\xff\xff\xff\xff")
            assert s.recv(16) == b""
        finally:
            s.close()

    def test_truncated_frame_does_not_affect_others(self, running_server):
        s = _raw_connect(running_server.socket_path)
        s.sendall(struct.pack(">I", 50) + b"abc")
        s.close()
        with DaemonClient(running_server.socket_path, timeout=5) as client:
            assert client.ping() == Pong()


# --- Client ---


class TestClient:
    def test_connect_refused(self, sock_dir):
        client = DaemonClient(sock_dir / "missing.sock", timeout=1)
        with pytest.raises(DaemonClientError, match="is the daemon running"):
            client.ping()

    def test_daemon_hangs_up_before_reply(self, sock_dir):
        path = sock_dir / "hangup.sock"
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(str(path))
        listener.listen(1)

        def accept_and_close():
            conn, _ = listener.accept()
            conn.recv(64)
            conn.close()

        t = threading.Thread(target=accept_and_close, daemon=True)
        t.start()
        try:
            with pytest.raises(DaemonClientError, match="closed the connection"):
                DaemonClient(path, timeout=5).ping()
        finally:
            t.join(5)
            listener.close()


# --- Shutdown ---


class TestShutdown:
    def test_idle_connection_does_not_block_shutdown(self, sock_dir):
        server = create_server(sock_dir / "kopsd.sock", Handler(DaemonRegistry()))
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()

        client = DaemonClient(server.socket_path, timeout=5)
        assert client.ping() == Pong()

        server.request_stop()
        thread.join(5)
        assert not thread.is_alive()

        closer = threading.Thread(target=server.server_close, daemon=True)
        closer.start()
        closer.join(5)
        assert not closer.is_alive()
        assert not server.socket_path.exists()

        with pytest.raises(DaemonClientError):
            client.ping()
        client.close()

    def test_connection_not_yet_handled_is_still_unblocked(self, sock_dir, monkeypatch):
        entered = threading.Event()
        release = threading.Event()
        original_setup = ConnectionHandler.setup

        def slow_setup(self):
            entered.set()
            release.wait(5)
            original_setup(self)

        monkeypatch.setattr(ConnectionHandler, "setup", slow_setup)
        server = create_server(sock_dir / "kopsd.sock", Handler(DaemonRegistry()))
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()

        s = _raw_connect(server.socket_path)
        try:
            assert entered.wait(5)
            # Drain while the handler thread has not reached its first read.
            server._stop()
            thread.join(5)
            release.set()

            closer = threading.Thread(target=server.server_close, daemon=True)
            closer.start()
            closer.join(5)
            assert not closer.is_alive()
        finally:
            release.set()
            s.close()
