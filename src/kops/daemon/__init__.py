"""kopsd: shared state, request dispatch and the socket server."""

from kops.daemon.attach import AttachError, ClusterAttacher
from kops.daemon.client import DaemonClient, DaemonClientError
from kops.daemon.handler import Handler
from kops.daemon.registry import DaemonRegistry, RegistryError
from kops.daemon.server import (
    DaemonServer,
    DaemonStartupError,
    build_handler,
    create_server,
    run_server,
)

__all__ = [
    "AttachError",
    "ClusterAttacher",
    "DaemonClient",
    "DaemonClientError",
    "DaemonRegistry",
    "DaemonServer",
    "DaemonStartupError",
    "Handler",
    "RegistryError",
    "build_handler",
    "create_server",
    "run_server",
]
