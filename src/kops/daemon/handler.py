"""Request dispatch for kopsd.

``Handler.handle`` maps one request to one response. Domain failures come
back as ``ErrorResponse`` so the connection stays usable; nothing here
raises to the connection loop.
"""

from __future__ import annotations

import functools
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

import kops
from kops.daemon.attach import AttachError, ClusterAttacher
from kops.daemon.registry import DaemonRegistry, RegistryError
from kops.models import (
    EnvEntry,
    EnvRequest,
    EnvVarsResponse,
    ErrorResponse,
    LoginOk,
    LoginRequest,
    PingRequest,
    PodsRequest,
    PodsResponse,
    PodView,
    Pong,
    VersionInfo,
    VersionRequest,
)

logger = logging.getLogger(__name__)


class Handler:
    """Dispatches requests against a ``DaemonRegistry``."""

    def __init__(self, registry: DaemonRegistry, attacher: ClusterAttacher | None = None) -> None:
        self.registry = registry
        self.attacher = attacher or ClusterAttacher(registry)

    def handle(self, request: Any) -> Any:
        try:
            if isinstance(request, PingRequest):
                return Pong()
            if isinstance(request, VersionRequest):
                return self._version()
            if isinstance(request, PodsRequest):
                return self._pods(request)
            if isinstance(request, EnvRequest):
                return self._env(request)
            if isinstance(request, LoginRequest):
                return self._login(request)
            return ErrorResponse(message=f"unsupported request: {type(request).__name__}")
        except RegistryError as exc:
            return ErrorResponse(message=str(exc))
        except Exception as exc:
            logger.exception("Unhandled error while serving %s", type(request).__name__)
            return ErrorResponse(message=f"internal error: {exc}")

    # --- Version ---

    def _version(self) -> VersionInfo:
        git_sha, build_date = build_info()
        return VersionInfo(
            daemon_version=kops.__version__,
            protocol_version=kops.PROTOCOL_VERSION,
            git_sha=git_sha,
            build_date=build_date,
        )

    # --- Pods ---

    def _pods(self, req: PodsRequest) -> PodsResponse:
        snapshot = self.registry.resolve_cluster(req.cluster).snapshot()
        views: list[PodView] = []
        for pod in snapshot.pods.values():
            view = PodView.from_pod(snapshot.cluster, pod)
            if view is None:
                continue
            if req.namespace and view.namespace != req.namespace:
                continue
            if req.failed_only and not view.failed:
                continue
            views.append(view)
        views.sort(key=lambda v: (v.namespace, v.name))
        logger.debug(
            "Serving %d pods from %s (revision %d)",
            len(views), snapshot.cluster, snapshot.revision,
        )
        return PodsResponse(pods=views)

    # --- Env ---

    def _env(self, req: EnvRequest) -> EnvVarsResponse | ErrorResponse:
        snapshot = self.registry.resolve_cluster(req.cluster).snapshot()
        pod = snapshot.get(req.namespace, req.pod)
        if pod is None:
            return ErrorResponse(message=f"pod {req.namespace}/{req.pod} not found")
        if pod.spec is None:
            return ErrorResponse(message="pod has no spec")

        entries: list[EnvEntry] = []
        for container in pod.spec.containers or []:
            for var in container.env or []:
                entries.append(EnvEntry(name=var.name, value=var.value))
        entries.sort(key=lambda e: (e.name, e.value is not None, e.value or ""))
        return EnvVarsResponse(vars=entries)

    # --- Login ---

    def _login(self, req: LoginRequest) -> LoginOk | ErrorResponse:
        session = req.to_session()
        self.registry.store_session(session)

        cluster = self.registry.default_cluster
        if not cluster:
            return ErrorResponse(
                message=(
                    f"session stored for profile '{req.name}', but no cluster to attach: "
                    "no default cluster configured"
                )
            )
        try:
            self.attacher.attach(cluster, req.name)
        except AttachError as exc:
            logger.warning("Attaching cluster %s for profile %s failed: %s", cluster, req.name, exc)
            return ErrorResponse(
                message=(
                    f"session stored for profile '{req.name}', but attaching cluster "
                    f"'{cluster}' failed: {exc}"
                )
            )
        return LoginOk()


@functools.lru_cache(maxsize=1)
def build_info() -> tuple[str | None, str | None]:
    """Short git sha and commit date of the running source tree, if known.

    ``$KOPS_GIT_SHA`` and ``$KOPS_BUILD_DATE`` take precedence; otherwise we
    ask git about the checkout the package was imported from.
    """
    sha = os.environ.get("KOPS_GIT_SHA") or _git("rev-parse", "--short=6", "HEAD")
    date = os.environ.get("KOPS_BUILD_DATE") or _git(
        "show", "-s", "--format=%cd", "--date=short", "HEAD",
    )
    return sha, date


def _git(*args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=Path(kops.__file__).parent,
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
