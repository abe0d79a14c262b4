"""Per-cluster pod mirror kept current by a list-then-watch loop.

The reflector is the only writer of its ``ClusterMirror``. Request handlers
read through ``snapshot()``, which copies the pod map under a lock held
only for the copy, so a reader never sees half an event and never waits on
network I/O.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from kubernetes import watch
from kubernetes.client.exceptions import ApiException
from tenacity import RetryCallState, Retrying, wait_exponential_jitter

from kops.kube.client import REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 290
MAX_BACKOFF_SECONDS = 30.0

PodKey = tuple[str, str]


def pod_key(pod: Any) -> PodKey | None:
    """``(namespace, name)`` for a pod, or None if it has no name."""
    meta = getattr(pod, "metadata", None)
    if meta is None or not meta.name:
        return None
    return (meta.namespace or "default", meta.name)


@dataclass(frozen=True)
class MirrorSnapshot:
    """Point-in-time view of one cluster's pods."""

    cluster: str
    pods: Mapping[PodKey, Any]
    revision: int
    resource_version: str | None

    def get(self, namespace: str, name: str) -> Any | None:
        return self.pods.get((namespace, name))

    def __len__(self) -> int:
        return len(self.pods)


class ClusterMirror:
    """In-memory copy of every pod in a cluster, keyed by namespace and name."""

    def __init__(self, cluster: str) -> None:
        self.cluster = cluster
        self._lock = threading.Lock()
        self._pods: dict[PodKey, Any] = {}
        self._revision = 0
        self._resource_version: str | None = None

    @property
    def resource_version(self) -> str | None:
        with self._lock:
            return self._resource_version

    def replace(self, pods: Iterable[Any], resource_version: str | None) -> None:
        """Swap in a complete listing."""
        fresh: dict[PodKey, Any] = {}
        for pod in pods:
            key = pod_key(pod)
            if key is not None:
                fresh[key] = pod
        with self._lock:
            self._pods = fresh
            self._revision += 1
            self._resource_version = resource_version

    def apply(self, event_type: str, pod: Any) -> bool:
        """Apply one watch event. Returns False if the event was ignored."""
        key = pod_key(pod)
        if key is None:
            return False
        rv = pod.metadata.resource_version
        with self._lock:
            if event_type in ("ADDED", "MODIFIED"):
                self._pods[key] = pod
            elif event_type == "DELETED":
                self._pods.pop(key, None)
            else:
                return False
            self._revision += 1
            if rv:
                self._resource_version = rv
        return True

    def bookmark(self, resource_version: str | None) -> None:
        if not resource_version:
            return
        with self._lock:
            self._resource_version = resource_version

    def snapshot(self) -> MirrorSnapshot:
        with self._lock:
            pods = dict(self._pods)
            revision = self._revision
            rv = self._resource_version
        return MirrorSnapshot(
            cluster=self.cluster,
            pods=MappingProxyType(pods),
            revision=revision,
            resource_version=rv,
        )


class Reflector:
    """Keeps a ``ClusterMirror`` in sync with the cluster's pods.

    *client_factory* returns a ``CoreV1Api``; it is called for the initial
    listing and again for every later watch stream, so each stream carries a
    freshly signed bearer token.
    """

    def __init__(
        self,
        cluster: str,
        client_factory: Callable[[], Any],
        mirror: ClusterMirror | None = None,
        *,
        watch_timeout: int = WATCH_TIMEOUT_SECONDS,
        request_timeout: tuple[int, int] = REQUEST_TIMEOUT,
        initial_backoff: float = 1.0,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.cluster = cluster
        self._client_factory = client_factory
        self._mirror = mirror or ClusterMirror(cluster)
        self._watch_timeout = watch_timeout
        self._request_timeout = request_timeout
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._watch_factory = watch_factory

        self._api: Any = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._watch_lock = threading.Lock()
        self._active_watch: Any = None

    @property
    def mirror(self) -> ClusterMirror:
        return self._mirror

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def prime(self) -> None:
        """Initial listing. Raises whatever the API client raises."""
        self._api = self._client_factory()
        self._relist(self._api)

    def start(self) -> threading.Thread:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self.run_forever,
                name=f"reflector-{self.cluster}",
                daemon=True,
            )
            self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        """Ask the loop to exit and interrupt any open watch."""
        self._stop_event.set()
        with self._watch_lock:
            active = self._active_watch
        if active is not None:
            active.stop()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout)

    def run_forever(self) -> None:
        logger.info("Starting pod reflector for cluster %s", self.cluster)
        resource_version = self._mirror.resource_version
        if self._api is None:
            resource_version = None

        while not self._stop_event.is_set():
            # A fresh Retrying per stream so the backoff restarts after a healthy watch.
            retrying = Retrying(
                wait=wait_exponential_jitter(
                    initial=self._initial_backoff,
                    max=self._max_backoff,
                    jitter=self._initial_backoff,
                ),
                stop=self._stop_requested,
                sleep=self._stop_event.wait,
                before_sleep=self._log_failure,
                reraise=True,
            )
            try:
                for attempt in retrying:
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            resource_version = None
                        resource_version = self._sync_once(resource_version)
            except Exception:
                logger.debug(
                    "Pod watch for cluster %s ended during stop", self.cluster, exc_info=True,
                )

        logger.info("Pod reflector for cluster %s stopped", self.cluster)

    def _sync_once(self, resource_version: str | None) -> str | None:
        """Run one watch stream, listing first when *resource_version* is None.

        Every stream gets an API client from the factory, so its bearer token
        is freshly signed. Returns None when the server reports the resource
        version as expired.
        """
        if self._stop_event.is_set():
            return resource_version
        api, self._api = self._api, None
        if api is None:
            api = self._client_factory()
        if resource_version is None:
            resource_version = self._relist(api)
        try:
            return self._watch_once(api, resource_version)
        except ApiException as exc:
            if exc.status != 410:
                raise
            logger.info(
                "Resource version %s expired for cluster %s; re-listing",
                resource_version, self.cluster,
            )
            return None

    def _stop_requested(self, retry_state: RetryCallState) -> bool:
        return self._stop_event.is_set()

    def _log_failure(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if isinstance(exc, ApiException):
            logger.warning(
                "Pod watch for cluster %s failed (%s %s); resyncing in %.1fs",
                self.cluster, exc.status, exc.reason, delay,
            )
        else:
            logger.warning(
                "Pod watch for cluster %s failed; resyncing in %.1fs",
                self.cluster, delay, exc_info=exc,
            )

    def _relist(self, api: Any) -> str | None:
        pod_list = api.list_pod_for_all_namespaces(_request_timeout=self._request_timeout)
        rv = pod_list.metadata.resource_version if pod_list.metadata else None
        items = pod_list.items or []
        self._mirror.replace(items, rv)
        logger.info(
            "Listed %d pods in cluster %s at resource version %s",
            len(items), self.cluster, rv,
        )
        return rv

    def _watch_once(self, api: Any, resource_version: str | None) -> str | None:
        """Stream events until the server closes the watch. Returns the last RV."""
        w = self._watch_factory()
        with self._watch_lock:
            self._active_watch = w
        try:
            for event in w.stream(
                api.list_pod_for_all_namespaces,
                resource_version=resource_version,
                timeout_seconds=self._watch_timeout,
                allow_watch_bookmarks=True,
                _request_timeout=self._request_timeout,
            ):
                if self._stop_event.is_set():
                    break
                event_type = event.get("type")
                obj = event.get("object")
                rv = _resource_version(obj)
                if event_type == "BOOKMARK":
                    self._mirror.bookmark(rv)
                else:
                    self._mirror.apply(event_type, obj)
                if rv:
                    resource_version = rv
        finally:
            with self._watch_lock:
                self._active_watch = None
        logger.debug("Watch for cluster %s ended at %s", self.cluster, resource_version)
        return resource_version


def _resource_version(obj: Any) -> str | None:
    meta = getattr(obj, "metadata", None)
    return getattr(meta, "resource_version", None) if meta is not None else None
