"""Daemon-wide state shared by every connection handler.

Sessions and cluster mirrors sit behind separate locks. Neither lock is
held across network or socket I/O.
"""

from __future__ import annotations

import logging
import threading

from kops.kube.reflector import ClusterMirror
from kops.models import CloudSession

logger = logging.getLogger(__name__)


class RegistryError(LookupError):
    """A lookup the caller asked for cannot be satisfied."""


class NoDefaultClusterError(RegistryError):
    def __init__(self) -> None:
        super().__init__("no cluster given and no default cluster configured")


class ClusterNotFoundError(RegistryError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"cluster not found: {name}")


class SessionNotFoundError(RegistryError):
    def __init__(self, profile: str) -> None:
        self.profile = profile
        super().__init__(f"no session stored for profile '{profile}'")


class DaemonRegistry:
    """Profile sessions and attached cluster mirrors."""

    def __init__(self, default_cluster: str | None = None) -> None:
        self._default_cluster = default_cluster
        self._sessions_lock = threading.Lock()
        self._sessions: dict[str, CloudSession] = {}
        self._clusters_lock = threading.Lock()
        self._clusters: dict[str, ClusterMirror] = {}
        self._cluster_profiles: dict[str, str] = {}

    @property
    def default_cluster(self) -> str | None:
        return self._default_cluster

    # --- Sessions ---

    def store_session(self, session: CloudSession) -> None:
        """Insert or overwrite the session for ``session.profile``."""
        with self._sessions_lock:
            replaced = session.profile in self._sessions
            self._sessions[session.profile] = session
        logger.info(
            "%s session for profile %s (expires %s)",
            "Replaced" if replaced else "Stored",
            session.profile,
            session.expires_at.isoformat(),
        )

    def get_session(self, profile: str) -> CloudSession:
        with self._sessions_lock:
            session = self._sessions.get(profile)
        if session is None:
            raise SessionNotFoundError(profile)
        return session

    def profiles(self) -> list[str]:
        with self._sessions_lock:
            return sorted(self._sessions)

    # --- Clusters ---

    def get_cluster(self, name: str) -> ClusterMirror | None:
        with self._clusters_lock:
            return self._clusters.get(name)

    def attach_cluster(self, name: str, mirror: ClusterMirror) -> bool:
        """Register *mirror* under *name* unless one is already there."""
        with self._clusters_lock:
            if name in self._clusters:
                return False
            self._clusters[name] = mirror
        logger.info("Attached cluster %s", name)
        return True

    def bind_profile(self, cluster: str, profile: str) -> str | None:
        """Make *profile* the one whose session signs for *cluster*.

        Returns the previously bound profile, if any.
        """
        with self._clusters_lock:
            previous = self._cluster_profiles.get(cluster)
            self._cluster_profiles[cluster] = profile
        return previous

    def session_for_cluster(self, cluster: str) -> CloudSession:
        """Latest session of the profile bound to *cluster*."""
        with self._clusters_lock:
            profile = self._cluster_profiles.get(cluster)
        if profile is None:
            raise ClusterNotFoundError(cluster)
        return self.get_session(profile)

    def cluster_names(self) -> list[str]:
        with self._clusters_lock:
            return sorted(self._clusters)

    def resolve_cluster(self, name: str | None) -> ClusterMirror:
        """Mirror for *name*, or for the default cluster when *name* is None."""
        target = name or self._default_cluster
        if not target:
            raise NoDefaultClusterError()
        mirror = self.get_cluster(target)
        if mirror is None:
            raise ClusterNotFoundError(target)
        return mirror
