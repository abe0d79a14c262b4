"""Bring a cluster under the daemon's watch after a login."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kops.aws.eks import describe_cluster
from kops.config import DEFAULT_REGION, KopsConfig
from kops.daemon.registry import DaemonRegistry
from kops.kube.client import ClusterClientFactory
from kops.kube.reflector import ClusterMirror, Reflector

logger = logging.getLogger(__name__)


class AttachError(Exception):
    """Raised when a cluster cannot be described, listed or registered."""


class ClusterAttacher:
    """describe -> client -> prime -> register -> start watch.

    Every attach binds the cluster to the logging-in profile. An already
    attached cluster keeps its reflector, which signs each new watch stream
    with the latest session of whichever profile is bound at that moment.
    """

    def __init__(
        self,
        registry: DaemonRegistry,
        config: KopsConfig | None = None,
        *,
        describe: Callable[..., Any] = describe_cluster,
        client_factory_cls: Callable[..., Any] = ClusterClientFactory,
        reflector_cls: Callable[..., Reflector] = Reflector,
    ) -> None:
        self._registry = registry
        self._config = config or KopsConfig()
        self._describe = describe
        self._client_factory_cls = client_factory_cls
        self._reflector_cls = reflector_cls

    def region_for(self, cluster: str, session_region: str | None) -> str:
        if session_region:
            return session_region
        cluster_cfg = self._config.cluster(cluster)
        if cluster_cfg is not None and cluster_cfg.region:
            return cluster_cfg.region
        return self._config.sso.region or DEFAULT_REGION

    def attach(self, cluster: str, profile: str) -> ClusterMirror:
        previous = self._registry.bind_profile(cluster, profile)
        existing = self._registry.get_cluster(cluster)
        if existing is not None:
            if previous != profile:
                logger.info(
                    "Cluster %s already attached; now signing with profile %s (was %s)",
                    cluster, profile, previous,
                )
            else:
                logger.info("Cluster %s already attached; keeping its reflector", cluster)
            return existing

        try:
            session = self._registry.get_session(profile)
            region = self.region_for(cluster, session.region)
            endpoint = self._describe(session, cluster, region=region)
            factory = self._client_factory_cls(
                endpoint,
                lambda: self._registry.session_for_cluster(cluster),
                region=region,
            )
            reflector = self._reflector_cls(cluster, factory)
            reflector.prime()
        except Exception as exc:
            raise AttachError(str(exc) or type(exc).__name__) from exc

        if not self._registry.attach_cluster(cluster, reflector.mirror):
            # Another login attached it while we were listing.
            logger.info("Cluster %s was attached concurrently; dropping duplicate", cluster)
            return self._registry.get_cluster(cluster) or reflector.mirror

        reflector.start()
        return reflector.mirror
