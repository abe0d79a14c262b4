"""Kubernetes side of kops: API clients and the per-cluster pod reflector."""

from kops.kube.client import ClusterClientFactory, build_api_client
from kops.kube.reflector import ClusterMirror, MirrorSnapshot, Reflector

__all__ = [
    "ClusterClientFactory",
    "ClusterMirror",
    "MirrorSnapshot",
    "Reflector",
    "build_api_client",
]
