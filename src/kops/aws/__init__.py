"""AWS collaborators: EKS token derivation and SSO device login."""

from kops.aws.eks import (
    ClusterEndpoint,
    EksError,
    create_cluster_token,
    describe_cluster,
)
from kops.aws.sso import (
    DeviceVerificationInfo,
    SsoLoginConfig,
    SsoLoginError,
    login_device_flow,
)

__all__ = [
    "ClusterEndpoint",
    "DeviceVerificationInfo",
    "EksError",
    "SsoLoginConfig",
    "SsoLoginError",
    "create_cluster_token",
    "describe_cluster",
    "login_device_flow",
]
