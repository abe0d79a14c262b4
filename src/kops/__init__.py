"""kops: query live EKS pod state through a long-running local daemon."""

__version__ = "0.3.0"

PROTOCOL_VERSION = "1"

from kops.config import KopsConfig, find_config, load_config  # noqa: E402
from kops.models import (  # noqa: E402
    CloudSession,
    EnvEntry,
    PodView,
    Request,
    Response,
    VersionInfo,
)

__all__ = [
    "CloudSession",
    "EnvEntry",
    "KopsConfig",
    "PROTOCOL_VERSION",
    "PodView",
    "Request",
    "Response",
    "VersionInfo",
    "find_config",
    "load_config",
    "__version__",
]
