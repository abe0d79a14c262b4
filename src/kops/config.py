"""Config file loading and auto-discovery for kops.

Looks for ``kops.yaml`` via ``$KOPS_CONFIG``, then the current directory and
its parents, then ``~/.config/kops/kops.yaml``. Relative paths inside the file
are resolved against the file's location.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "kops.yaml"
CONFIG_ENV_VAR = "KOPS_CONFIG"
DEFAULT_SOCKET_PATH = "/tmp/kopsd.sock"
DEFAULT_REGION = "us-east-1"


@dataclass(frozen=True)
class ClusterConfig:
    """A cluster the daemon may attach."""

    name: str
    region: str | None = None


@dataclass(frozen=True)
class DaemonConfig:
    """Process settings used when kopsd detaches from the terminal."""

    pid_file: str | None = None
    stdout: str | None = None
    stderr: str | None = None


@dataclass(frozen=True)
class SsoConfig:
    """Defaults for ``kopsctl login``."""

    start_url: str | None = None
    region: str | None = None
    account_id: str | None = None
    role_name: str | None = None
    client_name: str = "kops"


@dataclass(frozen=True)
class KopsConfig:
    """Parsed kops configuration."""

    config_path: Path | None = None
    default_cluster: str | None = None
    socket_path: str = DEFAULT_SOCKET_PATH
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    sso: SsoConfig = field(default_factory=SsoConfig)
    clusters: tuple[ClusterConfig, ...] = ()

    @property
    def effective_default_cluster(self) -> str | None:
        """``default_cluster`` if set, else the first configured cluster."""
        if self.default_cluster:
            return self.default_cluster
        if self.clusters:
            return self.clusters[0].name
        return None

    def cluster(self, name: str) -> ClusterConfig | None:
        for c in self.clusters:
            if c.name == name:
                return c
        return None


def user_config_path() -> Path:
    return Path.home() / ".config" / "kops" / CONFIG_FILENAME


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``kops.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> KopsConfig:
    """Load a kops config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. ``$KOPS_CONFIG`` (error if it doesn't exist).
    3. Auto-discover by walking parent directories, then the user config dir.
    4. Return an empty ``KopsConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = os.environ[CONFIG_ENV_VAR]

    if path is not None:
        config_path = Path(path).expanduser().resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()
        if config_path is None and user_config_path().is_file():
            config_path = user_config_path()

    if config_path is None:
        return KopsConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> KopsConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    base = config_path.parent

    def _section(key: str) -> dict[str, Any]:
        val = data.get(key) or {}
        if not isinstance(val, dict):
            msg = f"Expected '{key}' to be a mapping in {config_path}"
            raise ValueError(msg)
        return val

    def _resolve(val: str | None) -> str | None:
        if val is None:
            return None
        return str((base / Path(val).expanduser()).resolve())

    kops = _section("kops")
    daemon = _section("daemon")
    sso = _section("sso")

    clusters_raw = data.get("clusters") or []
    if not isinstance(clusters_raw, list):
        msg = f"Expected 'clusters' to be a list in {config_path}"
        raise ValueError(msg)
    clusters: list[ClusterConfig] = []
    for entry in clusters_raw:
        if not isinstance(entry, dict) or not entry.get("name"):
            msg = f"Every entry in 'clusters' needs a 'name' ({config_path})"
            raise ValueError(msg)
        clusters.append(ClusterConfig(name=str(entry["name"]), region=entry.get("region")))

    return KopsConfig(
        config_path=config_path,
        default_cluster=kops.get("default_cluster"),
        socket_path=_resolve(kops.get("socket_path")) or DEFAULT_SOCKET_PATH,
        daemon=DaemonConfig(
            pid_file=_resolve(daemon.get("pid_file")),
            stdout=_resolve(daemon.get("stdout")),
            stderr=_resolve(daemon.get("stderr")),
        ),
        sso=SsoConfig(
            start_url=sso.get("start_url"),
            region=sso.get("region"),
            account_id=_str_or_none(sso.get("account_id")),
            role_name=sso.get("role_name"),
            client_name=sso.get("client_name", "kops"),
        ),
        clusters=tuple(clusters),
    )


def _str_or_none(val: Any) -> str | None:
    # YAML reads unquoted account ids as integers.
    return None if val is None else str(val)
