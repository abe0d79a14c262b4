"""Core data models for kops.

Defines the schemas for:
- Wire messages exchanged between ``kopsctl`` and ``kopsd`` (requests and
  responses, each tagged with a ``type`` discriminator)
- Pod projections served from the in-memory cluster mirror
- Federated cloud sessions obtained through SSO device login
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# --- Pod projections ---


class PodView(BaseModel):
    """Read-only projection of a single pod, derived from a mirror snapshot."""

    model_config = ConfigDict(frozen=True)

    cluster: str
    namespace: str
    name: str
    phase: str | None = None
    reason: str | None = None
    message: str | None = None
    ready: bool = False
    restart_count: int = 0

    @classmethod
    def from_pod(cls, cluster: str, pod: Any) -> PodView | None:
        """Project a ``V1Pod`` into a view. Returns None for unnamed pods.

        Reason and message come from the last container status that has a
        waiting or terminated block; a terminated block overrides a waiting
        block on the same container.
        """
        meta = pod.metadata
        name = meta.name if meta is not None else None
        if not name:
            return None
        namespace = meta.namespace or "default"

        status = pod.status
        phase = status.phase if status is not None else None
        ready = False
        restarts = 0
        reason: str | None = None
        message: str | None = None

        if status is not None:
            ready = any(
                c.type == "Ready" and c.status == "True"
                for c in status.conditions or []
            )
            for cs in status.container_statuses or []:
                restarts += cs.restart_count or 0
                state = cs.state
                if state is None:
                    continue
                if state.waiting is not None:
                    reason = state.waiting.reason
                    message = state.waiting.message
                if state.terminated is not None:
                    reason = state.terminated.reason
                    message = state.terminated.message

        return cls(
            cluster=cluster,
            namespace=namespace,
            name=name,
            phase=phase,
            reason=reason,
            message=message,
            ready=ready,
            restart_count=restarts,
        )

    @property
    def failed(self) -> bool:
        return self.phase == "Failed" or self.reason == "CrashLoopBackOff"


class EnvEntry(BaseModel):
    """A declared container environment variable (value absent for valueFrom)."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: str | None = None


# --- Cloud session ---


class CloudSession(BaseModel):
    """Federated AWS credentials stored under an operator-chosen profile.

    ``expires_at`` is advisory: the daemon never refreshes or enforces it.
    """

    model_config = ConfigDict(frozen=True)

    profile: str
    region: str | None = None
    account_id: str
    role_name: str
    access_key_id: str
    secret_access_key: str = Field(repr=False)
    session_token: str = Field(repr=False)
    expires_at: datetime

    @property
    def expires_at_epoch_ms(self) -> int:
        return int(self.expires_at.timestamp() * 1000)


# --- Requests ---


class PingRequest(BaseModel):
    type: Literal["ping"] = "ping"


class VersionRequest(BaseModel):
    type: Literal["version"] = "version"


class PodsRequest(BaseModel):
    type: Literal["pods"] = "pods"
    cluster: str | None = None
    namespace: str | None = None
    failed_only: bool = False


class EnvRequest(BaseModel):
    """Environment lookup for one pod.

    ``container`` and ``filter_regex`` travel on the wire but the daemon
    returns the variables of every container, unfiltered.
    """

    type: Literal["env"] = "env"
    cluster: str | None = None
    namespace: str
    pod: str
    container: str | None = None
    filter_regex: str | None = None


class LoginRequest(BaseModel):
    """Hands SSO-derived credentials to the daemon under profile ``name``."""

    type: Literal["login"] = "login"
    name: str
    region: str | None = None
    account_id: str
    role_name: str
    access_key_id: str
    secret_access_key: str = Field(repr=False)
    session_token: str = Field(repr=False)
    expires_at_epoch_ms: int

    @classmethod
    def from_session(cls, session: CloudSession) -> LoginRequest:
        return cls(
            name=session.profile,
            region=session.region,
            account_id=session.account_id,
            role_name=session.role_name,
            access_key_id=session.access_key_id,
            secret_access_key=session.secret_access_key,
            session_token=session.session_token,
            expires_at_epoch_ms=session.expires_at_epoch_ms,
        )

    def to_session(self) -> CloudSession:
        return CloudSession(
            profile=self.name,
            region=self.region,
            account_id=self.account_id,
            role_name=self.role_name,
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            session_token=self.session_token,
            expires_at=datetime.fromtimestamp(self.expires_at_epoch_ms / 1000, tz=UTC),
        )


Request = Annotated[
    PingRequest | VersionRequest | PodsRequest | EnvRequest | LoginRequest,
    Field(discriminator="type"),
]


# --- Responses ---


class Pong(BaseModel):
    type: Literal["pong"] = "pong"


class VersionInfo(BaseModel):
    type: Literal["version"] = "version"
    daemon_version: str
    protocol_version: str
    git_sha: str | None = None
    build_date: str | None = None


class PodsResponse(BaseModel):
    type: Literal["pods"] = "pods"
    pods: list[PodView] = Field(default_factory=list)


class EnvVarsResponse(BaseModel):
    type: Literal["env_vars"] = "env_vars"
    vars: list[EnvEntry] = Field(default_factory=list)


class LoginOk(BaseModel):
    type: Literal["login_ok"] = "login_ok"


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    message: str


Response = Annotated[
    Pong | VersionInfo | PodsResponse | EnvVarsResponse | LoginOk | ErrorResponse,
    Field(discriminator="type"),
]

REQUEST_ADAPTER: TypeAdapter[Any] = TypeAdapter(Request)
RESPONSE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Response)
