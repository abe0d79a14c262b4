"""Shared fixtures: real kubernetes model objects and a fake AWS session."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from kubernetes.client import (
    V1Container,
    V1ContainerState,
    V1ContainerStateTerminated,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1EnvVar,
    V1EnvVarSource,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1Pod,
    V1PodCondition,
    V1PodSpec,
    V1PodStatus,
)

from kops.models import CloudSession


def make_container_status(
    name: str = "app",
    *,
    restarts: int = 0,
    waiting: str | None = None,
    waiting_message: str | None = None,
    terminated: str | None = None,
    terminated_message: str | None = None,
) -> V1ContainerStatus:
    state = V1ContainerState(
        waiting=(
            V1ContainerStateWaiting(reason=waiting, message=waiting_message)
            if waiting else None
        ),
        terminated=(
            V1ContainerStateTerminated(
                exit_code=1, reason=terminated, message=terminated_message,
            )
            if terminated else None
        ),
    )
    return V1ContainerStatus(
        name=name,
        image="example/app:1",
        image_id="",
        ready=waiting is None and terminated is None,
        restart_count=restarts,
        state=state,
    )


def make_pod(
    name: str,
    namespace: str = "default",
    *,
    phase: str = "Running",
    ready: bool = True,
    container_statuses: list[V1ContainerStatus] | None = None,
    env: dict[str, list[tuple[str, str | None]]] | None = None,
    with_spec: bool = True,
    resource_version: str = "1",
) -> V1Pod:
    """Build a V1Pod. *env* maps container name to ``(name, value)`` pairs;
    a ``None`` value becomes a ``valueFrom`` reference."""
    spec = None
    if with_spec:
        containers = []
        for cname, pairs in (env or {"app": []}).items():
            containers.append(
                V1Container(
                    name=cname,
                    env=[
                        V1EnvVar(name=k, value=v) if v is not None else V1EnvVar(
                            name=k,
                            value_from=V1EnvVarSource(
                                field_ref=V1ObjectFieldSelector(field_path="metadata.name"),
                            ),
                        )
                        for k, v in pairs
                    ] or None,
                )
            )
        spec = V1PodSpec(containers=containers)

    return V1Pod(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            resource_version=resource_version,
        ),
        spec=spec,
        status=V1PodStatus(
            phase=phase,
            conditions=[V1PodCondition(type="Ready", status="True" if ready else "False")],
            container_statuses=container_statuses,
        ),
    )


@pytest.fixture()
def pod_factory() -> Any:
    return make_pod


@pytest.fixture()
def status_factory() -> Any:
    return make_container_status


@pytest.fixture()
def cloud_session() -> CloudSession:
    return CloudSession(
        profile="dev",
        region="us-east-1",
        account_id="123456789012",
        role_name="ReadOnly",
        access_key_id="AKIAEXAMPLEKEY000000",
        secret_access_key="secret/example/key",
        session_token="session-token-example",
        expires_at=datetime.now(tz=UTC) + timedelta(hours=1),
    )
