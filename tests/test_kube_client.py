"""Tests for Kubernetes API client construction."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

from kubernetes import client

from kops.aws.eks import ClusterEndpoint
from kops.kube.client import ClusterClientFactory, build_api_client

ENDPOINT = ClusterEndpoint(
    name="prod",
    endpoint="https://ABC.gr7.us-east-1.eks.amazonaws.com",
    ca_data=b"-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n",
)


class TestBuildApiClient:
    def test_bearer_token_and_ca(self, tmp_path: Path):
        ca = tmp_path / "ca.crt"
        ca.write_bytes(ENDPOINT.ca_data)
        api_client = build_api_client(ENDPOINT.endpoint, "k8s-aws-v1.abc", str(ca))
        cfg = api_client.configuration
        assert cfg.host == ENDPOINT.endpoint
        assert cfg.api_key["authorization"] == "k8s-aws-v1.abc"
        assert cfg.api_key_prefix["authorization"] == "Bearer"
        assert cfg.ssl_ca_cert == str(ca)
        assert cfg.verify_ssl is True


class TestClusterClientFactory:
    def test_signs_fresh_token_per_call(self, cloud_session):
        sessions = [cloud_session, cloud_session.model_copy(update={"access_key_id": "AKIANEW"})]
        provider = MagicMock(side_effect=sessions)
        token_fn = MagicMock(side_effect=["tok-1", "tok-2"])
        factory = ClusterClientFactory(ENDPOINT, provider, region="us-east-1", token_fn=token_fn)

        first = factory()
        second = factory()

        assert isinstance(first, client.CoreV1Api)
        assert first.api_client.configuration.api_key["authorization"] == "tok-1"
        assert second.api_client.configuration.api_key["authorization"] == "tok-2"
        token_fn.assert_any_call(sessions[1], "prod", region="us-east-1")
        assert factory.cluster == "prod"

    def test_ca_written_once(self, cloud_session):
        factory = ClusterClientFactory(
            ENDPOINT, lambda: cloud_session, token_fn=MagicMock(return_value="t"),
        )
        a = factory().api_client.configuration.ssl_ca_cert
        b = factory().api_client.configuration.ssl_ca_cert
        assert a == b
        assert Path(a).read_bytes() == ENDPOINT.ca_data
