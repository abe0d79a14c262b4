"""Tests for EKS cluster lookup and token signing.

Token signing runs real botocore presigning offline; DescribeCluster is
mocked.
"""

from __future__ import annotations

import base64
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError

from kops.aws.eks import (
    TOKEN_PREFIX,
    ClusterEndpoint,
    EksError,
    boto3_session,
    create_cluster_token,
    decode_ca_bundle,
    describe_cluster,
    encode_token,
)

PEM = b"-----BEGIN CERTIFICATE-----\nMIIBexample\n-----END CERTIFICATE-----\n"
PEM_B64 = base64.b64encode(PEM).decode()

# --- Helpers ---


def _decode_token(token: str) -> str:
    body = token[len(TOKEN_PREFIX):]
    body += "=" * (-len(body) % 4)
    return base64.urlsafe_b64decode(body).decode()


def _boto_with_cluster(cluster: dict | None) -> MagicMock:
    boto = MagicMock()
    boto.client.return_value.describe_cluster.return_value = (
        {"cluster": cluster} if cluster is not None else {}
    )
    return boto


# --- create_cluster_token ---


class TestCreateClusterToken:
    def test_token_shape(self, cloud_session):
        token = create_cluster_token(cloud_session, "prod-eks")
        assert token.startswith("k8s-aws-v1.")
        assert "=" not in token
        assert "+" not in token and "/" not in token

    def test_presigned_url_contents(self, cloud_session):
        url = _decode_token(create_cluster_token(cloud_session, "prod-eks"))
        parsed = urlparse(url)
        assert parsed.scheme == "https"
        assert parsed.netloc == "sts.us-east-1.amazonaws.com"
        query = parse_qs(parsed.query)
        assert query["Action"] == ["GetCallerIdentity"]
        assert query["Version"] == ["2011-06-15"]
        assert query["X-Amz-Expires"] == ["60"]
        assert "x-k8s-aws-id" in query["X-Amz-SignedHeaders"][0]
        assert query["X-Amz-Security-Token"] == ["session-token-example"]
        assert query["X-Amz-Credential"][0].startswith("AKIAEXAMPLEKEY000000/")

    def test_region_override(self, cloud_session):
        url = _decode_token(create_cluster_token(cloud_session, "c", region="eu-west-1"))
        assert urlparse(url).netloc == "sts.eu-west-1.amazonaws.com"

    def test_no_credentials(self, cloud_session):
        empty = cloud_session.model_copy(update={"access_key_id": ""})
        with pytest.raises(EksError, match="no AWS credentials"):
            create_cluster_token(empty, "c")

    def test_no_region(self, cloud_session):
        no_region = cloud_session.model_copy(update={"region": None})
        with pytest.raises(EksError, match="no AWS region"):
            create_cluster_token(no_region, "c")

    def test_encode_token_strips_padding(self):
        token = encode_token("https://a")
        assert token == TOKEN_PREFIX + base64.urlsafe_b64encode(b"https://a").decode().rstrip("=")


# --- describe_cluster ---


class TestDescribeCluster:
    def test_success(self, cloud_session):
        boto = _boto_with_cluster({
            "endpoint": "https://ABC.gr7.us-east-1.eks.amazonaws.com",
            "certificateAuthority": {"data": PEM_B64},
        })
        ep = describe_cluster(cloud_session, "prod-eks", boto_session=boto)
        assert ep == ClusterEndpoint(
            name="prod-eks",
            endpoint="https://ABC.gr7.us-east-1.eks.amazonaws.com",
            ca_data=PEM,
        )
        boto.client.assert_called_once_with("eks", region_name="us-east-1")
        boto.client.return_value.describe_cluster.assert_called_once_with(name="prod-eks")

    def test_missing_cluster(self, cloud_session):
        with pytest.raises(EksError, match="unable to find cluster"):
            describe_cluster(cloud_session, "x", boto_session=_boto_with_cluster(None))

    def test_missing_endpoint(self, cloud_session):
        boto = _boto_with_cluster({"certificateAuthority": {"data": PEM_B64}})
        with pytest.raises(EksError, match="endpoint"):
            describe_cluster(cloud_session, "x", boto_session=boto)

    def test_missing_ca(self, cloud_session):
        boto = _boto_with_cluster({"endpoint": "https://e"})
        with pytest.raises(EksError, match="certificateAuthority.data"):
            describe_cluster(cloud_session, "x", boto_session=boto)

    def test_client_error(self, cloud_session):
        boto = MagicMock()
        boto.client.return_value.describe_cluster.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "No cluster found"}},
            "DescribeCluster",
        )
        with pytest.raises(EksError, match="failed to describe cluster 'x'") as exc_info:
            describe_cluster(cloud_session, "x", boto_session=boto)
        assert isinstance(exc_info.value.__cause__, ClientError)


# --- CA bundle / session ---


class TestCaBundle:
    def test_valid(self):
        assert decode_ca_bundle(PEM_B64) == PEM

    def test_not_base64(self):
        with pytest.raises(EksError, match="base64"):
            decode_ca_bundle("not*base64!")

    def test_not_pem(self):
        with pytest.raises(EksError, match="PEM"):
            decode_ca_bundle(base64.b64encode(b"hello").decode())


class TestBoto3Session:
    def test_carries_credentials_and_region(self, cloud_session):
        session = boto3_session(cloud_session)
        creds = session.get_credentials()
        assert creds.access_key == "AKIAEXAMPLEKEY000000"
        assert creds.token == "session-token-example"
        assert session.region_name == "us-east-1"
