"""EKS cluster lookup and bearer token derivation.

A cluster token is a presigned STS ``GetCallerIdentity`` URL carrying the
cluster name in the signed ``x-k8s-aws-id`` header. The API server forwards
the URL to STS to learn who the caller is, so nothing here talks to STS
directly.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.signers import RequestSigner

from kops.models import CloudSession

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_EXPIRATION_SECONDS = 60
CLUSTER_ID_HEADER = "x-k8s-aws-id"
STS_URL_TEMPLATE = (
    "https://sts.{region}.amazonaws.com/"
    "?Action=GetCallerIdentity&Version=2011-06-15"
)
PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


class EksError(Exception):
    """Raised when a cluster cannot be described or a token cannot be signed."""


@dataclass(frozen=True)
class ClusterEndpoint:
    """Where a cluster's API server lives and the CA that signs it."""

    name: str
    endpoint: str
    ca_data: bytes


def boto3_session(session: CloudSession, region: str | None = None) -> boto3.Session:
    """Build a boto3 Session from the stored federated credentials."""
    kwargs: dict[str, Any] = {
        "aws_access_key_id": session.access_key_id,
        "aws_secret_access_key": session.secret_access_key,
        "aws_session_token": session.session_token,
    }
    if region or session.region:
        kwargs["region_name"] = region or session.region
    return boto3.Session(**kwargs)


def describe_cluster(
    session: CloudSession,
    cluster_name: str,
    *,
    region: str | None = None,
    boto_session: Any = None,
) -> ClusterEndpoint:
    """Look up the API endpoint and CA bundle for *cluster_name*."""
    _require_credentials(session)
    region = _require_region(session, region)
    boto_session = boto_session or boto3_session(session, region)

    try:
        resp = boto_session.client("eks", region_name=region).describe_cluster(
            name=cluster_name,
        )
    except (BotoCoreError, ClientError) as exc:
        raise EksError(f"failed to describe cluster '{cluster_name}': {exc}") from exc

    cluster = resp.get("cluster")
    if not cluster:
        raise EksError(f"unable to find cluster '{cluster_name}'")
    endpoint = cluster.get("endpoint")
    if not endpoint:
        raise EksError(f"cluster '{cluster_name}' has no endpoint")
    ca_b64 = (cluster.get("certificateAuthority") or {}).get("data")
    if not ca_b64:
        raise EksError(
            f"cluster '{cluster_name}' has no certificateAuthority.data"
        )

    logger.debug("Described cluster %s at %s", cluster_name, endpoint)
    return ClusterEndpoint(
        name=cluster_name,
        endpoint=endpoint,
        ca_data=decode_ca_bundle(ca_b64),
    )


def decode_ca_bundle(data: str) -> bytes:
    """Decode the base64 CA bundle returned by DescribeCluster into PEM bytes."""
    try:
        pem = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EksError(f"certificate authority data is not valid base64: {exc}") from exc
    if PEM_MARKER not in pem:
        raise EksError("certificate authority data is not a PEM certificate")
    return pem


def create_cluster_token(
    session: CloudSession,
    cluster_name: str,
    *,
    region: str | None = None,
    boto_session: Any = None,
) -> str:
    """Sign a short-lived bearer token for *cluster_name*.

    The presigned URL is valid for ``TOKEN_EXPIRATION_SECONDS``; the API
    server keeps accepting the derived token for about 15 minutes.
    """
    _require_credentials(session)
    region = _require_region(session, region)
    boto_session = boto_session or boto3_session(session, region)

    credentials = boto_session.get_credentials()
    if credentials is None:
        raise EksError("no AWS credentials available to sign the cluster token")

    try:
        sts = boto_session.client("sts", region_name=region)
        signer = RequestSigner(
            sts.meta.service_model.service_id,
            region,
            "sts",
            "v4",
            credentials,
            boto_session.events,
        )
        url = signer.generate_presigned_url(
            {
                "method": "GET",
                "url": STS_URL_TEMPLATE.format(region=region),
                "body": {},
                "headers": {CLUSTER_ID_HEADER: cluster_name},
                "context": {},
            },
            region_name=region,
            expires_in=TOKEN_EXPIRATION_SECONDS,
            operation_name="",
        )
    except (BotoCoreError, ClientError, ValueError) as exc:
        raise EksError(f"failed to sign token for cluster '{cluster_name}': {exc}") from exc

    return encode_token(url)


def encode_token(presigned_url: str) -> str:
    """``k8s-aws-v1.`` + unpadded URL-safe base64 of the presigned URL."""
    encoded = base64.urlsafe_b64encode(presigned_url.encode("utf-8")).decode("ascii")
    return TOKEN_PREFIX + encoded.rstrip("=")


def _require_credentials(session: CloudSession) -> None:
    if not session.access_key_id or not session.secret_access_key:
        raise EksError(
            f"no AWS credentials in session for profile '{session.profile}'"
        )


def _require_region(session: CloudSession, region: str | None) -> str:
    region = region or session.region
    if not region:
        raise EksError(f"no AWS region for profile '{session.profile}'")
    return region
