"""AWS SSO device-authorization login.

Runs the OAuth device flow against SSO OIDC and exchanges the resulting
access token for role credentials::

    RegisterClient -> StartDeviceAuthorization -> CreateToken (poll)
        -> GetRoleCredentials

The human half (opening the verification URL and typing the user code)
happens through the ``on_verification`` callback, so this module never
touches a terminal or a browser.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kops.models import CloudSession

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
SLOW_DOWN_STEP_SECONDS = 5


class SsoLoginError(Exception):
    """Raised when any step of the device login fails."""


@dataclass(frozen=True)
class SsoLoginConfig:
    """What to log in to and which role to assume."""

    profile: str
    region: str
    start_url: str
    account_id: str
    role_name: str
    client_name: str = "kops"


@dataclass(frozen=True)
class DeviceVerificationInfo:
    """What the operator needs to approve the login in a browser."""

    user_code: str
    verification_uri: str
    verification_uri_complete: str | None
    expires_in: int

    @property
    def url(self) -> str:
        return self.verification_uri_complete or self.verification_uri


def login_device_flow(
    config: SsoLoginConfig,
    on_verification: Callable[[DeviceVerificationInfo], None],
    *,
    session: Any = None,
    _sleep: Callable[[float], None] = time.sleep,
) -> CloudSession:
    """Run the full device flow and return credentials for the role.

    Nothing is returned unless every step succeeds.
    """
    session = session or boto3.Session(region_name=config.region)
    oidc = session.client("sso-oidc", region_name=config.region)
    sso = session.client("sso", region_name=config.region)

    client_id, client_secret = _register_client(oidc, config.client_name)
    auth = _start_device_authorization(oidc, client_id, client_secret, config.start_url)

    on_verification(
        DeviceVerificationInfo(
            user_code=auth["userCode"],
            verification_uri=auth["verificationUri"],
            verification_uri_complete=auth.get("verificationUriComplete"),
            expires_in=auth["expiresIn"],
        )
    )

    access_token = _poll_for_token(
        oidc,
        client_id=client_id,
        client_secret=client_secret,
        device_code=auth["deviceCode"],
        interval=auth["interval"],
        expires_in=auth["expiresIn"],
        sleep=_sleep,
    )
    return _get_role_credentials(sso, access_token, config)


def _register_client(oidc: Any, client_name: str) -> tuple[str, str]:
    try:
        resp = oidc.register_client(clientName=client_name, clientType="public")
    except (BotoCoreError, ClientError) as exc:
        raise SsoLoginError(f"failed to register OIDC client: {exc}") from exc
    client_id = resp.get("clientId")
    client_secret = resp.get("clientSecret")
    if not client_id or not client_secret:
        raise SsoLoginError("OIDC client registration returned no client credentials")
    return client_id, client_secret


def _start_device_authorization(
    oidc: Any, client_id: str, client_secret: str, start_url: str,
) -> dict[str, Any]:
    try:
        resp = oidc.start_device_authorization(
            clientId=client_id,
            clientSecret=client_secret,
            startUrl=start_url,
        )
    except (BotoCoreError, ClientError) as exc:
        raise SsoLoginError(f"failed to start device authorization: {exc}") from exc

    for key in ("deviceCode", "userCode", "verificationUri"):
        if not resp.get(key):
            raise SsoLoginError(f"device authorization response has no {key}")

    interval = resp.get("interval") or 0
    if interval <= 0:
        interval = 1
    return {
        "deviceCode": resp["deviceCode"],
        "userCode": resp["userCode"],
        "verificationUri": resp["verificationUri"],
        "verificationUriComplete": resp.get("verificationUriComplete"),
        "interval": interval,
        "expiresIn": resp.get("expiresIn") or 0,
    }


def _poll_for_token(
    oidc: Any,
    *,
    client_id: str,
    client_secret: str,
    device_code: str,
    interval: int,
    expires_in: int,
    sleep: Callable[[float], None],
) -> str:
    """Poll CreateToken until the operator approves or the attempts run out.

    The attempt bound is fixed up front from the initial interval; a
    SlowDown stretches the wait but does not shrink the bound.
    """
    max_attempts = math.ceil(expires_in / interval) + 1
    logger.debug("Polling for SSO token: up to %d attempts every %ds", max_attempts, interval)

    for _ in range(max_attempts):
        try:
            resp = oidc.create_token(
                clientId=client_id,
                clientSecret=client_secret,
                grantType=DEVICE_CODE_GRANT,
                deviceCode=device_code,
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code == "AuthorizationPendingException":
                sleep(interval)
                continue
            if code == "SlowDownException":
                interval += SLOW_DOWN_STEP_SECONDS
                logger.debug("SSO asked us to slow down; interval now %ds", interval)
                sleep(interval)
                continue
            if code == "ExpiredTokenException":
                raise SsoLoginError("device code expired before the login was approved") from exc
            raise SsoLoginError(f"failed to create SSO token: {exc}") from exc
        except BotoCoreError as exc:
            raise SsoLoginError(f"failed to create SSO token: {exc}") from exc

        token = resp.get("accessToken")
        if not token:
            raise SsoLoginError("CreateToken returned no access token")
        return token

    raise SsoLoginError("did not obtain access token before timeout")


def _get_role_credentials(sso: Any, access_token: str, config: SsoLoginConfig) -> CloudSession:
    try:
        resp = sso.get_role_credentials(
            accessToken=access_token,
            accountId=config.account_id,
            roleName=config.role_name,
        )
    except (BotoCoreError, ClientError) as exc:
        raise SsoLoginError(f"failed to get role credentials: {exc}") from exc

    creds = resp.get("roleCredentials") or {}
    for key in ("accessKeyId", "secretAccessKey", "sessionToken", "expiration"):
        if not creds.get(key):
            raise SsoLoginError(f"role credentials response has no {key}")

    logger.info(
        "Obtained credentials for %s/%s (profile %s)",
        config.account_id, config.role_name, config.profile,
    )
    return CloudSession(
        profile=config.profile,
        region=config.region,
        account_id=config.account_id,
        role_name=config.role_name,
        access_key_id=creds["accessKeyId"],
        secret_access_key=creds["secretAccessKey"],
        session_token=creds["sessionToken"],
        expires_at=datetime.fromtimestamp(creds["expiration"] / 1000, tz=UTC),
    )
