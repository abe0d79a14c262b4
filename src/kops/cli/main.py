"""kopsctl: command-line client for the kops daemon.

Commands:
    ping        Check that kopsd is answering
    version     Show daemon and protocol versions
    pods        List pods from the daemon's cluster mirror
    env         Show the declared environment of a pod
    login       Run AWS SSO device login and hand the credentials to kopsd
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, NoReturn

import click
import yaml

from kops import __version__
from kops.aws.sso import DeviceVerificationInfo, SsoLoginConfig, SsoLoginError, login_device_flow
from kops.config import DEFAULT_REGION, KopsConfig, load_config
from kops.daemon.client import DaemonClient, DaemonClientError
from kops.log import init_logging
from kops.models import (
    EnvRequest,
    EnvVarsResponse,
    ErrorResponse,
    LoginOk,
    LoginRequest,
    PingRequest,
    PodsRequest,
    PodsResponse,
    PodView,
    Pong,
    VersionInfo,
    VersionRequest,
)


@dataclass
class CliState:
    config: KopsConfig
    socket_path: str


def _fail(message: str) -> NoReturn:
    click.echo(message, err=True)
    sys.exit(1)


def _load_cfg(path: str | None) -> KopsConfig:
    """Explicit --config errors are fatal; auto-discovery never is."""
    if path is not None:
        try:
            return load_config(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            _fail(f"Error loading config: {e}")
    try:
        return load_config()
    except (OSError, ValueError, yaml.YAMLError):
        return KopsConfig()


def _send(state: CliState, request: Any, expected: type) -> Any:
    """Send one request; exit 1 on a daemon error or a broken connection."""
    try:
        with DaemonClient(state.socket_path) as client:
            response = client.request(request)
    except DaemonClientError as e:
        _fail(f"Error: {e}")
    if isinstance(response, ErrorResponse):
        _fail(response.message)
    if not isinstance(response, expected):
        _fail(f"Error: unexpected {response.type!r} response from kopsd")
    return response


def _print_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]
    for row in [headers, *rows]:
        click.echo("  ".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())


# --- Root group ---


@click.group()
@click.version_option(version=__version__, prog_name="kopsctl")
@click.option(
    "--socket", "socket_path", default=None, envvar="KOPS_SOCKET",
    help="Path to the kopsd socket",
)
@click.option(
    "--config", "config_path", default=None,
    help="Path to kops.yaml",
)
@click.option("-v", "--verbose", count=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, socket_path: str | None, config_path: str | None, verbose: int) -> None:
    """kops: query EKS clusters through a local caching daemon."""
    init_logging(verbose)
    cfg = _load_cfg(config_path)
    ctx.obj = CliState(config=cfg, socket_path=socket_path or cfg.socket_path)


# --- ping / version ---


@cli.command()
@click.pass_obj
def ping(state: CliState) -> None:
    """Check that kopsd is answering."""
    _send(state, PingRequest(), Pong)
    click.echo("pong")


@cli.command()
@click.pass_obj
def version(state: CliState) -> None:
    """Show daemon and protocol versions."""
    info: VersionInfo = _send(state, VersionRequest(), VersionInfo)
    click.echo(f"kopsctl:  {__version__}")
    click.echo(f"kopsd:    {info.daemon_version}")
    click.echo(f"protocol: {info.protocol_version}")
    if info.git_sha:
        click.echo(f"git sha:  {info.git_sha}")
    if info.build_date:
        click.echo(f"built:    {info.build_date}")


# --- pods ---


@cli.command()
@click.option("--cluster", "-c", default=None, help="Cluster (defaults to the daemon's default)")
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option("--failed", is_flag=True, help="Only failed or crash-looping pods")
@click.pass_obj
def pods(state: CliState, cluster: str | None, namespace: str | None, failed: bool) -> None:
    """List pods from the daemon's cluster mirror."""
    resp: PodsResponse = _send(
        state,
        PodsRequest(cluster=cluster, namespace=namespace, failed_only=failed),
        PodsResponse,
    )
    if not resp.pods:
        click.echo("No pods found.")
        return

    headers = ["CLUSTER", "NAMESPACE", "NAME", "READY", "RESTARTS"]
    show_message = failed and any(p.reason or p.message for p in resp.pods)
    if show_message:
        headers.append("MESSAGE")
    rows = []
    for p in resp.pods:
        row = [p.cluster, p.namespace, p.name, "yes" if p.ready else "no", str(p.restart_count)]
        if show_message:
            row.append(_describe_failure(p))
        rows.append(row)
    _print_table(headers, rows)


def _describe_failure(pod: PodView) -> str:
    parts = [part for part in (pod.reason, pod.message) if part]
    return ": ".join(parts).replace("\n", " ")


# --- env ---


@cli.command()
@click.option("--cluster", "-c", default=None, help="Cluster (defaults to the daemon's default)")
@click.option("--namespace", "-n", default=None, help="Pod namespace")
@click.option("--pod", "-p", default=None, help="Pod name (prompts when omitted)")
@click.option("--container", default=None, help="Container name")
@click.option("--filter", "filter_regex", default=None, help="Regex on variable names")
@click.pass_obj
def env(
    state: CliState,
    cluster: str | None,
    namespace: str | None,
    pod: str | None,
    container: str | None,
    filter_regex: str | None,
) -> None:
    """Show the declared environment variables of a pod."""
    if pod is None:
        namespace, pod = _choose_pod(state, cluster, namespace)

    resp: EnvVarsResponse = _send(
        state,
        EnvRequest(
            cluster=cluster,
            namespace=namespace or "default",
            pod=pod,
            container=container,
            filter_regex=filter_regex,
        ),
        EnvVarsResponse,
    )
    if not resp.vars:
        click.echo("No environment variables declared.")
        return
    for var in resp.vars:
        click.echo(f"{var.name} = {var.value if var.value is not None else '<none>'}")


def _choose_pod(state: CliState, cluster: str | None, namespace: str | None) -> tuple[str, str]:
    resp: PodsResponse = _send(state, PodsRequest(cluster=cluster, namespace=namespace), PodsResponse)
    if not resp.pods:
        _fail("No pods to choose from.")
    for i, p in enumerate(resp.pods, start=1):
        click.echo(f"{i:>3}) {p.namespace}/{p.name}")
    choice = click.prompt("Select a pod", type=click.IntRange(1, len(resp.pods)))
    selected = resp.pods[choice - 1]
    return selected.namespace, selected.name


# --- login ---


@cli.command()
@click.argument("name")
@click.option("--region", default=None, envvar="AWS_REGION", help="SSO region")
@click.option("--start-url", default=None, envvar="KOPS_SSO_START_URL", help="SSO start URL")
@click.option("--account-id", default=None, envvar="KOPS_SSO_ACCOUNT_ID", help="AWS account ID")
@click.option("--role-name", default=None, envvar="KOPS_SSO_ROLE_NAME", help="Role to assume")
@click.option("--no-browser", is_flag=True, help="Do not open the verification URL")
@click.pass_obj
def login(
    state: CliState,
    name: str,
    region: str | None,
    start_url: str | None,
    account_id: str | None,
    role_name: str | None,
    no_browser: bool,
) -> None:
    """Log in with AWS SSO and store the credentials in kopsd as profile NAME."""
    sso = state.config.sso
    start_url = start_url or sso.start_url
    account_id = account_id or sso.account_id
    role_name = role_name or sso.role_name
    for flag, value in (
        ("--start-url", start_url),
        ("--account-id", account_id),
        ("--role-name", role_name),
    ):
        if not value:
            _fail(f"Error: {flag} is required (or set it under 'sso' in kops.yaml)")

    login_cfg = SsoLoginConfig(
        profile=name,
        region=region or sso.region or DEFAULT_REGION,
        start_url=start_url,
        account_id=account_id,
        role_name=role_name,
        client_name=sso.client_name,
    )

    def _show(info: DeviceVerificationInfo) -> None:
        click.echo(f"To sign in, open: {info.url}")
        click.echo(f"and confirm the code: {click.style(info.user_code, bold=True)}")
        if not no_browser:
            click.launch(info.url)
        click.echo("Waiting for approval...")

    try:
        session = login_device_flow(login_cfg, _show)
    except SsoLoginError as e:
        _fail(f"Error: login failed: {e}")

    _send(state, LoginRequest.from_session(session), LoginOk)
    click.echo(
        click.style("Logged in", fg="green")
        + f" as {session.account_id}/{session.role_name} (profile {name}),"
        + f" credentials valid until {session.expires_at.isoformat()}"
    )
