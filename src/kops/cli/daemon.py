"""kopsd: the long-running kops daemon."""

from __future__ import annotations

import atexit
import contextlib
import logging
import os
import sys
from pathlib import Path

import click
import yaml

from kops import __version__
from kops.config import DaemonConfig, load_config
from kops.daemon.server import DaemonStartupError, build_handler, create_server, run_server
from kops.log import init_logging

logger = logging.getLogger(__name__)


@click.command()
@click.version_option(version=__version__, prog_name="kopsd")
@click.option("--config", "config_path", default=None, help="Path to kops.yaml")
@click.option("-v", "--verbose", count=True, help="Enable debug logging")
@click.option("-f", "--foreground", is_flag=True, help="Stay attached to the terminal")
def main(config_path: str | None, verbose: int, foreground: bool) -> None:
    """Run the kops daemon."""
    init_logging(verbose)
    try:
        cfg = load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)

    # Bind before detaching so a busy or unwritable socket fails the command.
    try:
        server = create_server(cfg.socket_path, build_handler(cfg))
    except DaemonStartupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not foreground:
        daemonize(cfg.daemon)
        init_logging(verbose)

    run_server(server)


def daemonize(daemon_cfg: DaemonConfig) -> None:
    """Double-fork into the background and redirect stdio."""
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    os.chdir("/")
    _redirect(sys.stdin.fileno(), os.devnull, os.O_RDONLY)
    _redirect(sys.stdout.fileno(), daemon_cfg.stdout or os.devnull, os.O_WRONLY | os.O_CREAT | os.O_APPEND)
    _redirect(sys.stderr.fileno(), daemon_cfg.stderr or os.devnull, os.O_WRONLY | os.O_CREAT | os.O_APPEND)

    if daemon_cfg.pid_file:
        pid_path = Path(daemon_cfg.pid_file)
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(f"{os.getpid()}\n")
        atexit.register(_remove_pid_file, pid_path)


def _redirect(target_fd: int, path: str, flags: int) -> None:
    if path != os.devnull:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, flags, 0o644)
    os.dup2(fd, target_fd)
    os.close(fd)


def _remove_pid_file(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink()


if __name__ == "__main__":
    main()
