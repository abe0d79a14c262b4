"""Logging setup shared by kopsd and kopsctl."""

from __future__ import annotations

import logging
import os
import sys
from typing import TextIO

LOG_ENV_VAR = "KOPS_LOG"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def init_logging(verbose: int = 0, *, stream: TextIO | None = None) -> None:
    """Configure the root logger.

    ``$KOPS_LOG`` (a level name such as ``debug``) wins when set. Otherwise
    any ``-v`` switches to DEBUG and the default is INFO.
    """
    env_level = os.environ.get(LOG_ENV_VAR)
    if env_level:
        level = logging.getLevelName(env_level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    elif verbose > 0:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=stream or sys.stderr,
        force=True,
    )
    # botocore and urllib3 are chatty at DEBUG.
    for noisy in ("botocore", "urllib3", "kubernetes.client.rest"):
        logging.getLogger(noisy).setLevel(max(level, logging.INFO))
