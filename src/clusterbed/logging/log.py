# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/clusterbed/logging/log.py

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

LOG_DIR_ENV = "CLUSTERBED_LOG_DIR"

# Polling a node that is still starting produces a connection error per
# attempt; the poller already records the last one.
_NOISY = ("urllib3", "requests")


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "clusterbed",
    cluster: str | None = None,
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Configure the package logger for one bootstrap run.

    The file handler keeps everything (every docker command, every poll
    attempt); the console shows INFO, or DEBUG when verbose.  Log files are
    named <cluster>-<utc ts>-<run_id>.log under base_dir, which defaults to
    $CLUSTERBED_LOG_DIR or ~/.clusterbed/logs.

    Returns (logger, run_id, log_path); run_id is shared with the event
    observers so log lines and events correlate.
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        env = os.environ.get(LOG_DIR_ENV)
        base_dir = Path(env) if env else Path.home() / ".clusterbed" / "logs"
    base_dir = Path(base_dir)
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{cluster or name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    for noisy in _NOISY:
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)

    logger.info("=== clusterbed run started (cluster=%s) ===", cluster or "-")
    logger.info("run_id=%s", run_id)
    logger.info("log_file=%s", log_path)

    return logger, run_id, log_path
