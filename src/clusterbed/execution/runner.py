# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/execution/runner.py

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

Cmd = Sequence[Union[str, "os.PathLike[str]"]]


@dataclass
class CommandRunner:
    """
    Runs one CLI command to completion and hands back the result.
    Never raises on a non-zero exit; callers inspect returncode.
    """
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("clusterbed"))
    label: Optional[str] = None

    def run(self, cmd: Cmd) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        argv = [str(c) for c in cmd]
        self.logger.debug("[%s] $ %s", label, " ".join(argv))

        start = time.time()
        result = subprocess.run(argv, capture_output=True, check=False, text=True)
        duration = time.time() - start

        if result.stdout:
            self.logger.debug("[%s][stdout]\n%s", label, result.stdout.rstrip())
        if result.stderr:
            self.logger.debug("[%s][stderr]\n%s", label, result.stderr.rstrip())
        self.logger.debug("[%s][exit %d] (%.2fs)", label, result.returncode, duration)
        return result
