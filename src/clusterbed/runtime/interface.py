# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/runtime/interface.py

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class NodeLaunchSpec:
    """
    Everything a launcher needs to start one node.
    """
    name: str                 # logical node name, also the in-network hostname
    node_id: str
    work_dir: Path            # holds cert.pem, key.pem, local.json
    ca_file: Path             # CA certificate to add to the node's trust store
    plugin_path: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeHandle:
    name: str
    container_id: str
    ip: str                   # address on the cluster network
    port: int                 # API port on the cluster network
    host_port: int            # API port published on the host

    @property
    def endpoint(self) -> str:
        return f"{self.ip}:{self.port}"

    @property
    def api_address(self) -> str:
        return f"https://127.0.0.1:{self.host_port}"


class NodeLauncher(Protocol):
    def start(self, spec: NodeLaunchSpec) -> NodeHandle: ...
    def stop(self, handle: NodeHandle) -> None: ...
