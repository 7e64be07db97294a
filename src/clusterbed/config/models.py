# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/config/models.py

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class RuntimeOptions(BaseModel):
    """How each node's server process is launched (docker)."""

    image: str = "hashicorp/vault:latest"
    network_name: str = "clusterbed"
    network_cidr: str = "192.168.128.0/20"
    api_port: int = 8200
    cluster_port: int = 8201
    log_level: str = "trace"
    docker_bin: str = "docker"
    config_dir: str = "/vault/config"             # in-container path for node files
    ca_trust_dir: str = "/usr/local/share/ca-certificates/"
    storage_path: str = "/vault/file"
    server_command: str = "/usr/local/bin/docker-entrypoint.sh vault server"
    cluster_interface: str = "eth0"


class ClusterOptions(BaseModel):
    name: str = "clusterbed"
    node_count: int = Field(default=1, ge=1)
    membership: Literal["dynamic", "static"] = "dynamic"
    require_client_auth: bool = False
    work_dir: Optional[Path] = None

    # Pinned CA material (inline PEM or files). Cert and key go together.
    ca_cert_pem: Optional[str] = None
    ca_key_pem: Optional[str] = None
    ca_cert_file: Optional[Path] = None
    ca_key_file: Optional[Path] = None

    plugin_path: Optional[Path] = None
    skip_init: bool = False

    # Independent of node_count: share holders need not be cluster members.
    secret_shares: int = Field(default=3, ge=1)
    secret_threshold: Optional[int] = Field(default=None, ge=1)

    init_timeout_s: float = 60.0
    converge_timeout_s: float = 15.0
    request_timeout_s: float = 10.0

    runtime: RuntimeOptions = Field(default_factory=RuntimeOptions)

    @model_validator(mode="after")
    def _check(self) -> "ClusterOptions":
        if self.secret_threshold is None:
            self.secret_threshold = self.secret_shares
        if self.secret_threshold > self.secret_shares:
            raise ValueError(
                f"secret_threshold ({self.secret_threshold}) exceeds secret_shares ({self.secret_shares})"
            )
        if (self.ca_cert_pem is None) != (self.ca_key_pem is None):
            raise ValueError("ca_cert_pem and ca_key_pem must be supplied together")
        if (self.ca_cert_file is None) != (self.ca_key_file is None):
            raise ValueError("ca_cert_file and ca_key_file must be supplied together")
        if self.ca_cert_pem is not None and self.ca_cert_file is not None:
            raise ValueError("pin the CA either inline or by file, not both")
        return self

    @property
    def dynamic_membership(self) -> bool:
        return self.membership == "dynamic"

    def pinned_ca(self) -> Optional[tuple[bytes, bytes]]:
        """
        Returns (cert_pem, key_pem) when the caller pinned a CA, else None.
        """
        if self.ca_cert_pem is not None:
            return self.ca_cert_pem.encode(), self.ca_key_pem.encode()
        if self.ca_cert_file is not None:
            return self.ca_cert_file.read_bytes(), self.ca_key_file.read_bytes()
        return None

    def node_ids(self) -> list[str]:
        return [f"node-{i}" for i in range(self.node_count)]

    def node_names(self) -> list[str]:
        return [f"{self.name}-{node_id}" for node_id in self.node_ids()]
