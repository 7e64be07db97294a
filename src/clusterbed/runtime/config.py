# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/runtime/config.py

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from ..config.models import RuntimeOptions
from ..errors import IOFailure

RUNTIME_CONFIG_FILE = "local.json"


def node_runtime_config(
    node_id: str,
    cluster_name: str,
    runtime: RuntimeOptions,
    *,
    require_client_auth: bool = False,
    retry_join: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Server config for one node. Paths are in-container paths; api_addr and
    cluster_addr are left to the image entrypoint since the node address is
    only known after start.

    retry_join: leader API address for static membership, where followers
    join on their own instead of being told to.
    """
    tcp: Dict[str, Any] = {
        "address": f"0.0.0.0:{runtime.api_port}",
        "tls_cert_file": f"{runtime.config_dir}/cert.pem",
        "tls_key_file": f"{runtime.config_dir}/key.pem",
        "telemetry": {"unauthenticated_metrics_access": True},
    }
    if require_client_auth:
        tcp["tls_require_and_verify_client_cert"] = True
        tcp["tls_client_ca_file"] = f"{runtime.config_dir}/ca.pem"

    raft: Dict[str, Any] = {
        "path": runtime.storage_path,
        "node_id": node_id,
    }
    if retry_join:
        raft["retry_join"] = [{
            "leader_api_addr": retry_join,
            "leader_ca_cert_file": f"{runtime.config_dir}/ca.pem",
            "leader_client_cert_file": f"{runtime.config_dir}/cert.pem",
            "leader_client_key_file": f"{runtime.config_dir}/key.pem",
        }]

    return {
        "listener": {"tcp": tcp},
        "telemetry": {"disable_hostname": True},
        "storage": {"raft": raft},
        "cluster_name": cluster_name,
        "log_level": runtime.log_level.upper(),
        "raw_storage_endpoint": True,
        "plugin_directory": runtime.config_dir,
    }


def write_runtime_config(work_dir: Path, cfg: Dict[str, Any]) -> Path:
    path = Path(work_dir) / RUNTIME_CONFIG_FILE
    try:
        path.write_text(json.dumps(cfg, indent=2))
    except OSError as exc:
        raise IOFailure(f"failed to write {path}: {exc}") from exc
    return path
