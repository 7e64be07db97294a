# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/bootstrap/models.py

from __future__ import annotations

import ssl
import weakref
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..admin.client import AdminClient
from ..identity.authority import CertificateAuthority, LeafIdentity
from ..runtime.interface import NodeHandle


class BootstrapState(str, Enum):
    CREATED = "created"
    CA_PROVISIONED = "ca_provisioned"
    NODES_STARTING = "nodes_starting"
    NODES_STARTED = "nodes_started"
    INITIALIZING = "initializing"
    UNSEALING = "unsealing"
    JOINING = "joining"
    LEADER_VERIFYING = "leader_verifying"
    READY = "ready"
    FAILED = "failed"


class NodeDescriptor:
    """
    One cluster member. Holds a non-owning reference back to its cluster.
    """

    def __init__(self, node_id: str, work_dir: Path, cluster: "ClusterDescriptor"):
        self.node_id = node_id
        self.work_dir = work_dir
        self._cluster = weakref.ref(cluster)
        self.identity: Optional[LeafIdentity] = None
        self.tls_context: Optional[ssl.SSLContext] = None
        self.handle: Optional[NodeHandle] = None
        self.client: Optional[AdminClient] = None

    @property
    def cluster(self) -> "ClusterDescriptor":
        cluster = self._cluster()
        if cluster is None:
            raise ReferenceError(f"cluster of node {self.node_id} no longer exists")
        return cluster

    @property
    def name(self) -> str:
        return f"{self.cluster.name}-{self.node_id}"

    @property
    def endpoint(self) -> Optional[str]:
        return self.handle.endpoint if self.handle else None

    @property
    def started(self) -> bool:
        return self.handle is not None

    def api_client(self) -> Optional[AdminClient]:
        return self.client

    def __repr__(self) -> str:
        return f"NodeDescriptor({self.node_id!r}, endpoint={self.endpoint!r})"


@dataclass
class ClusterDescriptor:
    name: str
    work_dir: Path
    dynamic_membership: bool = True
    client_auth_required: bool = False
    authority: Optional[CertificateAuthority] = None
    root_token: str = ""
    cluster_id: str = ""
    nodes: List[NodeDescriptor] = field(default_factory=list)
    _barrier_keys: Tuple[bytes, ...] = field(default=(), repr=False)
    _recovery_keys: Tuple[bytes, ...] = field(default=(), repr=False)

    @property
    def ca_dir(self) -> Path:
        return self.work_dir / "ca"

    @property
    def ca_cert_pem(self) -> bytes:
        return self.authority.cert_pem if self.authority else b""

    @property
    def ca_cert_der(self) -> bytes:
        return self.authority.cert_der if self.authority else b""

    @property
    def ca_cert_pem_file(self) -> Optional[Path]:
        return self.authority.cert_file if self.authority else None

    @property
    def seed(self) -> NodeDescriptor:
        # The first member always initializes and is the join target.
        return self.nodes[0]

    def add_node(self, node_id: str) -> NodeDescriptor:
        node = NodeDescriptor(node_id, self.work_dir / node_id, self)
        self.nodes.append(node)
        return node

    # -----------------------------------------------------------------
    # Key shares: stored immutable, handed out as independent copies
    # -----------------------------------------------------------------
    def get_barrier_keys(self) -> List[bytearray]:
        return [bytearray(k) for k in self._barrier_keys]

    def get_recovery_keys(self) -> List[bytearray]:
        return [bytearray(k) for k in self._recovery_keys]

    def get_barrier_or_recovery_keys(self) -> List[bytearray]:
        return self.get_barrier_keys()

    def set_barrier_keys(self, keys: Iterable[bytes]) -> None:
        if self._barrier_keys:
            raise ValueError("barrier keys are already populated")
        self._barrier_keys = tuple(bytes(k) for k in keys)

    def set_recovery_keys(self, keys: Iterable[bytes]) -> None:
        if self._recovery_keys:
            raise ValueError("recovery keys are already populated")
        self._recovery_keys = tuple(bytes(k) for k in keys)
