# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap
    cluster: str      # cluster name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Bootstrap state machine
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StateChanged(BaseEvent):
    state: str

@dataclass(frozen=True)
class BootstrapReady(BaseEvent):
    nodes: List[str]
    cluster_id: str

@dataclass(frozen=True)
class BootstrapFailed(BaseEvent):
    state: str
    error: str


# ---------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CAProvisioned(BaseEvent):
    pinned: bool      # True when the CA came from the caller
    ca_file: str


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeStarted(BaseEvent):
    node: str
    endpoint: str

@dataclass(frozen=True)
class NodeJoined(BaseEvent):
    node: str
    leader_addr: str

@dataclass(frozen=True)
class NodeUnsealed(BaseEvent):
    node: str
    sealed: bool      # as reported by the last unseal submission

@dataclass(frozen=True)
class NodeReady(BaseEvent):
    node: str
    cluster_id: str

@dataclass(frozen=True)
class LeaderVerified(BaseEvent):
    node: str
    is_self: bool

@dataclass(frozen=True)
class NodeStopFailed(BaseEvent):
    node: str
    error: str


# ---------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ClusterInitialized(BaseEvent):
    shares: int
    threshold: int
