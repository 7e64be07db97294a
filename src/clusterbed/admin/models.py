# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/admin/models.py

from typing import List
from pydantic import BaseModel, Field


class InitRequest(BaseModel):
    secret_shares: int
    secret_threshold: int


class InitResponse(BaseModel):
    keys: List[str] = Field(default_factory=list)            # hex barrier shares
    keys_base64: List[str] = Field(default_factory=list)
    recovery_keys: List[str] = Field(default_factory=list)   # hex recovery shares
    recovery_keys_base64: List[str] = Field(default_factory=list)
    root_token: str


class UnsealResponse(BaseModel):
    sealed: bool
    t: int = 0            # threshold
    n: int = 0            # shares
    progress: int = 0


class HealthResponse(BaseModel):
    initialized: bool = False
    sealed: bool
    standby: bool = False
    cluster_id: str = ""
    cluster_name: str = ""
    version: str = ""


class LeaderResponse(BaseModel):
    is_self: bool
    ha_enabled: bool = False
    leader_address: str = ""
    leader_cluster_address: str = ""


class RaftJoinRequest(BaseModel):
    leader_api_addr: str
    leader_ca_cert: str
    leader_client_cert: str
    leader_client_key: str


class RaftJoinResponse(BaseModel):
    joined: bool
