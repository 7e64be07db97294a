# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/admin/client.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import requests
from pydantic import BaseModel, ValidationError

from ..errors import ProtocolFailure
from .models import (
    HealthResponse,
    InitRequest,
    InitResponse,
    LeaderResponse,
    RaftJoinRequest,
    RaftJoinResponse,
    UnsealResponse,
)

log = logging.getLogger("clusterbed")

M = TypeVar("M", bound=BaseModel)

TOKEN_HEADER = "X-Vault-Token"

# Report every node state as 200 so the body, not the code, carries it.
HEALTH_PARAMS = {
    "standbyok": "true",
    "perfstandbyok": "true",
    "standbycode": "200",
    "sealedcode": "200",
    "uninitcode": "200",
    "drsecondarycode": "200",
    "performancestandbycode": "200",
}


class AdminClient:
    """
    Typed client over a node's administrative API, spoken over mutual TLS
    with the identities issued by the cluster CA.

    Methods return None for an empty ("nil") response body and raise
    ProtocolFailure for transport errors, non-2xx codes and bodies that do
    not match the expected shape.
    """

    def __init__(
        self,
        address: str,
        *,
        ca_file: Path,
        cert_file: Optional[Path] = None,
        key_file: Optional[Path] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.address = address.rstrip("/")
        self.timeout = timeout
        self._token = token
        self.session = session or requests.Session()
        self.session.verify = str(ca_file)
        if cert_file and key_file:
            self.session.cert = (str(cert_file), str(key_file))

    # -----------------------
    # Auth
    # -----------------------
    @property
    def token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers[TOKEN_HEADER] = self._token
        return headers

    # -----------------------
    # HTTP helpers
    # -----------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.address}{path}"
        try:
            r = self.session.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise ProtocolFailure(f"{method} {path} failed: {exc}") from exc

        if r.status_code < 200 or r.status_code >= 300:
            raise ProtocolFailure(f"{method} {path} returned {r.status_code}: {_errors(r)}")

        if not r.content or not r.content.strip():
            return None
        try:
            body = r.json()
        except ValueError as exc:
            raise ProtocolFailure(f"{method} {path} returned malformed JSON: {r.text[:200]}") from exc
        if body is None:
            return None
        if not isinstance(body, dict):
            raise ProtocolFailure(f"{method} {path} returned {type(body).__name__}, expected object")
        return body

    def _call(self, model: Type[M], method: str, path: str, **kw) -> Optional[M]:
        body = self._request(method, path, **kw)
        if body is None:
            return None
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise ProtocolFailure(f"{method} {path}: unexpected response shape: {exc}") from exc

    # -----------------------
    # sys endpoints
    # -----------------------
    def init(self, secret_shares: int, secret_threshold: int) -> Optional[InitResponse]:
        req = InitRequest(secret_shares=secret_shares, secret_threshold=secret_threshold)
        return self._call(InitResponse, "PUT", "/v1/sys/init", json=req.model_dump())

    def unseal(self, key_hex: str) -> Optional[UnsealResponse]:
        return self._call(UnsealResponse, "PUT", "/v1/sys/unseal", json={"key": key_hex})

    def health(self) -> Optional[HealthResponse]:
        return self._call(HealthResponse, "GET", "/v1/sys/health", params=HEALTH_PARAMS)

    def leader(self) -> Optional[LeaderResponse]:
        return self._call(LeaderResponse, "GET", "/v1/sys/leader")

    def raft_join(
        self,
        leader_api_addr: str,
        leader_ca_cert: str,
        leader_client_cert: str,
        leader_client_key: str,
    ) -> Optional[RaftJoinResponse]:
        req = RaftJoinRequest(
            leader_api_addr=leader_api_addr,
            leader_ca_cert=leader_ca_cert,
            leader_client_cert=leader_client_cert,
            leader_client_key=leader_client_key,
        )
        return self._call(RaftJoinResponse, "POST", "/v1/sys/storage/raft/join", json=req.model_dump())

    def close(self) -> None:
        self.session.close()

    def __repr__(self) -> str:
        return f"AdminClient({self.address!r})"


def _errors(r: requests.Response) -> str:
    try:
        errs = r.json().get("errors")
    except (ValueError, AttributeError):
        errs = None
    if errs:
        return "; ".join(map(str, errs))
    return (r.text or "").strip()[:200]
