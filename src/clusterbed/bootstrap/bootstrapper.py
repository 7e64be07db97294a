# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/bootstrap/bootstrapper.py

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional

from ..admin.client import AdminClient
from ..admin.models import HealthResponse, LeaderResponse
from ..config.models import ClusterOptions
from ..errors import (
    ClusterBedError,
    IOFailure,
    ProcessStartFailure,
    ProtocolFailure,
    TimeoutFailure,
)
from ..identity.authority import create_authority, issue_leaf, server_ssl_context
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    BootstrapFailed,
    BootstrapReady,
    CAProvisioned,
    ClusterInitialized,
    LeaderVerified,
    NodeJoined,
    NodeReady,
    NodeStarted,
    NodeStopFailed,
    NodeUnsealed,
    StateChanged,
)
from ..runtime.config import node_runtime_config, write_runtime_config
from ..runtime.interface import NodeLauncher, NodeLaunchSpec
from ..utils.poller import Deadline, wait_until
from .models import BootstrapState, ClusterDescriptor, NodeDescriptor

log = logging.getLogger("clusterbed")

PostReadyHook = Callable[[ClusterDescriptor], None]
ClientFactory = Callable[[NodeDescriptor], AdminClient]

ROOT_TOKEN_FILE = "root_token"
BARRIER_KEYS_FILE = "barrier_keys"
RECOVERY_KEYS_FILE = "recovery_keys"


class ClusterBootstrapper:
    """
    Drives a set of freshly launched nodes to a ready cluster:

      Created -> CAProvisioned -> NodesStarting -> NodesStarted
              -> Initializing -> Unsealing/Joining -> LeaderVerifying -> Ready

    Everything runs sequentially in membership order. Any fatal condition
    moves the machine to Failed and re-raises; started nodes are left
    running until teardown() is called.
    """

    def __init__(
        self,
        options: ClusterOptions,
        launcher: NodeLauncher,
        *,
        observers: Optional[List] = None,
        post_ready: Optional[PostReadyHook] = None,
        client_factory: Optional[ClientFactory] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.options = options
        self.launcher = launcher
        self.post_ready = post_ready
        self.client_factory = client_factory or self._default_client
        self.clock = clock
        self.sleep = sleep

        self.state = BootstrapState.CREATED
        self.cluster: Optional[ClusterDescriptor] = None

        self.bus = EventBus(observers or [])
        self.run_ctx = new_ctx(cluster=options.name, run_id=run_id)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _set_state(self, state: BootstrapState) -> None:
        if state == self.state:
            return
        log.debug("[bootstrap] %s -> %s", self.state.value, state.value)
        self.state = state
        self.bus.emit(StateChanged(state=state.value, **self.run_ctx))

    def _deadline(self, seconds: float) -> Deadline:
        return Deadline.after(seconds, clock=self.clock)

    def _wait(self, deadline: Deadline, fetch, predicate, what: str):
        # Client transport errors and error codes are transient here;
        # anything else is a bug and propagates.
        return wait_until(
            deadline, fetch, predicate, what=what, retry_on=(ProtocolFailure,), sleep=self.sleep
        )

    def _default_client(self, node: NodeDescriptor) -> AdminClient:
        cluster = node.cluster
        return AdminClient(
            node.handle.api_address,
            ca_file=cluster.authority.cert_file,
            cert_file=node.identity.cert_file,
            key_file=node.identity.key_file,
            token=cluster.root_token or None,
            timeout=self.options.request_timeout_s,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def bootstrap(self) -> ClusterDescriptor:
        opts = self.options
        try:
            self._prepare_workspace()
            self._provision_ca()
            self._start_nodes()

            if opts.skip_init:
                log.info("[bootstrap] skip_init set, leaving %d node(s) uninitialized", len(self.cluster.nodes))
                return self.cluster

            self._initialize(self._deadline(opts.init_timeout_s))

            converge = self._deadline(opts.converge_timeout_s)
            self._unseal_nodes(converge)
            self._verify_leadership(converge)

            self._set_state(BootstrapState.READY)
            self.bus.emit(
                BootstrapReady(
                    nodes=[n.name for n in self.cluster.nodes],
                    cluster_id=self.cluster.cluster_id,
                    **self.run_ctx,
                )
            )
            log.info("[bootstrap] cluster %s ready (id=%s)", self.cluster.name, self.cluster.cluster_id)

            if self.post_ready:
                self.post_ready(self.cluster)

        except Exception as e:
            failed_in = self.state
            self.state = BootstrapState.FAILED
            self.bus.emit(BootstrapFailed(state=failed_in.value, error=str(e), **self.run_ctx))
            log.error("[bootstrap] failed during %s: %s", failed_in.value, e)
            raise

        return self.cluster

    def teardown(self) -> None:
        """
        Force-stop every started node. Individual stop failures are logged
        and reported as events, never raised.
        """
        if self.cluster is None:
            return
        for node in self.cluster.nodes:
            if node.handle is None:
                continue
            try:
                self.launcher.stop(node.handle)
            except Exception as e:
                log.warning("[teardown] failed to stop %s: %s", node.name, e)
                self.bus.emit(NodeStopFailed(node=node.name, error=str(e), **self.run_ctx))
            else:
                log.debug("[teardown] stopped %s", node.name)
            if node.client is not None:
                node.client.close()
            node.handle = None
            node.client = None

    # -------------------------------------------------------------------------
    # Created -> CAProvisioned
    # -------------------------------------------------------------------------

    def _prepare_workspace(self) -> None:
        opts = self.options
        try:
            if opts.work_dir is not None:
                work_dir = Path(opts.work_dir)
                work_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            else:
                work_dir = Path(tempfile.mkdtemp(prefix=f"clusterbed-{opts.name}-"))
        except OSError as e:
            raise IOFailure(f"failed to create work dir: {e}") from e

        cluster = ClusterDescriptor(
            name=opts.name,
            work_dir=work_dir,
            dynamic_membership=opts.dynamic_membership,
            client_auth_required=opts.require_client_auth,
        )
        try:
            cluster.ca_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
            for node_id in opts.node_ids():
                node = cluster.add_node(node_id)
                node.work_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"failed to create node dirs under {work_dir}: {e}") from e

        self.cluster = cluster
        log.debug("[bootstrap] work dir %s, %d node slot(s)", work_dir, len(cluster.nodes))

    def _provision_ca(self) -> None:
        try:
            pinned = self.options.pinned_ca()
        except OSError as e:
            raise IOFailure(f"failed to read pinned CA: {e}") from e

        cert_pem, key_pem = pinned if pinned else (None, None)
        self.cluster.authority = create_authority(
            self.cluster.ca_dir, existing_key=key_pem, existing_cert=cert_pem
        )
        self._set_state(BootstrapState.CA_PROVISIONED)
        self.bus.emit(
            CAProvisioned(
                pinned=self.cluster.authority.pinned,
                ca_file=str(self.cluster.authority.cert_file),
                **self.run_ctx,
            )
        )

    # -------------------------------------------------------------------------
    # CAProvisioned -> NodesStarting -> NodesStarted
    # -------------------------------------------------------------------------

    def _start_nodes(self) -> None:
        self._set_state(BootstrapState.NODES_STARTING)
        for node in self.cluster.nodes:
            self._start_node(node)
        self._set_state(BootstrapState.NODES_STARTED)

    def _start_node(self, node: NodeDescriptor) -> None:
        cluster = self.cluster
        authority = cluster.authority

        node.identity = issue_leaf(authority, node.name, [node.name], out_dir=node.work_dir)
        node.tls_context = server_ssl_context(
            node.identity, authority, require_client_auth=cluster.client_auth_required
        )

        # The node reads its CA from its own config dir when verifying clients.
        try:
            (node.work_dir / "ca.pem").write_bytes(authority.cert_pem)
        except OSError as e:
            raise IOFailure(f"failed to stage CA for {node.name}: {e}") from e
        retry_join = None
        if not cluster.dynamic_membership and node is not cluster.seed:
            retry_join = self._leader_api_addr()
        write_runtime_config(
            node.work_dir,
            node_runtime_config(
                node.node_id,
                cluster.name,
                self.options.runtime,
                require_client_auth=cluster.client_auth_required,
                retry_join=retry_join,
            ),
        )

        spec = NodeLaunchSpec(
            name=node.name,
            node_id=node.node_id,
            work_dir=node.work_dir,
            ca_file=authority.cert_file,
            plugin_path=self.options.plugin_path,
        )
        try:
            node.handle = self.launcher.start(spec)
        except ClusterBedError:
            raise
        except Exception as e:
            raise ProcessStartFailure(f"failed to start {node.name}: {e}") from e

        node.client = self.client_factory(node)
        log.info("[bootstrap] started %s at %s", node.name, node.endpoint)
        self.bus.emit(NodeStarted(node=node.name, endpoint=node.endpoint or "", **self.run_ctx))

    # -------------------------------------------------------------------------
    # NodesStarted -> Initializing
    # -------------------------------------------------------------------------

    def _initialize(self, deadline: Deadline) -> None:
        self._set_state(BootstrapState.INITIALIZING)
        cluster = self.cluster
        opts = self.options
        seed = cluster.seed

        resp = self._wait(
            deadline,
            lambda: seed.client.init(opts.secret_shares, opts.secret_threshold),
            lambda r: None,
            what="init",
        )

        try:
            barrier = [bytes.fromhex(k) for k in resp.keys]
            recovery = [bytes.fromhex(k) for k in resp.recovery_keys]
        except ValueError as e:
            raise ProtocolFailure(f"init returned a share that is not hex: {e}") from e
        if not barrier:
            raise ProtocolFailure("init response carried no barrier key shares")
        if not resp.root_token:
            raise ProtocolFailure("init response carried no root token")

        cluster.set_barrier_keys(barrier)
        cluster.set_recovery_keys(recovery)
        cluster.root_token = resp.root_token
        self._persist_init_material()

        log.info("[bootstrap] initialized via %s (%d shares)", seed.name, len(barrier))
        self.bus.emit(
            ClusterInitialized(shares=opts.secret_shares, threshold=opts.secret_threshold, **self.run_ctx)
        )

    def _persist_init_material(self) -> None:
        cluster = self.cluster
        files = {
            ROOT_TOKEN_FILE: cluster.root_token,
            BARRIER_KEYS_FILE: "".join(k.hex() + "\n" for k in cluster.get_barrier_keys()),
            RECOVERY_KEYS_FILE: "".join(k.hex() + "\n" for k in cluster.get_recovery_keys()),
        }
        for name, content in files.items():
            path = cluster.work_dir / name
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "w") as fh:
                    os.fchmod(fh.fileno(), 0o600)
                    fh.write(content)
            except OSError as e:
                raise IOFailure(f"failed to write {path}: {e}") from e

    # -------------------------------------------------------------------------
    # Initializing -> Unsealing (+ Joining) per node
    # -------------------------------------------------------------------------

    def _unseal_nodes(self, deadline: Deadline) -> None:
        cluster = self.cluster
        for i, node in enumerate(cluster.nodes):
            if i > 0 and cluster.dynamic_membership:
                self._set_state(BootstrapState.JOINING)
                self._join(node)

            self._set_state(BootstrapState.UNSEALING)
            unsealed = self._submit_unseal_keys(node, deadline)
            if i == 0 and not unsealed:
                raise ProtocolFailure(f"could not unseal node {i} ({node.name})")
            node.client.set_token(cluster.root_token)

            self._await_unsealed(i, node, deadline)

            if i == 0:
                self._await_leader(i, node, deadline, expect_self=True)

    def _leader_api_addr(self) -> str:
        # In-network name of the seed; its certificate carries that SAN.
        return f"https://{self.cluster.seed.name}:{self.options.runtime.api_port}"

    def _join(self, node: NodeDescriptor) -> None:
        leader_addr = self._leader_api_addr()
        resp = node.client.raft_join(
            leader_api_addr=leader_addr,
            leader_ca_cert=self.cluster.ca_cert_pem.decode("ascii"),
            leader_client_cert=node.identity.cert_pem.decode("ascii"),
            leader_client_key=node.identity.key_pem.decode("ascii"),
        )
        if resp is None or not resp.joined:
            raise ProtocolFailure(f"nil or negative response from raft join request for {node.name}: {resp}")
        log.info("[bootstrap] %s joined %s", node.name, leader_addr)
        self.bus.emit(NodeJoined(node=node.name, leader_addr=leader_addr, **self.run_ctx))

    def _submit_unseal_keys(self, node: NodeDescriptor, deadline: Deadline) -> bool:
        sealed = True
        for key in self.cluster.get_barrier_keys():
            resp = self._wait(
                deadline,
                lambda: node.client.unseal(key.hex()),
                lambda r: None,
                what=f"unseal of {node.name}",
            )
            sealed = resp.sealed
        self.bus.emit(NodeUnsealed(node=node.name, sealed=sealed, **self.run_ctx))
        return not sealed

    def _await_unsealed(self, i: int, node: NodeDescriptor, deadline: Deadline) -> None:
        def ready(health: HealthResponse) -> Optional[str]:
            if health.sealed:
                return f"node {i} is sealed: {health!r}"
            if not health.cluster_id:
                return f"node {i} has no cluster ID"
            return None

        health = self._wait(deadline, node.client.health, ready, what=f"health of {node.name}")

        cluster = self.cluster
        if not cluster.cluster_id:
            cluster.cluster_id = health.cluster_id
        elif health.cluster_id != cluster.cluster_id:
            raise ProtocolFailure(
                f"node {i} reports cluster ID {health.cluster_id}, expected {cluster.cluster_id}"
            )
        self.bus.emit(NodeReady(node=node.name, cluster_id=health.cluster_id, **self.run_ctx))

    def _await_leader(self, i: int, node: NodeDescriptor, deadline: Deadline, *, expect_self: bool) -> None:
        seen: List[LeaderResponse] = []

        def matches(leader: LeaderResponse) -> Optional[str]:
            seen.append(leader)
            if leader.is_self != expect_self:
                return f"node {i} leader={leader.is_self}, expected={expect_self}"
            return None

        try:
            leader = self._wait(deadline, node.client.leader, matches, what=f"leader of {node.name}")
        except TimeoutFailure as e:
            if seen:
                raise ProtocolFailure(f"leader state mismatch on {node.name}: {e}") from e
            raise
        self.bus.emit(LeaderVerified(node=node.name, is_self=leader.is_self, **self.run_ctx))

    # -------------------------------------------------------------------------
    # -> LeaderVerifying
    # -------------------------------------------------------------------------

    def _verify_leadership(self, deadline: Deadline) -> None:
        self._set_state(BootstrapState.LEADER_VERIFYING)
        for i, node in enumerate(self.cluster.nodes):
            self._await_leader(i, node, deadline, expect_self=(i == 0))
