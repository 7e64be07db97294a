import json
import os
import stat
from pathlib import Path

import pytest
from cryptography import x509

from clusterbed.admin.models import (
    HealthResponse,
    InitResponse,
    LeaderResponse,
    RaftJoinResponse,
    UnsealResponse,
)
from clusterbed.bootstrap.bootstrapper import (
    BARRIER_KEYS_FILE,
    RECOVERY_KEYS_FILE,
    ROOT_TOKEN_FILE,
    ClusterBootstrapper,
)
from clusterbed.bootstrap.models import BootstrapState
from clusterbed.config.models import ClusterOptions
from clusterbed.errors import ClusterBedError, ProcessStartFailure, ProtocolFailure, TimeoutFailure
from clusterbed.identity.authority import create_authority
from clusterbed.observers.events import (
    BootstrapFailed,
    BootstrapReady,
    CAProvisioned,
    NodeStarted,
    NodeStopFailed,
    StateChanged,
)
from clusterbed.runtime.interface import NodeHandle

# ----------------- Fakes -----------------

class FakeClock:
    def __init__(self):
        self.now = 0.0
    def __call__(self):
        return self.now
    def sleep(self, seconds):
        self.now += seconds


class FakeService:
    """Shared state of an in-memory cluster, one entry per node index."""
    def __init__(self, key_count=None):
        self.key_count = key_count
        self.threshold = None
        self.keys = []
        self.root_token = "s.root"
        self.cluster_id = "3f2b-cluster"
        self.sealed = {}
        self.progress = {}
        self.init_calls = 0
        self.init_failures = 0
        self.join_calls = []
        self.join_results = {}
        self.leader_overrides = {}
        self.cluster_id_overrides = {}

    def init(self, shares, threshold):
        self.init_calls += 1
        if self.init_failures:
            self.init_failures -= 1
            raise ProtocolFailure("connection refused")
        n = self.key_count if self.key_count is not None else shares
        self.threshold = threshold
        self.keys = [f"{i:02x}" * 32 for i in range(1, n + 1)]
        return InitResponse(
            keys=self.keys,
            recovery_keys=[f"{i:02x}" * 16 for i in range(0xa0, 0xa0 + n)],
            root_token=self.root_token,
        )


class FakeAdminClient:
    def __init__(self, service, index):
        self.service = service
        self.index = index
        self.token = None
        self.closed = False
        service.sealed[index] = True
        service.progress[index] = set()

    def init(self, shares, threshold):
        return self.service.init(shares, threshold)

    def unseal(self, key):
        s = self.service
        if key in s.keys:
            s.progress[self.index].add(key)
        s.sealed[self.index] = len(s.progress[self.index]) < s.threshold
        return UnsealResponse(
            sealed=s.sealed[self.index], t=s.threshold, n=len(s.keys), progress=len(s.progress[self.index])
        )

    def health(self):
        s = self.service
        sealed = s.sealed[self.index]
        cluster_id = "" if sealed else s.cluster_id_overrides.get(self.index, s.cluster_id)
        return HealthResponse(initialized=bool(s.keys), sealed=sealed, cluster_id=cluster_id)

    def leader(self):
        is_self = self.service.leader_overrides.get(self.index, self.index == 0)
        return LeaderResponse(is_self=is_self, ha_enabled=True)

    def raft_join(self, leader_api_addr, leader_ca_cert, leader_client_cert, leader_client_key):
        self.service.join_calls.append((self.index, leader_api_addr, leader_ca_cert, leader_client_cert))
        return RaftJoinResponse(joined=self.service.join_results.get(self.index, True))

    def set_token(self, token):
        self.token = token

    def close(self):
        self.closed = True


class FakeLauncher:
    def __init__(self, fail_start=None, fail_stop=()):
        self.specs = []
        self.stopped = []
        self.fail_start = fail_start or {}
        self.fail_stop = set(fail_stop)

    def start(self, spec):
        self.specs.append(spec)
        if spec.node_id in self.fail_start:
            raise self.fail_start[spec.node_id]
        i = int(spec.node_id.rsplit("-", 1)[1])
        return NodeHandle(
            name=spec.name,
            container_id=f"cid-{i}",
            ip=f"192.168.128.{i + 2}",
            port=8200,
            host_port=32768 + i,
        )

    def stop(self, handle):
        self.stopped.append(handle.name)
        if handle.name in self.fail_stop:
            raise ClusterBedError(f"rm {handle.name} failed")


class Capture:
    def __init__(self):
        self.events = []
    def notify(self, event):
        self.events.append(event)
    def of(self, kind):
        return [e for e in self.events if isinstance(e, kind)]


def _bootstrapper(tmp_path, service=None, launcher=None, post_ready=None, **opts):
    service = service or FakeService()
    launcher = launcher or FakeLauncher()
    capture = Capture()
    clock = FakeClock()
    options = ClusterOptions(name="bed", work_dir=tmp_path / "work", **opts)
    clients = {}

    def factory(node):
        index = int(node.node_id.rsplit("-", 1)[1])
        clients[index] = FakeAdminClient(service, index)
        return clients[index]

    b = ClusterBootstrapper(
        options,
        launcher,
        observers=[capture],
        post_ready=post_ready,
        client_factory=factory,
        run_id="run-1",
        clock=clock,
        sleep=clock.sleep,
    )
    return b, service, launcher, capture, clients

# ----------------- Tests -----------------

def test_single_node_reaches_ready_and_persists_init_material(tmp_path: Path):
    seen = []
    b, service, launcher, capture, clients = _bootstrapper(tmp_path, post_ready=seen.append)

    cluster = b.bootstrap()

    assert b.state is BootstrapState.READY
    assert seen == [cluster]
    assert cluster.root_token == "s.root"
    assert cluster.cluster_id == "3f2b-cluster"
    assert clients[0].token == "s.root"
    assert clients[0].health().sealed is False
    assert clients[0].health().cluster_id == cluster.cluster_id

    work = tmp_path / "work"
    assert (work / ROOT_TOKEN_FILE).read_text() == "s.root"
    assert (work / BARRIER_KEYS_FILE).read_text().splitlines() == service.keys
    recovery = (work / RECOVERY_KEYS_FILE).read_text().splitlines()
    assert recovery == [k.hex() for k in cluster.get_recovery_keys()]
    assert recovery != service.keys
    for name in (ROOT_TOKEN_FILE, BARRIER_KEYS_FILE, RECOVERY_KEYS_FILE):
        assert stat.S_IMODE((work / name).stat().st_mode) == 0o600

    ready = capture.of(BootstrapReady)
    assert len(ready) == 1 and ready[0].nodes == ["bed-node-0"]
    assert all(e.run_id == "run-1" and e.cluster == "bed" for e in capture.events)


def test_three_node_dynamic_cluster_joins_unseals_and_verifies_leader(tmp_path: Path):
    b, service, launcher, capture, clients = _bootstrapper(tmp_path, node_count=3)

    cluster = b.bootstrap()

    assert [n.name for n in cluster.nodes] == ["bed-node-0", "bed-node-1", "bed-node-2"]
    assert [n.endpoint for n in cluster.nodes] == [
        "192.168.128.2:8200", "192.168.128.3:8200", "192.168.128.4:8200",
    ]
    assert [c[0] for c in service.join_calls] == [1, 2]
    assert {c[1] for c in service.join_calls} == {"https://bed-node-0:8200"}
    assert service.join_calls[0][2] == cluster.ca_cert_pem.decode()
    assert all(not sealed for sealed in service.sealed.values())
    assert service.init_calls == 1

    states = [e.state for e in capture.of(StateChanged)]
    assert states == [
        "ca_provisioned", "nodes_starting", "nodes_started", "initializing",
        "unsealing", "joining", "unsealing", "joining", "unsealing",
        "leader_verifying", "ready",
    ]
    assert launcher.stopped == []


def test_failed_join_leaves_earlier_nodes_running(tmp_path: Path):
    service = FakeService()
    service.join_results[2] = False
    b, service, launcher, capture, _ = _bootstrapper(tmp_path, service=service, node_count=3)

    with pytest.raises(ProtocolFailure, match="raft join"):
        b.bootstrap()

    assert b.state is BootstrapState.FAILED
    assert service.sealed[0] is False and service.sealed[1] is False
    assert service.sealed[2] is True
    assert launcher.stopped == []
    failed = capture.of(BootstrapFailed)
    assert len(failed) == 1 and failed[0].state == "joining"


def test_key_share_getters_return_independent_copies(tmp_path: Path):
    b, *_ = _bootstrapper(tmp_path)
    cluster = b.bootstrap()

    first = cluster.get_barrier_keys()
    second = cluster.get_barrier_keys()
    assert first == second
    first[0][0] ^= 0xFF
    assert first != cluster.get_barrier_keys()
    assert second == cluster.get_barrier_keys()
    assert cluster.get_barrier_or_recovery_keys() == second
    with pytest.raises(ValueError):
        cluster.set_barrier_keys([b"\x00"])


def test_too_few_shares_leaves_seed_sealed(tmp_path: Path):
    b, service, _, _, clients = _bootstrapper(tmp_path, service=FakeService(key_count=2))

    with pytest.raises(ProtocolFailure, match="could not unseal node 0"):
        b.bootstrap()
    assert b.state is BootstrapState.FAILED
    assert service.progress[0] and len(service.progress[0]) < service.threshold
    assert clients[0].health().sealed is True

    # the remaining share reaches the threshold and flips the seed
    service.keys.append("ff" * 32)
    clients[0].unseal("ff" * 32)
    assert clients[0].health().sealed is False


def test_init_retries_transient_failures(tmp_path: Path):
    service = FakeService()
    service.init_failures = 2
    b, service, *_ = _bootstrapper(tmp_path, service=service)

    b.bootstrap()
    assert service.init_calls == 3
    assert b.state is BootstrapState.READY


def test_init_gives_up_at_deadline(tmp_path: Path):
    service = FakeService()
    service.init_failures = 10_000
    b, service, _, capture, _ = _bootstrapper(tmp_path, service=service, init_timeout_s=5)

    with pytest.raises(TimeoutFailure, match="connection refused"):
        b.bootstrap()
    assert capture.of(BootstrapFailed)[0].state == "initializing"


def test_follower_claiming_leadership_is_a_mismatch(tmp_path: Path):
    service = FakeService()
    service.leader_overrides[1] = True
    b, *_ = _bootstrapper(tmp_path, service=service, node_count=2)

    with pytest.raises(ProtocolFailure, match="leader state mismatch"):
        b.bootstrap()
    assert b.state is BootstrapState.FAILED


def test_cluster_id_mismatch_fails(tmp_path: Path):
    service = FakeService()
    service.cluster_id_overrides[1] = "someone-else"
    b, *_ = _bootstrapper(tmp_path, service=service, node_count=2)

    with pytest.raises(ProtocolFailure, match="cluster ID"):
        b.bootstrap()


def test_start_failure_is_wrapped_and_teardown_tolerates_stop_errors(tmp_path: Path):
    launcher = FakeLauncher(
        fail_start={"node-1": RuntimeError("no such image")},
        fail_stop={"bed-node-0"},
    )
    b, service, launcher, capture, clients = _bootstrapper(tmp_path, launcher=launcher, node_count=3)

    with pytest.raises(ProcessStartFailure, match="no such image"):
        b.bootstrap()
    assert [e.node for e in capture.of(NodeStarted)] == ["bed-node-0"]
    assert capture.of(BootstrapFailed)[0].state == "nodes_starting"

    b.teardown()   # must not raise

    assert launcher.stopped == ["bed-node-0"]
    assert [e.node for e in capture.of(NodeStopFailed)] == ["bed-node-0"]
    assert clients[0].closed
    assert all(n.handle is None for n in b.cluster.nodes)


def test_pinned_ca_is_reused_for_every_leaf(tmp_path: Path):
    pinned = create_authority(tmp_path / "pinned")
    b, _, _, capture, _ = _bootstrapper(
        tmp_path,
        node_count=2,
        ca_cert_pem=pinned.cert_pem.decode(),
        ca_key_pem=pinned.key_pem.decode(),
    )

    cluster = b.bootstrap()

    assert cluster.ca_cert_pem == pinned.cert_pem
    assert capture.of(CAProvisioned)[0].pinned is True
    for node in cluster.nodes:
        node.identity.cert.verify_directly_issued_by(pinned.cert)


def test_skip_init_stops_after_nodes_start(tmp_path: Path):
    b, service, *_ = _bootstrapper(tmp_path, node_count=2, skip_init=True)

    cluster = b.bootstrap()

    assert b.state is BootstrapState.NODES_STARTED
    assert service.init_calls == 0
    assert cluster.root_token == ""
    assert cluster.get_barrier_keys() == []
    assert all(n.started for n in cluster.nodes)


def test_static_membership_uses_retry_join_instead_of_join_calls(tmp_path: Path):
    b, service, *_ = _bootstrapper(tmp_path, node_count=2, membership="static")

    cluster = b.bootstrap()

    assert service.join_calls == []
    seed_cfg = json.loads((cluster.nodes[0].work_dir / "local.json").read_text())
    follower_cfg = json.loads((cluster.nodes[1].work_dir / "local.json").read_text())
    assert "retry_join" not in seed_cfg["storage"]["raft"]
    assert follower_cfg["storage"]["raft"]["retry_join"][0]["leader_api_addr"] == "https://bed-node-0:8200"
    assert b.state is BootstrapState.READY


def test_node_directories_are_staged_before_launch(tmp_path: Path):
    b, _, launcher, *_ = _bootstrapper(tmp_path, node_count=2)
    cluster = b.bootstrap()

    for node, spec in zip(cluster.nodes, launcher.specs):
        assert spec.work_dir == node.work_dir
        assert spec.ca_file == cluster.ca_cert_pem_file
        assert (node.work_dir / "ca.pem").read_bytes() == cluster.ca_cert_pem
        cfg = json.loads((node.work_dir / "local.json").read_text())
        assert cfg["storage"]["raft"]["node_id"] == node.node_id
        sans = node.identity.cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert node.name in sans.get_values_for_type(x509.DNSName)
        assert node.tls_context is not None
        assert node.api_client() is node.client


def test_init_material_is_created_owner_only(tmp_path: Path, monkeypatch):
    work = tmp_path / "work"
    work.mkdir()
    stale = work / ROOT_TOKEN_FILE
    stale.write_text("old token")
    stale.chmod(0o644)

    opened = {}
    real_open = os.open

    def spy_open(path, flags, mode=0o777, *a, **kw):
        opened[Path(path).name] = mode
        return real_open(path, flags, mode, *a, **kw)

    monkeypatch.setattr(os, "open", spy_open)
    b, *_ = _bootstrapper(tmp_path)
    b.bootstrap()
    monkeypatch.undo()

    for name in (ROOT_TOKEN_FILE, BARRIER_KEYS_FILE, RECOVERY_KEYS_FILE):
        assert opened[name] == 0o600
        assert stat.S_IMODE((work / name).stat().st_mode) == 0o600
    assert stale.read_text() == "s.root"
