# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/runtime/docker.py

from __future__ import annotations

import json
import logging
from typing import List, Optional

from ..config.models import RuntimeOptions
from ..errors import ClusterBedError, ProcessStartFailure
from ..execution.runner import CommandRunner
from .interface import NodeHandle, NodeLaunchSpec

log = logging.getLogger("clusterbed")

CA_TRUST_NAME = "clusterbed-ca.crt"


class DockerLauncher:
    """
    Starts one container per node through the docker CLI.

    Network:    a bridge network with a fixed subnet, reused when it already
                exists with the same subnet, recreated otherwise.
    Container:  files are copied in before start; the entrypoint refreshes
                the CA trust store and execs the server with local.json.
    Endpoint:   the container's IP on the cluster network plus the host port
                docker published for the API port.
    """

    def __init__(self, runtime: RuntimeOptions, *, runner: Optional[CommandRunner] = None):
        self.runtime = runtime
        self.runner = runner or CommandRunner(label="docker")
        self._network_ready = False

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _docker(self) -> List[str]:
        return [self.runtime.docker_bin]

    def _must(self, args: List[str], what: str) -> str:
        result = self.runner.run(self._docker() + args)
        if result.returncode != 0:
            raise ProcessStartFailure(f"{what} failed: {(result.stderr or '').strip()}")
        return (result.stdout or "").strip()

    def _entrypoint(self) -> str:
        cfg = self.runtime.config_dir
        return (
            "update-ca-certificates && "
            f"exec {self.runtime.server_command} -log-level={self.runtime.log_level} "
            f"-dev-plugin-dir={cfg} -config {cfg}/local.json"
        )

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    def ensure_network(self) -> str:
        name, cidr = self.runtime.network_name, self.runtime.network_cidr
        if self._network_ready:
            return name

        result = self.runner.run(
            self._docker()
            + ["network", "inspect", name, "--format", "{{range .IPAM.Config}}{{.Subnet}} {{end}}"]
        )
        if result.returncode == 0:
            if cidr in (result.stdout or "").split():
                log.debug("[docker] reusing network %s (%s)", name, cidr)
                self._network_ready = True
                return name
            log.debug("[docker] network %s has a different subnet, recreating", name)
            self._must(["network", "rm", name], f"removing network {name}")

        self._must(
            ["network", "create", "--driver", "bridge", "--subnet", cidr, name],
            f"couldn't create network {name} on {cidr}",
        )
        self._network_ready = True
        return name

    # -------------------------------------------------------------------------
    # Node lifecycle
    # -------------------------------------------------------------------------

    def start(self, spec: NodeLaunchSpec) -> NodeHandle:
        network = self.ensure_network()
        rt = self.runtime

        # A container left over from an earlier run would hold the name.
        self.runner.run(self._docker() + ["rm", "-f", spec.name])

        env = {
            "VAULT_CLUSTER_INTERFACE": rt.cluster_interface,
            "VAULT_REDIRECT_ADDR": f"https://{spec.name}:{rt.api_port}",
            **spec.env,
        }
        create = [
            "create",
            "--name", spec.name,
            "--hostname", spec.name,
            "--network", network,
            "-p", str(rt.api_port),
            "-p", str(rt.cluster_port),
            "--entrypoint", "/bin/sh",
        ]
        for k, v in env.items():
            create += ["-e", f"{k}={v}"]
        create += [rt.image, "-c", self._entrypoint()]

        container_id = self._must(create, f"creating container {spec.name}")

        copies = [
            (f"{spec.work_dir}/.", rt.config_dir),
            (str(spec.ca_file), f"{rt.ca_trust_dir.rstrip('/')}/{CA_TRUST_NAME}"),
        ]
        if spec.plugin_path:
            copies.append((str(spec.plugin_path), f"{rt.config_dir}/{spec.plugin_path.name}"))

        # No handle is returned on failure, so nobody else can remove it.
        try:
            for src, dest in copies:
                self._must(["cp", src, f"{container_id}:{dest}"], f"copying {src} into {spec.name}")
            self._must(["start", container_id], f"starting container {spec.name}")
            return self._handle(spec.name, container_id, network)
        except ProcessStartFailure:
            log.debug("[docker] removing half-started container %s", spec.name)
            self.runner.run(self._docker() + ["rm", "-f", container_id])
            raise

    def _handle(self, name: str, container_id: str, network: str) -> NodeHandle:
        out = self._must(["inspect", container_id], f"inspecting container {name}")
        try:
            info = json.loads(out)[0]
        except (ValueError, IndexError) as exc:
            raise ProcessStartFailure(f"unreadable inspect output for {name}") from exc

        settings = info.get("NetworkSettings") or {}
        ip = ((settings.get("Networks") or {}).get(network) or {}).get("IPAddress") or settings.get("IPAddress") or ""

        port_key = f"{self.runtime.api_port}/tcp"
        bindings = (settings.get("Ports") or {}).get(port_key) or []
        if not bindings or not bindings[0].get("HostPort"):
            raise ProcessStartFailure(f"could not find port binding for {port_key} on {name}")

        handle = NodeHandle(
            name=name,
            container_id=container_id,
            ip=ip,
            port=self.runtime.api_port,
            host_port=int(bindings[0]["HostPort"]),
        )
        log.debug("[docker] %s up: endpoint=%s api=%s", name, handle.endpoint, handle.api_address)
        return handle

    def stop(self, handle: NodeHandle) -> None:
        self.stop_by_name(handle.container_id)

    def stop_by_name(self, name: str) -> None:
        result = self.runner.run(self._docker() + ["rm", "-f", name])
        if result.returncode != 0:
            raise ClusterBedError(f"failed to remove container {name}: {(result.stderr or '').strip()}")
