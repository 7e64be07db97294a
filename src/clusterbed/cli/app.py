# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer

from clusterbed.bootstrap.bootstrapper import ClusterBootstrapper, ROOT_TOKEN_FILE
from clusterbed.config.loader import load_options
from clusterbed.config.models import ClusterOptions
from clusterbed.errors import ClusterBedError
from clusterbed.identity.authority import issue_leaf, load_authority
from clusterbed.logging.log import init_logging
from clusterbed.observers.jsonfile import JsonFileObserver
from clusterbed.observers.logger import LoggerObserver
from clusterbed.runtime.docker import DockerLauncher


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Bootstrap throwaway multi-node clusters for acceptance tests")


def _options(config: Optional[Path], nodes: Optional[int], work_dir: Optional[Path]) -> ClusterOptions:
    opts = load_options(config) if config else ClusterOptions()
    overrides = {}
    if nodes is not None:
        overrides["node_count"] = nodes
    if work_dir is not None:
        overrides["work_dir"] = work_dir
    if overrides:
        opts = ClusterOptions.model_validate({**opts.model_dump(), **overrides})
    return opts


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def up(
    config: Optional[Path] = typer.Option(None, "--config", help="Cluster options YAML"),
    nodes: Optional[int] = typer.Option(None, "--nodes", min=1, help="Override node_count"),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Override work_dir"),
    keep_on_failure: bool = typer.Option(False, "--keep-on-failure", help="Leave nodes running if bootstrap fails"),
    debug: bool = typer.Option(False, "--debug"),
):
    """
    Start the nodes and drive them to a ready, unsealed cluster.
    """
    opts = _options(config, nodes, work_dir)
    logger, run_id, log_path = init_logging(cluster=opts.name, verbose=debug)

    observers = [
        LoggerObserver(logger),
        JsonFileObserver(log_path.with_suffix(".jsonl")),
    ]
    bootstrapper = ClusterBootstrapper(
        opts,
        DockerLauncher(opts.runtime),
        observers=observers,
        run_id=run_id,
    )

    try:
        cluster = bootstrapper.bootstrap()
    except ClusterBedError as exc:
        typer.secho(f"[up] bootstrap failed in {bootstrapper.state.value}: {exc}", fg=typer.colors.RED, err=True)
        if keep_on_failure:
            typer.echo("[up] --keep-on-failure set, nodes left running")
        else:
            bootstrapper.teardown()
        raise typer.Exit(code=1)

    typer.echo(f"[up] cluster {cluster.name} ({bootstrapper.state.value})")
    typer.echo(f"  work dir:   {cluster.work_dir}")
    typer.echo(f"  CA:         {cluster.ca_cert_pem_file}")
    if cluster.root_token:
        typer.echo(f"  root token: {cluster.work_dir / ROOT_TOKEN_FILE}")
        typer.echo(f"  cluster id: {cluster.cluster_id}")
    for node in cluster.nodes:
        typer.echo(f"  {node.name}: {node.handle.api_address} (network {node.endpoint})")


@app.command()
def down(
    config: Optional[Path] = typer.Option(None, "--config", help="Cluster options YAML"),
    nodes: Optional[int] = typer.Option(None, "--nodes", min=1, help="Override node_count"),
):
    """
    Force-remove every node container named by the options.
    """
    opts = _options(config, nodes, None)
    launcher = DockerLauncher(opts.runtime)
    failed = 0
    for name in opts.node_names():
        try:
            launcher.stop_by_name(name)
            typer.echo(f"[down] removed {name}")
        except ClusterBedError as exc:
            failed += 1
            typer.secho(f"[down] {exc}", fg=typer.colors.YELLOW, err=True)
    if failed:
        raise typer.Exit(code=1)


@app.command("issue-cert")
def issue_cert(
    ca_dir: Path = typer.Option(..., "--ca-dir", help="Directory holding ca.pem and ca_key.pem"),
    name: str = typer.Option(..., "--name", help="Subject common name"),
    out: Path = typer.Option(..., "--out", help="Where to write cert.pem and key.pem"),
    alt_name: List[str] = typer.Option([], "--alt-name", help="Extra DNS name or IP (repeatable)"),
):
    """
    Issue an extra leaf identity from a persisted cluster CA.
    """
    try:
        authority = load_authority(ca_dir)
        leaf = issue_leaf(authority, name, alt_name, out_dir=out)
    except ClusterBedError as exc:
        typer.secho(f"[issue-cert] {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"[issue-cert] {leaf.cert_file}")
    typer.echo(f"[issue-cert] {leaf.key_file}")


if __name__ == "__main__":
    app()
