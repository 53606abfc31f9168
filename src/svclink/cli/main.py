"""Command-line interface for the svclink controller.

Commands:
    run             Run the sync loop against the local cluster
    config          Print the effective configuration
    slice-name      Show the managed EndpointSlice name for a service/cluster pair
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from typing import Any

import click

from svclink import __version__
from svclink.config import SvclinkConfig, load_config
from svclink.errors import ConfigError
from svclink.reconcile.slices import slice_name

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _resolve_cfg(config_path: str | None, **overrides: Any) -> SvclinkConfig:
    """Layer CLI flags over the environment and svclink.yaml, then validate."""
    try:
        cfg = load_config(config_path)
        return cfg.with_overrides(**overrides).validate()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # The kubernetes client logs every request at DEBUG.
    logging.getLogger("kubernetes").setLevel(max(logging.INFO, logging.getLogger().level))


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """svclink: sync service endpoints from remote clusters into this one."""


# --- run command ---


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to svclink.yaml")
@click.option("--sync-interval", type=float, default=None, help="Seconds between sync cycles")
@click.option(
    "--kubeconfig", default=None,
    help="Path to kubeconfig file (for local development; in-cluster config otherwise)",
)
@click.option(
    "--included-namespaces", default=None,
    help="Comma-separated global namespace filter applied to every cluster",
)
@click.option(
    "--sync-services-to-local-cluster/--no-sync-services-to-local-cluster",
    default=None,
    help="Create services found in remote clusters when missing locally",
)
@click.option("--request-timeout", type=float, default=None, help="Per-request API timeout")
@click.option("--max-workers", type=int, default=None, help="Services synced in parallel")
@click.option("--health-port", type=int, default=None, help="Serve /healthz, /readyz, /status")
@click.option("--health-host", default="0.0.0.0", help="Bind address for health endpoints")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...)")
@click.option("--once", is_flag=True, help="Run a single sync cycle and exit")
def run(
    config_path: str | None,
    sync_interval: float | None,
    kubeconfig: str | None,
    included_namespaces: str | None,
    sync_services_to_local_cluster: bool | None,
    request_timeout: float | None,
    max_workers: int | None,
    health_port: int | None,
    health_host: str,
    log_level: str | None,
    once: bool,
) -> None:
    """Run the svclink sync loop."""
    cfg = _resolve_cfg(
        config_path,
        sync_interval=sync_interval,
        kubeconfig=kubeconfig,
        included_namespaces=included_namespaces,
        sync_services_to_local_cluster=sync_services_to_local_cluster,
        request_timeout=request_timeout,
        max_workers=max_workers,
        health_port=health_port,
        log_level=log_level,
    )
    _setup_logging(cfg.log_level)
    logger = logging.getLogger("svclink")
    logger.info("Start svclink, version: %s", __version__)

    from svclink.controller import Controller

    try:
        controller = Controller.from_config(cfg)
    except Exception as e:
        click.echo(f"Error: failed to create controller: {e}", err=True)
        sys.exit(1)

    if once:
        report = controller.sync_once()
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        sys.exit(0 if report.ok else 1)

    stop = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    server = None
    if cfg.health_port is not None:
        from svclink.health import create_app, serve_in_background

        server, _ = serve_in_background(create_app(controller), health_host, cfg.health_port)

    try:
        controller.run(stop)
    finally:
        if server is not None:
            server.should_exit = True


# --- config command ---


@cli.command("config")
@click.option("--config", "config_path", default=None, help="Path to svclink.yaml")
def show_config(config_path: str | None) -> None:
    """Print the effective configuration as JSON."""
    cfg = _resolve_cfg(config_path)
    data = {
        "config_path": str(cfg.config_path) if cfg.config_path else None,
        "sync_interval": cfg.sync_interval,
        "included_namespaces": list(cfg.included_namespaces),
        "sync_services_to_local_cluster": cfg.sync_services_to_local_cluster,
        "kubeconfig": cfg.kubeconfig,
        "request_timeout": cfg.request_timeout,
        "max_workers": cfg.max_workers,
        "health_port": cfg.health_port,
        "log_level": cfg.log_level,
    }
    click.echo(json.dumps(data, indent=2))


# --- slice-name command ---


@cli.command("slice-name")
@click.argument("service")
@click.argument("cluster")
def show_slice_name(service: str, cluster: str) -> None:
    """Print the EndpointSlice name svclink uses for SERVICE from CLUSTER."""
    click.echo(slice_name(service, cluster))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
