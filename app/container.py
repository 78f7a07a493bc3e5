"""Dependency wiring helpers for hl-bootstrap."""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

import config
import visor
from errors import DependencyError
from health import EnvironmentHealthChecker, Severity
from network import (
    GossipConfigCache,
    LatencyProber,
    NetworkGuard,
    NetworkIdentity,
    PeerSelector,
    PeerSourceAdapter,
    build_peer_source,
)
from servers import BootstrapMetrics, MetricsServer, SnapshotServer, create_snapshot_app


@dataclass
class ServiceContainer:
    """Simple dependency container to ease testing and wiring."""

    settings: config.Settings
    logger: logging.Logger
    metrics: BootstrapMetrics
    cache: GossipConfigCache
    prober: LatencyProber
    selector: PeerSelector
    health_checker: EnvironmentHealthChecker
    launcher: Any
    overrides: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        *,
        settings: config.Settings,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ServiceContainer":
        # Imported here: supervisor depends on this module
        from supervisor import NodeLauncher

        override_map = overrides or {}
        logger: logging.Logger = override_map.get("logger") or logging.getLogger("app.container")

        health_checker = override_map.get("health_checker") or EnvironmentHealthChecker(
            ignore_ipv6=settings.health.ignore_ipv6,
            ipv6_disabled_severity=Severity.parse(settings.health.ipv6_disabled_severity),
            gossip_config_path=settings.gossip.config_path,
            snapshot_directory=settings.servers.snapshot_directory if settings.servers.snapshot_listen_address else None,
        )

        return cls(
            settings=settings,
            logger=logger,
            metrics=override_map.get("metrics") or BootstrapMetrics(),
            cache=override_map.get("cache") or GossipConfigCache(settings.gossip.config_path),
            prober=override_map.get("prober")
            or LatencyProber(concurrency=settings.gossip.probe_concurrency, connect=override_map.get("connect")),
            selector=override_map.get("selector") or PeerSelector(),
            health_checker=health_checker,
            launcher=override_map.get("launcher") or NodeLauncher(),
            overrides=override_map,
        )

    def build_network_guard(self) -> NetworkGuard:
        return NetworkGuard(
            self.settings.network.network,
            functools.partial(visor.read_visor_config, self.settings.network.visor_config_path),
        )

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.overrides.get("transport"),
            timeout=self.settings.sources.fetch_timeout,
            follow_redirects=True,
            headers={"User-Agent": "hl-bootstrap"},
        )

    def build_peer_source(self, network: NetworkIdentity, client: httpx.AsyncClient) -> PeerSourceAdapter:
        factory = self.overrides.get("peer_source_factory")
        if factory is not None:
            return factory(network, client)
        return build_peer_source(network, self.settings, client)

    def build_visor_installer(self, network: NetworkIdentity, client: httpx.AsyncClient) -> Optional[visor.VisorInstaller]:
        supervisor_settings = self.settings.supervisor
        if not (supervisor_settings.update_visor and supervisor_settings.visor_binary_directory):
            return None
        return visor.VisorInstaller(
            client,
            supervisor_settings.visor_binary_directory,
            network,
            verify=self.overrides.get("visor_verify", visor.gpg_verify),
        )

    def build_auxiliary_servers(self) -> List[Any]:
        servers_settings = self.settings.servers
        servers: List[Any] = []
        if servers_settings.metrics_listen_address:
            servers.append(MetricsServer(self.metrics, servers_settings.metrics_listen_address))
        if servers_settings.snapshot_listen_address:
            try:
                app = create_snapshot_app(
                    servers_settings.snapshot_directory,
                    servers_settings.node_info_url,
                    client=self.overrides.get("snapshot_client"),
                )
            except Exception as exc:
                raise DependencyError(f"failed to build snapshot server: {exc}") from exc
            servers.append(SnapshotServer(app, servers_settings.snapshot_listen_address))
        return servers
