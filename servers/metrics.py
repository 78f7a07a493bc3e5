"""
Prometheus metrics for the bootstrap sequence.

The supervisor pushes read-only snapshots in after each stage; scrapes only
read them.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, start_http_server

from utils import parse_listen_address, utc_now

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


class BootstrapMetrics:
    """Collectors registered on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self._generated_at = None

        self.peer_latency = Gauge(
            "hl_bootstrap_peer_latency_seconds",
            "TCP connect latency of each reachable candidate in the last probing round",
            ["ip", "port", "source"],
            registry=self.registry,
        )
        self.peer_reachable = Gauge(
            "hl_bootstrap_peer_reachable",
            "Whether each candidate answered within its probe timeout in the last probing round",
            ["ip", "port", "source"],
            registry=self.registry,
        )
        self.selected_peers = Gauge(
            "hl_bootstrap_selected_peers",
            "Number of peers in the current gossip config",
            registry=self.registry,
        )
        self.gossip_config_age = Gauge(
            "hl_bootstrap_gossip_config_age_seconds",
            "Age of the current gossip config",
            registry=self.registry,
        )
        self.gossip_config_age.set_function(self._current_age)
        self.health_findings = Gauge(
            "hl_bootstrap_health_findings",
            "Environment findings of the last health check by severity",
            ["severity"],
            registry=self.registry,
        )
        self.cache_hits = Counter(
            "hl_bootstrap_gossip_config_cache_hits",
            "Runs that reused a fresh gossip config",
            registry=self.registry,
        )
        self.refreshes = Counter(
            "hl_bootstrap_gossip_config_refreshes",
            "Runs that fetched, probed and rewrote the gossip config",
            registry=self.registry,
        )
        self.info = Info("hl_bootstrap", "hl-bootstrap build information", registry=self.registry)

    def _current_age(self) -> float:
        with self._lock:
            generated_at = self._generated_at
        if generated_at is None:
            return float("nan")
        return (utc_now() - generated_at).total_seconds()

    def record_network(self, network) -> None:
        self.info.info({"network": str(network), "version": VERSION})

    def record_measurements(self, measurements: Iterable) -> None:
        self.peer_latency.clear()
        self.peer_reachable.clear()
        for measurement in measurements:
            candidate = measurement.candidate
            labels = (candidate.ip, str(candidate.port), candidate.source)
            self.peer_reachable.labels(*labels).set(1 if measurement.reachable else 0)
            if measurement.reachable:
                self.peer_latency.labels(*labels).set(measurement.latency)

    def record_gossip_config(self, config, *, refreshed: bool) -> None:
        with self._lock:
            self._generated_at = config.generated_at
        self.selected_peers.set(len(config.peers))
        if refreshed:
            self.refreshes.inc()
        else:
            self.cache_hits.inc()

    def record_findings(self, findings: Iterable) -> None:
        counts = {"fatal": 0, "warning": 0}
        for finding in findings:
            counts[finding.severity.value] += 1
        for severity, count in counts.items():
            self.health_findings.labels(severity).set(count)


class MetricsServer:
    """Serves GET /metrics for a BootstrapMetrics registry from a daemon thread."""

    def __init__(self, metrics: BootstrapMetrics, listen_address: str) -> None:
        self.metrics = metrics
        self.listen_address = listen_address
        self.host, self.port = parse_listen_address(listen_address)
        self._server = None
        self._thread = None

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_address[1]

    def start(self) -> None:
        """Binds and starts serving. Raises OSError when the address is unavailable."""
        if self._server is not None:
            logger.warning("Metrics server already running on %s", self.listen_address)
            return
        self._server, self._thread = start_http_server(self.port, addr=self.host, registry=self.metrics.registry)
        logger.info("Prometheus metrics server started on http://%s:%s/metrics", self.host, self.bound_port)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)
        self._server = None
        self._thread = None
        logger.info("Metrics server on %s stopped", self.listen_address)
