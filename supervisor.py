"""
Bootstrap sequence and handoff to the node.

INIT -> VALIDATING_NETWORK -> CACHE_CHECK -> (FETCHING -> PROBING -> SELECTING
-> WRITING | CACHE_HIT) -> HEALTH_CHECKING -> LAUNCHING -> HANDOFF, with
ABORTED reachable from every non-terminal state. A run without a node command
ends in COMPLETED after HEALTH_CHECKING.
"""
from __future__ import annotations

import enum
import logging
import os
import shutil
import signal
import subprocess
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import trio

import visor
from app.container import ServiceContainer
from errors import (
    AuxiliaryServerError,
    BootstrapError,
    BootstrapInterrupted,
    LaunchError,
)
from network import GossipConfig, GossipPeer, NetworkIdentity
from utils import format_duration, utc_now

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "HL_BOOTSTRAP_OVERRIDE_GOSSIP_CONFIG_PATH"

FORWARDED_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGHUP", "SIGQUIT", "SIGUSR1", "SIGUSR2")
    if hasattr(signal, name)
)
INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisorState(enum.Enum):
    INIT = "init"
    VALIDATING_NETWORK = "validating-network"
    CACHE_CHECK = "cache-check"
    FETCHING = "fetching"
    PROBING = "probing"
    SELECTING = "selecting"
    WRITING = "writing"
    CACHE_HIT = "cache-hit"
    HEALTH_CHECKING = "health-checking"
    LAUNCHING = "launching"
    HANDOFF = "handoff"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_STATES = {SupervisorState.HANDOFF, SupervisorState.COMPLETED, SupervisorState.ABORTED}


def exit_status(returncode: int) -> int:
    """Maps a Popen return code to a shell exit status."""
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class NodeLauncher:
    """Process-level primitives, kept apart so tests can replace them."""

    def exec(self, executable: str, argv: Sequence[str], env: Dict[str, str]) -> None:
        os.execvpe(executable, list(argv), env)

    def spawn(self, executable: str, argv: Sequence[str], env: Dict[str, str]) -> subprocess.Popen:
        return subprocess.Popen([executable, *argv[1:]], executable=executable, env=env)


class ProcessSupervisor:
    def __init__(self, container: ServiceContainer, command: Sequence[str] = ()) -> None:
        self._container = container
        self._settings = container.settings
        self._command = list(command)
        self._servers: List[Any] = []
        self.state = SupervisorState.INIT
        self.history: List[SupervisorState] = [SupervisorState.INIT]
        self.failed_stage: Optional[SupervisorState] = None
        self.network: Optional[NetworkIdentity] = None
        self.gossip_config: Optional[GossipConfig] = None

    def _transition(self, state: SupervisorState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"cannot leave terminal state {self.state.value}")
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def run(self) -> int:
        """Runs the bootstrap sequence. Returns the exit status (after handoff, the node's)."""
        try:
            network = self._validate_network()
            self._resolve_gossip_config(network)
            self._check_health()
            if not self._command:
                logger.info("Setup done, no node command given")
                self._transition(SupervisorState.COMPLETED)
                return 0
            return self._launch(network)
        except BootstrapError:
            self._abort()
            raise
        except BaseException:
            if self.state not in TERMINAL_STATES:
                self._abort()
            raise

    def _abort(self) -> None:
        if self.state in TERMINAL_STATES:
            return
        self.failed_stage = self.state
        self._transition(SupervisorState.ABORTED)
        self.stop_servers()

    # -- stages ---------------------------------------------------------------

    def _validate_network(self) -> NetworkIdentity:
        self._transition(SupervisorState.VALIDATING_NETWORK)
        network = self._container.build_network_guard().validate()
        self.network = network
        logger.info("Preparing hl-node configuration for %s", network)
        self._container.metrics.record_network(network)

        marker_path = self._settings.network.visor_config_path
        if not os.path.exists(marker_path):
            try:
                visor.write_visor_config(marker_path, network)
            except OSError as exc:
                logger.warning("Could not write hl-visor configuration %s: %s", marker_path, exc)
        return network

    def _resolve_gossip_config(self, network: NetworkIdentity) -> GossipConfig:
        cache = self._container.cache
        gossip = self._settings.gossip
        with cache.lock():
            self._transition(SupervisorState.CACHE_CHECK)
            cached = cache.load_if_fresh(network, gossip.max_age)
            if cached is not None:
                self._transition(SupervisorState.CACHE_HIT)
                logger.info(
                    "Gossip config is fresh (%s old, %d peers), not updating seed peers",
                    format_duration(max(cached.age(), 0.0)),
                    len(cached.peers),
                )
                self._container.metrics.record_gossip_config(cached, refreshed=False)
                self.gossip_config = cached
                return cached

            previous = cache.load()
            selected = self._run_async(self._refresh_peers, network)

            self._transition(SupervisorState.WRITING)
            config = GossipConfig(
                network=network,
                generated_at=utc_now(),
                peers=[GossipPeer(ip=m.candidate.ip, port=m.candidate.port) for m in selected],
                extra=dict(previous.extra) if previous is not None else {},
            )
            cache.write_atomic(config)
        self._container.metrics.record_gossip_config(config, refreshed=True)
        self.gossip_config = config
        return config

    async def _refresh_peers(self, network: NetworkIdentity):
        gossip = self._settings.gossip
        async with self._container.http_client() as client:
            self._transition(SupervisorState.FETCHING)
            source = self._container.build_peer_source(network, client)
            logger.info("Fetching seed nodes for %s (ignored: %s)", network, list(gossip.ignored_peers) or "none")
            candidates = await source.fetch_candidates()
            logger.info("Got %d seed nodes for %s", len(candidates), network)

        self._transition(SupervisorState.PROBING)
        measurements = await self._container.prober.probe_all(candidates, gossip.effective_probe_timeout)
        self._container.metrics.record_measurements(measurements)

        self._transition(SupervisorState.SELECTING)
        return self._container.selector.select(measurements, gossip.max_latency, gossip.peers_amount)

    def _check_health(self) -> None:
        self._transition(SupervisorState.HEALTH_CHECKING)
        report = self._container.health_checker.run()
        self._container.metrics.record_findings(report.findings)
        report.raise_for_fatal()
        if report.warnings:
            logger.warning("Continuing with %d environment warning(s)", len(report.warnings))

    def _launch(self, network: NetworkIdentity) -> int:
        self._transition(SupervisorState.LAUNCHING)
        self._run_async(self._update_visor, network)

        env = self._node_environment()
        executable = shutil.which(self._command[0], path=env.get("PATH"))
        if executable is None:
            raise LaunchError(f"node executable {self._command[0]!r} not found")

        self._start_servers()
        launcher = self._container.launcher
        if not self._servers:
            logger.info("Setup done, executing %s", " ".join(self._command))
            self._transition(SupervisorState.HANDOFF)
            for handler in logging.getLogger().handlers:
                handler.flush()
            try:
                launcher.exec(executable, self._command, env)
            except OSError as exc:
                logger.error("Failed to exec %s: %s", executable, exc)
                return 1
            # Only reachable when the launcher does not replace the process
            return 0

        logger.info("Setup done, running %s alongside auxiliary servers", " ".join(self._command))
        try:
            child = launcher.spawn(executable, self._command, env)
        except OSError as exc:
            raise LaunchError(f"failed to spawn {executable}: {exc}") from exc
        self._transition(SupervisorState.HANDOFF)
        return self._supervise_child(child)

    async def _update_visor(self, network: NetworkIdentity) -> None:
        async with self._container.http_client() as client:
            installer = self._container.build_visor_installer(network, client)
            if installer is not None:
                await installer.ensure_latest()

    # -- helpers --------------------------------------------------------------

    def _run_async(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """
        Runs a network-bound coroutine under trio. SIGINT/SIGTERM cancel it,
        closing in-flight requests and sockets, and raise BootstrapInterrupted.
        """

        async def _main() -> Any:
            received: List[int] = []
            outcome: Dict[str, Any] = {}

            async def _watch_signals(cancel_scope: trio.CancelScope, task_status=trio.TASK_STATUS_IGNORED) -> None:
                with trio.open_signal_receiver(*INTERRUPT_SIGNALS) as signals:
                    task_status.started()
                    async for signum in signals:
                        logger.warning("Received signal %d during %s, abandoning", signum, self.state.value)
                        received.append(signum)
                        cancel_scope.cancel()
                        return

            async with trio.open_nursery() as nursery:
                await nursery.start(_watch_signals, nursery.cancel_scope)
                try:
                    outcome["value"] = await fn(*args)
                except BootstrapError as exc:
                    outcome["error"] = exc
                nursery.cancel_scope.cancel()

            if received:
                raise BootstrapInterrupted(received[0])
            if "error" in outcome:
                raise outcome["error"]
            return outcome.get("value")

        return trio.run(_main)

    def _node_environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env[CONFIG_PATH_ENV] = self._container.cache.path
        binary_dir = self._settings.supervisor.visor_binary_directory
        if binary_dir:
            env["PATH"] = os.pathsep.join(p for p in (binary_dir, env.get("PATH", "")) if p)
        return env

    def _start_servers(self) -> None:
        for server in self._container.build_auxiliary_servers():
            try:
                server.start()
            except OSError as exc:
                message = f"{type(server).__name__} failed to bind {server.listen_address}: {exc}"
                if self._settings.servers.fail_on_server_error:
                    raise AuxiliaryServerError(message) from exc
                logger.error("%s; continuing without it", message)
                continue
            self._servers.append(server)

    def stop_servers(self) -> None:
        while self._servers:
            server = self._servers.pop()
            try:
                server.stop()
            except Exception:
                logger.warning("Error stopping %s", type(server).__name__, exc_info=True)

    def _supervise_child(self, child: subprocess.Popen) -> int:
        stop_requested = threading.Event()
        child_exited = threading.Event()

        def _forward(signum, _frame) -> None:
            if child_exited.is_set():
                stop_requested.set()
                return
            try:
                child.send_signal(signum)
            except ProcessLookupError:
                pass

        previous = {}
        for signum in FORWARDED_SIGNALS:
            try:
                previous[signum] = signal.signal(signum, _forward)
            except (ValueError, OSError):
                continue
        try:
            returncode = child.wait()
            child_exited.set()
            status = exit_status(returncode)
            logger.info("Node exited with status %d", status)
            if self._servers and self._settings.supervisor.auxiliary_servers_after_exit == "keep":
                logger.info("Keeping auxiliary servers running until SIGINT or SIGTERM")
                while not stop_requested.wait(1.0):
                    pass
            return status
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            self.stop_servers()


__all__ = [
    "ProcessSupervisor",
    "SupervisorState",
    "NodeLauncher",
    "exit_status",
    "CONFIG_PATH_ENV",
]
