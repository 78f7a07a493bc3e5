"""Central exception hierarchy for hl-bootstrap."""
from __future__ import annotations


class BootstrapError(Exception):
    """Base exception for all custom errors raised by hl-bootstrap."""

    category = "bootstrap error"
    exit_code = 1


class ConfigurationError(BootstrapError):
    """Raised when configuration loading or validation fails."""

    category = "configuration error"
    exit_code = 2


ConfigError = ConfigurationError


class NetworkMismatchError(BootstrapError):
    """Raised when the declared network does not match the deployment."""

    category = "network mismatch"
    exit_code = 3


class PeerFetchError(BootstrapError):
    """Raised when a peer source is exhausted or returns no candidates."""

    category = "peer fetch error"
    exit_code = 4


class ProbeError(BootstrapError):
    """Per-candidate probe failure. Recorded on the measurement, never fatal."""

    category = "probe error"


class NoReliablePeersError(BootstrapError):
    """Raised when no candidate passes the latency threshold."""

    category = "no reliable peers"
    exit_code = 5


class HealthCheckError(BootstrapError):
    """Raised when an environment check produced a fatal finding."""

    category = "health check error"
    exit_code = 6

    def __init__(self, message: str, findings=None) -> None:
        super().__init__(message)
        self.findings = list(findings or [])


class ConfigIOError(BootstrapError):
    """Raised for gossip config read/write failures other than a missing file."""

    category = "gossip config I/O error"
    exit_code = 7


class VisorInstallError(BootstrapError):
    """Raised when the hl-visor binary cannot be refreshed."""

    category = "visor install error"
    exit_code = 8


class LaunchError(BootstrapError):
    """Raised when the node executable cannot be started."""

    category = "launch error"
    exit_code = 10


class DependencyError(BootstrapError):
    """Raised when dependency wiring or injection fails."""

    category = "dependency error"


class AuxiliaryServerError(BootstrapError):
    """Raised when an auxiliary server fails to bind and that is configured fatal."""

    category = "auxiliary server error"
    exit_code = 9


class BootstrapInterrupted(BootstrapError):
    """Raised when a termination signal arrives during a network-bound stage."""

    category = "interrupted"

    def __init__(self, signum: int) -> None:
        super().__init__(f"received signal {signum}")
        self.signum = signum
        self.exit_code = 128 + signum
