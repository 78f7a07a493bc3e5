"""Host-level preconditions checked before the node is launched."""
from __future__ import annotations

import enum
import logging
import os
import socket
from dataclasses import dataclass
from typing import Callable, List, Optional

from errors import HealthCheckError

logger = logging.getLogger(__name__)

DISABLE_IPV6_SYSCTL = "net.ipv6.conf.all.disable_ipv6"


class Severity(enum.Enum):
    FATAL = "fatal"
    WARNING = "warning"

    @classmethod
    def parse(cls, value) -> "Severity":
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().lower())


@dataclass(frozen=True)
class Finding:
    check: str
    severity: Severity
    message: str

    @property
    def fatal(self) -> bool:
        return self.severity is Severity.FATAL


@dataclass(frozen=True)
class HealthReport:
    findings: List[Finding]

    @property
    def fatal(self) -> List[Finding]:
        return [f for f in self.findings if f.fatal]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if not f.fatal]

    def raise_for_fatal(self) -> None:
        fatal = self.fatal
        if fatal:
            details = "; ".join(f"{f.check}: {f.message}" for f in fatal)
            raise HealthCheckError(f"{len(fatal)} fatal environment finding(s): {details}", findings=fatal)


def read_sysctl(key: str, proc_root: str = "/proc/sys") -> str:
    path = os.path.join(proc_root, *key.split("."))
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read().strip()


def _ipv6_socket_available() -> bool:
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        return False
    sock.close()
    return True


class EnvironmentHealthChecker:
    """
    Runs checks that need no network I/O. A check returns a Finding when
    something is wrong and None otherwise.
    """

    def __init__(
        self,
        *,
        ignore_ipv6: bool = False,
        ipv6_disabled_severity: Severity = Severity.FATAL,
        gossip_config_path: Optional[str] = None,
        snapshot_directory: Optional[str] = None,
        sysctl_reader: Callable[[str], str] = read_sysctl,
        ipv6_socket_probe: Callable[[], bool] = _ipv6_socket_available,
    ) -> None:
        self._ignore_ipv6 = ignore_ipv6
        self._ipv6_severity = Severity.parse(ipv6_disabled_severity)
        self._gossip_config_path = gossip_config_path
        self._snapshot_directory = snapshot_directory
        self._read_sysctl = sysctl_reader
        self._ipv6_socket_probe = ipv6_socket_probe

    def check(self) -> List[Finding]:
        findings: List[Finding] = []
        for check in (self._check_ipv6, self._check_gossip_config_directory, self._check_snapshot_directory):
            finding = check()
            if finding is None:
                continue
            findings.append(finding)
            if finding.fatal:
                logger.error("Health check %s failed: %s", finding.check, finding.message)
            else:
                logger.warning("Health check %s: %s", finding.check, finding.message)
        return findings

    def run(self) -> HealthReport:
        return HealthReport(self.check())

    def _check_ipv6(self) -> Optional[Finding]:
        if self._ignore_ipv6:
            logger.debug("IPv6 check skipped")
            return None

        reason = None
        if not socket.has_ipv6:
            reason = "Python was built without IPv6 support"
        else:
            try:
                value = self._read_sysctl(DISABLE_IPV6_SYSCTL)
            except OSError:
                value = None
            if value == "1":
                reason = f"{DISABLE_IPV6_SYSCTL} = 1"
            elif not self._ipv6_socket_probe():
                reason = "cannot create an AF_INET6 socket"

        if reason is None:
            return None
        return Finding(
            check="ipv6",
            severity=self._ipv6_severity,
            message=f"IPv6 appears to be disabled ({reason}); IPv6-only peers will be unreachable",
        )

    def _check_gossip_config_directory(self) -> Optional[Finding]:
        if not self._gossip_config_path:
            return None
        directory = os.path.dirname(os.path.abspath(self._gossip_config_path))
        if not os.path.isdir(directory):
            return Finding("gossip-config-directory", Severity.FATAL, f"{directory} does not exist")
        if not os.access(directory, os.W_OK):
            return Finding("gossip-config-directory", Severity.FATAL, f"{directory} is not writable")
        return None

    def _check_snapshot_directory(self) -> Optional[Finding]:
        if not self._snapshot_directory:
            return None
        if not os.path.isdir(self._snapshot_directory):
            return Finding(
                "snapshot-directory",
                Severity.WARNING,
                f"{self._snapshot_directory} does not exist; the snapshot server will have nothing to serve",
            )
        return None
