"""Persisted override gossip config: freshness checks and crash-safe replacement."""
from __future__ import annotations

import contextlib
import datetime
import errno
import fcntl
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from errors import ConfigIOError
from utils import format_timestamp, parse_timestamp, utc_now
from .identity import NetworkIdentity

logger = logging.getLogger(__name__)

# hl-node accepts n_gossip_peers in [1, 100]; it is only written above its default of 8
N_GOSSIP_PEERS_DEFAULT = 8
N_GOSSIP_PEERS_MAX = 100

_OWN_KEYS = {"network", "generatedAt", "peers", "chain", "root_node_ips", "try_new_peers", "n_gossip_peers"}


@dataclass(frozen=True)
class GossipPeer:
    ip: str
    port: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ip": self.ip, "port": self.port}


@dataclass
class GossipConfig:
    network: NetworkIdentity
    generated_at: datetime.datetime
    peers: List[GossipPeer]
    # Keys found in an existing file that this tool does not manage
    extra: Dict[str, Any] = field(default_factory=dict)

    def age(self, now: Optional[datetime.datetime] = None) -> float:
        return ((now or utc_now()) - self.generated_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "network": self.network.value,
                "generatedAt": format_timestamp(self.generated_at),
                "peers": [peer.to_dict() for peer in self.peers],
                # Fields read by hl-node itself
                "chain": self.network.value,
                "root_node_ips": [{"Ip": peer.ip} for peer in self.peers],
                "try_new_peers": True,
            }
        )
        if len(self.peers) > N_GOSSIP_PEERS_DEFAULT:
            payload["n_gossip_peers"] = min(len(self.peers), N_GOSSIP_PEERS_MAX)
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "GossipConfig":
        if not isinstance(payload, dict):
            raise ValueError("gossip config must be a JSON object")
        network = NetworkIdentity.parse(payload["network"])
        generated_at = parse_timestamp(payload["generatedAt"])
        raw_peers = payload.get("peers")
        if not isinstance(raw_peers, list):
            raise ValueError("gossip config 'peers' must be a list")
        peers = []
        for entry in raw_peers:
            if not isinstance(entry, dict) or not isinstance(entry.get("ip"), str):
                raise ValueError(f"invalid peer entry: {entry!r}")
            port = entry.get("port")
            if isinstance(port, bool) or not isinstance(port, int) or not (1 <= port <= 65535):
                raise ValueError(f"invalid peer port: {entry!r}")
            peers.append(GossipPeer(ip=entry["ip"], port=port))
        extra = {key: value for key, value in payload.items() if key not in _OWN_KEYS}
        return cls(network=network, generated_at=generated_at, peers=peers, extra=extra)


class GossipConfigCache:
    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)

    @property
    def lock_path(self) -> str:
        return f"{self.path}.lock"

    def load(self) -> Optional[GossipConfig]:
        """Parses the file; None when it is missing or malformed."""
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = handle.read()
        except FileNotFoundError:
            logger.debug("Gossip config %s does not exist", self.path)
            return None
        except IsADirectoryError as exc:
            raise ConfigIOError(f"gossip config path {self.path} is a directory") from exc
        except OSError as exc:
            raise ConfigIOError(f"failed to read gossip config {self.path}: {exc}") from exc

        try:
            return GossipConfig.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unparsable gossip config %s: %s", self.path, exc)
            return None

    def load_if_fresh(
        self,
        network: NetworkIdentity,
        max_age: float,
        now: Optional[datetime.datetime] = None,
    ) -> Optional[GossipConfig]:
        config = self.load()
        if config is None:
            return None
        if config.network is not network:
            logger.info("Gossip config is for %s, current network is %s; refreshing", config.network, network)
            return None
        if not config.peers:
            logger.info("Gossip config lists no peers; refreshing")
            return None
        age = config.age(now)
        if age < 0:
            logger.warning("Gossip config generatedAt is %.0fs in the future; refreshing", -age)
            return None
        logger.debug("Gossip config age %.1fs, max age %.1fs (%s)", age, max_age, self.path)
        if age > max_age:
            logger.info("Gossip config is %.0fs old (max %.0fs); refreshing", age, max_age)
            return None
        return config

    def write_atomic(self, config: GossipConfig) -> None:
        """Replaces the file via temp-file + fsync + rename, retrying once."""
        payload = json.dumps(config.to_dict(), indent=2) + "\n"
        try:
            atomic_write_text(self.path, payload)
        except OSError as exc:
            logger.warning("Writing gossip config failed (%s), retrying once", exc)
            try:
                atomic_write_text(self.path, payload)
            except OSError as retry_exc:
                raise ConfigIOError(f"failed to write gossip config {self.path}: {retry_exc}") from retry_exc
        logger.info("Wrote gossip config with %d peers to %s", len(config.peers), self.path)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Exclusive advisory lock serializing the check-then-write sequence across processes."""
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise ConfigIOError(f"failed to open lock file {self.lock_path}: {exc}") from exc
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    raise ConfigIOError(f"failed to lock {self.lock_path}: {exc}") from exc
                logger.info("Another bootstrap run holds %s, waiting", self.lock_path)
                fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def atomic_write_text(path: str, content: str, mode: int = 0o644) -> None:
    directory = os.path.dirname(os.path.abspath(path)) or "."
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise
    _fsync_directory(directory)


def _fsync_directory(directory: str) -> None:
    try:
        dir_fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        logger.debug("Directory fsync not supported for %s", directory)
    finally:
        os.close(dir_fd)
