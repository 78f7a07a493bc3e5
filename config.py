"""Environment-aware configuration for hl-bootstrap."""
from __future__ import annotations

import copy
import ipaddress
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from errors import ConfigurationError
from network.identity import NetworkIdentity
from utils import parse_duration, parse_listen_address


DEFAULT_GOSSIP_PORT = 4001
SEVERITY_CHOICES = ("fatal", "warning")
AFTER_EXIT_CHOICES = ("stop", "keep")


def _coerce_duration(obj: Any, name: str) -> None:
    value = getattr(obj, name)
    if value is None:
        return
    try:
        object.__setattr__(obj, name, parse_duration(value))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid duration for '{name}': {exc}") from exc


@dataclass(frozen=True)
class NetworkSettings:
    network: Optional[str] = None
    visor_config_path: str = "visor.json"

    def validate(self) -> None:
        if self.network is not None:
            try:
                NetworkIdentity.parse(self.network)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        if not self.visor_config_path:
            raise ConfigurationError("Visor config path must be provided.")


@dataclass(frozen=True)
class GossipSettings:
    config_path: str = ""
    max_age: float = 15 * 60.0
    peers_amount: int = 5
    max_latency: float = 0.080
    # Defaults to max_latency when unset
    probe_timeout: Optional[float] = None
    probe_concurrency: int = 64
    gossip_port: int = DEFAULT_GOSSIP_PORT
    ignored_peers: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("max_age", "max_latency", "probe_timeout"):
            _coerce_duration(self, name)
        object.__setattr__(self, "ignored_peers", tuple(self.ignored_peers or ()))

    @property
    def effective_probe_timeout(self) -> float:
        return self.probe_timeout if self.probe_timeout is not None else self.max_latency

    def validate(self) -> None:
        if not self.config_path:
            raise ConfigurationError("Override gossip config path must be provided.")
        if self.peers_amount < 1:
            raise ConfigurationError(f"Seed peers amount must be at least 1 (got {self.peers_amount}).")
        if self.max_latency <= 0:
            raise ConfigurationError("Seed peers max latency must be greater than zero.")
        if self.probe_timeout is not None and self.probe_timeout <= 0:
            raise ConfigurationError("Seed peers probe timeout must be greater than zero.")
        if self.probe_concurrency < 1:
            raise ConfigurationError("Probe concurrency must be at least 1.")
        if not (1 <= self.gossip_port <= 65535):
            raise ConfigurationError(f"Invalid gossip port: {self.gossip_port}")
        for peer in self.ignored_peers:
            try:
                ipaddress.ip_address(peer)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid ignored seed peer IP: {peer!r}") from exc


@dataclass(frozen=True)
class SourceSettings:
    mainnet_api_url: str = "https://api.hyperliquid.xyz/info"
    mainnet_seed_document_url: str = "https://raw.githubusercontent.com/hyperliquid-dex/node/main/README.md"
    testnet_peers_url: str = "https://hyperliquid-testnet.imperator.co/peers.json"
    fetch_retries: int = 3
    fetch_backoff: float = 0.5
    fetch_timeout: float = 10.0

    def __post_init__(self) -> None:
        for name in ("fetch_backoff", "fetch_timeout"):
            _coerce_duration(self, name)

    def validate(self) -> None:
        for name in ("mainnet_api_url", "mainnet_seed_document_url", "testnet_peers_url"):
            if not getattr(self, name):
                raise ConfigurationError(f"Source URL '{name}' must be configured.")
        if self.fetch_retries < 1:
            raise ConfigurationError("Fetch retries must be at least 1.")
        if self.fetch_timeout <= 0:
            raise ConfigurationError("Fetch timeout must be greater than zero.")


@dataclass(frozen=True)
class HealthSettings:
    ignore_ipv6: bool = False
    ipv6_disabled_severity: str = "fatal"

    def validate(self) -> None:
        if self.ipv6_disabled_severity.lower() not in SEVERITY_CHOICES:
            raise ConfigurationError(
                f"IPv6 severity must be one of {', '.join(SEVERITY_CHOICES)} (got {self.ipv6_disabled_severity!r})."
            )


@dataclass(frozen=True)
class ServerSettings:
    metrics_listen_address: Optional[str] = None
    snapshot_listen_address: Optional[str] = None
    snapshot_directory: str = "/data/snapshots"
    node_info_url: str = "http://127.0.0.1:3001/info"
    fail_on_server_error: bool = False

    def validate(self) -> None:
        for name in ("metrics_listen_address", "snapshot_listen_address"):
            value = getattr(self, name)
            if value is None:
                continue
            try:
                parse_listen_address(value)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        if self.snapshot_listen_address and not self.snapshot_directory:
            raise ConfigurationError("Snapshot directory must be configured when the snapshot server is enabled.")
        if not self.node_info_url:
            raise ConfigurationError("Node info URL must be configured.")


@dataclass(frozen=True)
class SupervisorSettings:
    auxiliary_servers_after_exit: str = "stop"
    visor_binary_directory: Optional[str] = None
    update_visor: bool = False

    def validate(self) -> None:
        if self.auxiliary_servers_after_exit not in AFTER_EXIT_CHOICES:
            raise ConfigurationError(
                f"Auxiliary servers policy must be one of {', '.join(AFTER_EXIT_CHOICES)} "
                f"(got {self.auxiliary_servers_after_exit!r})."
            )
        if self.update_visor and not self.visor_binary_directory:
            raise ConfigurationError("Updating hl-visor requires a visor binary directory.")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"

    def validate(self) -> None:
        if not self.level:
            raise ConfigurationError("Logging level must be provided.")
        if not self.format:
            raise ConfigurationError("Logging format must be provided.")


@dataclass(frozen=True)
class Settings:
    env: str
    network: NetworkSettings
    gossip: GossipSettings
    sources: SourceSettings
    health: HealthSettings
    servers: ServerSettings
    supervisor: SupervisorSettings
    logging: LoggingSettings

    def validate(self) -> None:
        self.network.validate()
        self.gossip.validate()
        self.sources.validate()
        self.health.validate()
        self.servers.validate()
        self.supervisor.validate()
        self.logging.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "env": self.env,
            "network": asdict(self.network),
            "gossip": asdict(self.gossip),
            "sources": asdict(self.sources),
            "health": asdict(self.health),
            "servers": asdict(self.servers),
            "supervisor": asdict(self.supervisor),
            "logging": asdict(self.logging),
        }


BASE_DEFAULTS: Dict[str, Any] = {
    "network": asdict(NetworkSettings()),
    "gossip": asdict(GossipSettings()),
    "sources": asdict(SourceSettings()),
    "health": asdict(HealthSettings()),
    "servers": asdict(ServerSettings()),
    "supervisor": asdict(SupervisorSettings()),
    "logging": asdict(LoggingSettings()),
}

ENVIRONMENT_OVERRIDES: Dict[str, Dict[str, Any]] = {
    "development": {},
    "test": {
        "logging": {"level": "DEBUG"},
        "sources": {
            "fetch_retries": 2,
            "fetch_backoff": 0.0,
            "fetch_timeout": 2.0,
        },
    },
    "production": {
        "logging": {"level": "INFO"},
    },
}


def _as_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _as_list(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _as_optional(value: str) -> Optional[str]:
    value = value.strip()
    return value or None


_ENV_VALUE_CASTERS: Dict[str, Any] = {
    "HL_BOOTSTRAP_NETWORK": ("network", "network", _as_optional),
    "HL_BOOTSTRAP_VISOR_CONFIG_PATH": ("network", "visor_config_path", str),
    "HL_BOOTSTRAP_OVERRIDE_GOSSIP_CONFIG_PATH": ("gossip", "config_path", str),
    "HL_BOOTSTRAP_OVERRIDE_GOSSIP_CONFIG_MAX_AGE": ("gossip", "max_age", parse_duration),
    "HL_BOOTSTRAP_SEED_PEERS_AMOUNT": ("gossip", "peers_amount", int),
    "HL_BOOTSTRAP_SEED_PEERS_MAX_LATENCY": ("gossip", "max_latency", parse_duration),
    "HL_BOOTSTRAP_SEED_PEERS_PROBE_TIMEOUT": ("gossip", "probe_timeout", parse_duration),
    "HL_BOOTSTRAP_SEED_PEERS_IGNORED": ("gossip", "ignored_peers", _as_list),
    "HL_BOOTSTRAP_GOSSIP_PORT": ("gossip", "gossip_port", int),
    "HL_BOOTSTRAP_PROBE_CONCURRENCY": ("gossip", "probe_concurrency", int),
    "HL_BOOTSTRAP_MAINNET_API_URL": ("sources", "mainnet_api_url", str),
    "HL_BOOTSTRAP_MAINNET_SEED_DOCUMENT_URL": ("sources", "mainnet_seed_document_url", str),
    "HL_BOOTSTRAP_TESTNET_PEERS_URL": ("sources", "testnet_peers_url", str),
    "HL_BOOTSTRAP_FETCH_RETRIES": ("sources", "fetch_retries", int),
    "HL_BOOTSTRAP_FETCH_BACKOFF": ("sources", "fetch_backoff", parse_duration),
    "HL_BOOTSTRAP_FETCH_TIMEOUT": ("sources", "fetch_timeout", parse_duration),
    "HL_BOOTSTRAP_IGNORE_IPV6": ("health", "ignore_ipv6", _as_bool),
    "HL_BOOTSTRAP_IPV6_DISABLED_SEVERITY": ("health", "ipv6_disabled_severity", lambda value: value.strip().lower()),
    "HL_BOOTSTRAP_METRICS_LISTEN_ADDRESS": ("servers", "metrics_listen_address", _as_optional),
    "HL_BOOTSTRAP_SNAPSHOT_SERVER_LISTEN_ADDRESS": ("servers", "snapshot_listen_address", _as_optional),
    "HL_BOOTSTRAP_SNAPSHOT_DIRECTORY": ("servers", "snapshot_directory", str),
    "HL_BOOTSTRAP_NODE_INFO_URL": ("servers", "node_info_url", str),
    "HL_BOOTSTRAP_FAIL_ON_SERVER_ERROR": ("servers", "fail_on_server_error", _as_bool),
    "HL_BOOTSTRAP_AUXILIARY_SERVERS_AFTER_EXIT": (
        "supervisor",
        "auxiliary_servers_after_exit",
        lambda value: value.strip().lower(),
    ),
    "HL_BOOTSTRAP_VISOR_BINARY_DIRECTORY": ("supervisor", "visor_binary_directory", _as_optional),
    "HL_BOOTSTRAP_UPDATE_VISOR": ("supervisor", "update_visor", _as_bool),
    "HL_BOOTSTRAP_LOG_LEVEL": ("logging", "level", str),
    "HL_BOOTSTRAP_LOG_FORMAT": ("logging", "format", str),
    "HL_BOOTSTRAP_LOG_DATEFMT": ("logging", "datefmt", str),
}


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _overrides_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, (section, key, caster) in _ENV_VALUE_CASTERS.items():
        raw = environ.get(env_key)
        if raw is None:
            continue
        try:
            parsed = caster(raw)
        except Exception as exc:
            raise ConfigurationError(f"Failed to coerce environment variable {env_key}: {exc}") from exc
        overrides.setdefault(section, {})[key] = parsed
    return overrides


def _settings_from_dict(env: str, payload: Dict[str, Any]) -> Settings:
    try:
        return Settings(
            env=env,
            network=NetworkSettings(**payload["network"]),
            gossip=GossipSettings(**payload["gossip"]),
            sources=SourceSettings(**payload["sources"]),
            health=HealthSettings(**payload["health"]),
            servers=ServerSettings(**payload["servers"]),
            supervisor=SupervisorSettings(**payload["supervisor"]),
            logging=LoggingSettings(**payload["logging"]),
        )
    except TypeError as exc:
        raise ConfigurationError(f"Unknown configuration key: {exc}") from exc


def load_settings(
    env: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Builds the immutable settings snapshot.
    Precedence: defaults < environment profile < HL_BOOTSTRAP_* variables < overrides.
    """
    environ = os.environ if environ is None else environ
    env_name = (env or environ.get("HL_BOOTSTRAP_ENV", "development")).lower()
    if env_name not in ENVIRONMENT_OVERRIDES:
        raise ConfigurationError(f"Unknown environment profile: {env_name!r}")
    base = copy.deepcopy(BASE_DEFAULTS)
    base = _deep_merge(base, copy.deepcopy(ENVIRONMENT_OVERRIDES[env_name]))
    base = _deep_merge(base, _overrides_from_env(environ))
    if overrides:
        base = _deep_merge(base, copy.deepcopy(overrides))
    settings_obj = _settings_from_dict(env_name, base)
    settings_obj.validate()
    return settings_obj


__all__ = [
    "Settings",
    "NetworkSettings",
    "GossipSettings",
    "SourceSettings",
    "HealthSettings",
    "ServerSettings",
    "SupervisorSettings",
    "LoggingSettings",
    "BASE_DEFAULTS",
    "ENVIRONMENT_OVERRIDES",
    "DEFAULT_GOSSIP_PORT",
    "load_settings",
]
