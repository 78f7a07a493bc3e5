"""hl-bootstrap command line entry point."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple

import config
import hl_logging
from app.container import ServiceContainer
from errors import BootstrapError, ConfigurationError
from supervisor import ProcessSupervisor
from utils import parse_duration

logger = logging.getLogger(__name__)

# (dest, section, key) for flags that map one-to-one onto settings
_FLAG_TARGETS: List[Tuple[str, str, str]] = [
    ("network", "network", "network"),
    ("visor_config_path", "network", "visor_config_path"),
    ("override_gossip_config_path", "gossip", "config_path"),
    ("override_gossip_config_max_age", "gossip", "max_age"),
    ("seed_peers_amount", "gossip", "peers_amount"),
    ("seed_peers_max_latency", "gossip", "max_latency"),
    ("seed_peers_probe_timeout", "gossip", "probe_timeout"),
    ("seed_peers_ignored", "gossip", "ignored_peers"),
    ("gossip_port", "gossip", "gossip_port"),
    ("probe_concurrency", "gossip", "probe_concurrency"),
    ("fetch_retries", "sources", "fetch_retries"),
    ("fetch_timeout", "sources", "fetch_timeout"),
    ("ignore_ipv6", "health", "ignore_ipv6"),
    ("ipv6_disabled_severity", "health", "ipv6_disabled_severity"),
    ("metrics_listen_address", "servers", "metrics_listen_address"),
    ("snapshot_server_listen_address", "servers", "snapshot_listen_address"),
    ("snapshot_directory", "servers", "snapshot_directory"),
    ("node_info_url", "servers", "node_info_url"),
    ("fail_on_server_error", "servers", "fail_on_server_error"),
    ("auxiliary_servers_after_exit", "supervisor", "auxiliary_servers_after_exit"),
    ("visor_binary_directory", "supervisor", "visor_binary_directory"),
    ("update_visor", "supervisor", "update_visor"),
    ("log_level", "logging", "level"),
]


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on usage errors, which is also the config error code."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(ConfigurationError.exit_code, f"{self.prog}: error: {message}\n")


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _peer_list(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="hl-bootstrap",
        description="Prepare a Hyperliquid non-validator node's gossip config, then hand off to the node.",
        usage="%(prog)s [flags] [-- node-executable [node-args...]]",
    )
    parser.add_argument("--env", help="Settings profile (development, test, production)")
    parser.add_argument("--network", help="Expected network: Mainnet or Testnet")
    parser.add_argument("--visor-config-path", help="Path of hl-visor's visor.json network marker")
    parser.add_argument("--override-gossip-config-path", help="Where to write the gossip config (required)")
    parser.add_argument("--override-gossip-config-max-age", type=_duration, help="Reuse a config younger than this")
    parser.add_argument("--seed-peers-amount", type=int, help="Maximum number of seed peers to write")
    parser.add_argument("--seed-peers-max-latency", type=_duration, help="Latency threshold, e.g. 80ms")
    parser.add_argument("--seed-peers-probe-timeout", type=_duration, help="Per-peer connect timeout")
    parser.add_argument("--seed-peers-ignored", type=_peer_list, help="Comma separated seed peer IPs to skip")
    parser.add_argument("--gossip-port", type=int, help="TCP port probed on each seed peer")
    parser.add_argument("--probe-concurrency", type=int, help="Maximum concurrent probes")
    parser.add_argument("--fetch-retries", type=int, help="Attempts per peer source request")
    parser.add_argument("--fetch-timeout", type=_duration, help="Timeout of each peer source request")
    parser.add_argument("--ignore-ipv6", action="store_true", default=None, help="Skip the IPv6 check")
    parser.add_argument("--ipv6-disabled-severity", choices=config.SEVERITY_CHOICES, help="Severity when IPv6 is off")
    parser.add_argument("--metrics-listen-address", help="host:port for the Prometheus endpoint")
    parser.add_argument("--snapshot-server-listen-address", help="host:port for the snapshot server")
    parser.add_argument("--snapshot-directory", help="Directory served by the snapshot server")
    parser.add_argument("--node-info-url", help="The node's info API used to request snapshots")
    parser.add_argument(
        "--fail-on-server-error",
        action="store_true",
        default=None,
        help="Abort when an auxiliary server cannot bind",
    )
    parser.add_argument(
        "--auxiliary-servers-after-exit",
        choices=config.AFTER_EXIT_CHOICES,
        help="What auxiliary servers do once the node exits",
    )
    parser.add_argument("--visor-binary-directory", help="Directory holding the hl-visor binary")
    parser.add_argument("--update-visor", action="store_true", default=None, help="Refresh hl-visor before launch")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser


def split_command(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Splits `flags -- command...` into its two halves."""
    argv = list(argv)
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1:]
    return argv, []


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for dest, section, key in _FLAG_TARGETS:
        value = getattr(args, dest, None)
        if value is None:
            continue
        overrides.setdefault(section, {})[key] = value
    return overrides


def main(argv: Optional[Sequence[str]] = None) -> None:
    flags, command = split_command(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(flags)

    try:
        settings = config.load_settings(env=args.env, overrides=overrides_from_args(args))
    except ConfigurationError as exc:
        hl_logging.configure()
        logger.critical("startup failed: %s: %s", exc.category, exc)
        sys.exit(exc.exit_code)

    hl_logging.configure(settings.logging)
    logger.debug("Effective settings: %s", settings.to_dict())

    supervisor: Optional[ProcessSupervisor] = None
    try:
        container = ServiceContainer.build(settings=settings, overrides={"logger": logger})
        supervisor = ProcessSupervisor(container, command)
        status = supervisor.run()
    except BootstrapError as exc:
        stage = supervisor.failed_stage.value if supervisor and supervisor.failed_stage else "startup"
        logger.critical("%s failed: %s: %s", stage, exc.category, exc)
        sys.exit(exc.exit_code)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, shutting down...")
        sys.exit(130)
    except Exception:
        logger.exception("An unexpected bootstrap error occurred.")
        sys.exit(1)
    sys.exit(status)


if __name__ == "__main__":
    main()
