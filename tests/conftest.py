"""Shared pytest fixtures for the hl-bootstrap test-suite."""
from __future__ import annotations

import datetime
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import config
import hl_logging
from network import PeerCandidate, PeerMeasurement


@pytest.fixture(scope="session", autouse=True)
def test_environment() -> Iterator[None]:
    """Ensure tests run with the dedicated 'test' profile and logging."""
    original_env = os.environ.get("HL_BOOTSTRAP_ENV")
    os.environ["HL_BOOTSTRAP_ENV"] = "test"

    hl_logging.configure(config.load_settings(env="test", overrides={"gossip": {"config_path": "unused.json"}}).logging)

    yield

    if original_env is None:
        os.environ.pop("HL_BOOTSTRAP_ENV", None)
    else:
        os.environ["HL_BOOTSTRAP_ENV"] = original_env


@pytest.fixture(autouse=True)
def clean_bootstrap_env(monkeypatch) -> None:
    """Keeps HL_BOOTSTRAP_* variables from the developer's shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("HL_BOOTSTRAP_") and key != "HL_BOOTSTRAP_ENV":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def make_settings(tmp_path):
    """Builds test-profile settings writing the gossip config into tmp_path."""

    def _make(**sections):
        overrides = {
            "network": {"visor_config_path": str(tmp_path / "visor.json")},
            "gossip": {"config_path": str(tmp_path / "override_gossip_config.json")},
            "health": {"ignore_ipv6": True},
        }
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        return config.load_settings(env="test", overrides=overrides, environ={})

    return _make


def _measurement(ip: str, latency_ms, port: int = 4001, source: str = "test") -> PeerMeasurement:
    latency = None if latency_ms is None else latency_ms / 1000.0
    return PeerMeasurement(
        candidate=PeerCandidate(ip=ip, port=port, source=source),
        latency=latency,
        probed_at=datetime.datetime(2026, 10, 17, tzinfo=datetime.timezone.utc),
        error=None if latency is not None else "timed out",
    )


@pytest.fixture()
def make_measurement():
    return _measurement


# Named candidates used across the selection scenarios
SCENARIO = [
    ("A", "10.0.0.1", 50),
    ("B", "10.0.0.2", 120),
    ("C", "10.0.0.3", 30),
    ("D", "10.0.0.4", 70),
    ("E", "10.0.0.5", None),
]


@pytest.fixture()
def scenario_measurements():
    return [_measurement(ip, latency) for _name, ip, latency in SCENARIO]
