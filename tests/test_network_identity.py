import json

import pytest

import visor
from errors import ConfigurationError, NetworkMismatchError
from network import DEFAULT_NETWORK, NetworkGuard, NetworkIdentity


@pytest.mark.parametrize("raw", ["Mainnet", "mainnet", " MAINNET "])
def test_parse_is_case_insensitive(raw):
    assert NetworkIdentity.parse(raw) is NetworkIdentity.MAINNET


def test_parse_rejects_unknown_chain():
    with pytest.raises(ValueError, match="unsupported chain"):
        NetworkIdentity.parse("Devnet")


def test_str_is_canonical_name():
    assert str(NetworkIdentity.TESTNET) == "Testnet"


def test_guard_accepts_matching_declaration():
    guard = NetworkGuard("testnet", lambda: NetworkIdentity.TESTNET)
    assert guard.validate() is NetworkIdentity.TESTNET


def test_guard_rejects_mismatch():
    guard = NetworkGuard("Mainnet", lambda: NetworkIdentity.TESTNET)
    with pytest.raises(NetworkMismatchError, match="does not match"):
        guard.validate()


def test_guard_uses_marker_when_nothing_declared():
    guard = NetworkGuard(None, lambda: NetworkIdentity.TESTNET)
    assert guard.validate() is NetworkIdentity.TESTNET


def test_guard_defaults_without_declaration_or_marker():
    guard = NetworkGuard(None, lambda: None)
    assert guard.validate() is DEFAULT_NETWORK


def test_guard_trusts_declaration_without_marker():
    guard = NetworkGuard("Testnet", lambda: None)
    assert guard.validate() is NetworkIdentity.TESTNET


def test_visor_marker_round_trip(tmp_path):
    path = tmp_path / "visor.json"
    assert visor.read_visor_config(str(path)) is None
    visor.write_visor_config(str(path), NetworkIdentity.TESTNET)
    assert json.loads(path.read_text()) == {"chain": "Testnet"}
    assert visor.read_visor_config(str(path)) is NetworkIdentity.TESTNET


@pytest.mark.parametrize("content", ["{not json", "{}", '{"chain": "Devnet"}', "[]"])
def test_malformed_visor_marker_is_config_error(tmp_path, content):
    path = tmp_path / "visor.json"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        visor.read_visor_config(str(path))
