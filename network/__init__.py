from .config import PeerCandidate, PeerMeasurement
from .gossip_config import GossipConfig, GossipConfigCache, GossipPeer, atomic_write_text
from .identity import DEFAULT_NETWORK, NetworkGuard, NetworkIdentity
from .prober import LatencyProber
from .selector import PeerSelector
from .sources import MainnetAdapter, PeerSourceAdapter, TestnetAdapter, build_peer_source

__all__ = [
    "PeerCandidate",
    "PeerMeasurement",
    "GossipConfig",
    "GossipConfigCache",
    "GossipPeer",
    "atomic_write_text",
    "DEFAULT_NETWORK",
    "NetworkGuard",
    "NetworkIdentity",
    "LatencyProber",
    "PeerSelector",
    "MainnetAdapter",
    "PeerSourceAdapter",
    "TestnetAdapter",
    "build_peer_source",
]
