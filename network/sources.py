"""Network-specific sources of candidate gossip peers."""
from __future__ import annotations

import abc
import ipaddress
import json
import logging
import re
from typing import Any, Iterable, List, Optional, Sequence

import httpx
import trio

from errors import PeerFetchError
from .config import PeerCandidate
from .identity import NetworkIdentity

logger = logging.getLogger(__name__)

GOSSIP_ROOT_IPS_REQUEST = {"type": "gossipRootIps"}

_IPV4_PATTERN = re.compile(r"(?<![\d.])(?:\d{1,3}\.){3}\d{1,3}(?![\d.])")
_HEADING_PATTERN = re.compile(r"^\s{0,3}#{1,6}\s+(?P<title>.*)$")


class _TransientFetchError(Exception):
    pass


class PeerSourceAdapter(abc.ABC):
    """Fetches raw candidate peer addresses from one network-specific source."""

    name = "source"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        gossip_port: int,
        ignored_peers: Iterable[str] = (),
        retries: int = 3,
        backoff: float = 0.5,
    ) -> None:
        self._client = client
        self._gossip_port = gossip_port
        self._ignored = {str(ipaddress.ip_address(ip)) for ip in ignored_peers}
        self._retries = max(1, retries)
        self._backoff = backoff

    @abc.abstractmethod
    async def fetch_candidates(self) -> List[PeerCandidate]:
        raise NotImplementedError

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Sends a request, retrying timeouts, connection errors and 5xx answers
        with exponential backoff. Anything else fails immediately as a
        PeerFetchError.
        """
        delay = self._backoff
        last_error: Optional[str] = None
        for attempt in range(1, self._retries + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code >= 500:
                    raise _TransientFetchError(f"HTTP {response.status_code}")
                if response.status_code >= 400:
                    raise PeerFetchError(f"{method} {url} failed with HTTP {response.status_code}")
                return response
            except (httpx.TransportError, _TransientFetchError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "%s %s attempt %d/%d failed: %s", method, url, attempt, self._retries, last_error
                )
            except httpx.HTTPError as exc:
                # redirect loops and undecodable bodies are not retried
                raise PeerFetchError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc
            if attempt < self._retries and delay > 0:
                await trio.sleep(delay)
                delay *= 2
        raise PeerFetchError(f"{method} {url} failed after {self._retries} attempts: {last_error}")

    def _build_candidates(self, ips: Iterable[Any], source: str) -> List[PeerCandidate]:
        candidates: List[PeerCandidate] = []
        seen = set()
        for raw in ips:
            try:
                ip = str(ipaddress.ip_address(str(raw).strip()))
            except ValueError:
                logger.debug("Skipping malformed peer address %r from %s", raw, source)
                continue
            if ip in self._ignored:
                logger.debug("Skipping ignored seed peer %s", ip)
                continue
            if ip in seen:
                continue
            seen.add(ip)
            candidates.append(PeerCandidate(ip=ip, port=self._gossip_port, source=source))
        return candidates


def extract_seed_peer_ips(document: str) -> List[str]:
    """
    Pulls IPv4 addresses out of the seed peers section(s) of a markdown document.
    Falls back to the whole document when no heading mentions seed peers.
    """
    lines = document.splitlines()
    sections: List[str] = []
    capturing = False
    for line in lines:
        heading = _HEADING_PATTERN.match(line)
        if heading:
            title = heading.group("title").lower()
            capturing = "seed peer" in title and "testnet" not in title
            continue
        if capturing:
            sections.append(line)

    text = "\n".join(sections) if sections else document
    ips: List[str] = []
    for match in _IPV4_PATTERN.findall(text):
        try:
            ipaddress.IPv4Address(match)
        except ValueError:
            continue
        ips.append(match)
    return ips


class MainnetAdapter(PeerSourceAdapter):
    name = "mainnet"

    def __init__(self, client: httpx.AsyncClient, *, api_url: str, seed_document_url: str, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self._api_url = api_url
        self._seed_document_url = seed_document_url

    async def fetch_candidates(self) -> List[PeerCandidate]:
        try:
            candidates = await self._fetch_gossip_root_ips()
        except PeerFetchError as exc:
            logger.warning("Mainnet gossip root IPs unavailable (%s), falling back to published seed peers", exc)
            candidates = []
        if not candidates:
            logger.info("Fetching published seed peers from %s", self._seed_document_url)
            candidates = await self._fetch_seed_document()
        if not candidates:
            raise PeerFetchError("no mainnet seed peers available from the API or the published seed list")
        return candidates

    async def _fetch_gossip_root_ips(self) -> List[PeerCandidate]:
        response = await self._request("POST", self._api_url, json=GOSSIP_ROOT_IPS_REQUEST)
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PeerFetchError(f"failed to parse mainnet seed nodes: {exc}") from exc
        if not isinstance(payload, list):
            raise PeerFetchError(f"unexpected mainnet seed nodes payload: {type(payload).__name__}")
        if not payload:
            logger.warning("No seed peers were given from Hyperliquid API")
        return self._build_candidates(payload, "mainnet-api")

    async def _fetch_seed_document(self) -> List[PeerCandidate]:
        response = await self._request("GET", self._seed_document_url)
        return self._build_candidates(extract_seed_peer_ips(response.text), "mainnet-readme")


class TestnetAdapter(PeerSourceAdapter):
    name = "testnet"
    __test__ = False

    def __init__(self, client: httpx.AsyncClient, *, peers_url: str, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self._peers_url = peers_url

    async def fetch_candidates(self) -> List[PeerCandidate]:
        response = await self._request("GET", self._peers_url)
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PeerFetchError(f"failed to parse testnet override_gossip_config: {exc}") from exc
        nodes: Sequence[Any] = payload.get("root_node_ips", []) if isinstance(payload, dict) else []
        ips = [node.get("Ip") for node in nodes if isinstance(node, dict)]
        candidates = self._build_candidates(ips, "imperator")
        if not candidates:
            raise PeerFetchError(f"no testnet seed peers listed at {self._peers_url}")
        return candidates


def build_peer_source(network: NetworkIdentity, settings, client: httpx.AsyncClient) -> PeerSourceAdapter:
    """Picks the adapter for the validated network. `settings` is the full Settings snapshot."""
    common = dict(
        gossip_port=settings.gossip.gossip_port,
        ignored_peers=settings.gossip.ignored_peers,
        retries=settings.sources.fetch_retries,
        backoff=settings.sources.fetch_backoff,
    )
    if network is NetworkIdentity.MAINNET:
        return MainnetAdapter(
            client,
            api_url=settings.sources.mainnet_api_url,
            seed_document_url=settings.sources.mainnet_seed_document_url,
            **common,
        )
    return TestnetAdapter(client, peers_url=settings.sources.testnet_peers_url, **common)
