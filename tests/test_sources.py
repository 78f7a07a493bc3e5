import json

import httpx
import pytest
import trio

from errors import PeerFetchError
from network import MainnetAdapter, NetworkIdentity, TestnetAdapter, build_peer_source
from network.sources import extract_seed_peer_ips

API_URL = "https://api.example/info"
README_URL = "https://docs.example/README.md"
PEERS_URL = "https://peers.example/peers.json"

README = """
# Running a node

Some text mentioning 203.0.113.250 outside of the seed list.

## Mainnet seed peers

| Operator | Root IP |
|---|---|
| Alpha | 198.51.100.10 |
| Beta | 198.51.100.11 |

## Testnet seed peers

| Gamma | 192.0.2.99 |
"""


class Recorder:
    """Scripted MockTransport handler that remembers every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes[(request.method, str(request.url))]
        outcome = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def count(self, method, url):
        return sum(1 for r in self.requests if r.method == method and str(r.url) == url)


def _client(recorder):
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def _mainnet(client, **kwargs):
    kwargs.setdefault("gossip_port", 4001)
    kwargs.setdefault("retries", 3)
    kwargs.setdefault("backoff", 0.0)
    return MainnetAdapter(client, api_url=API_URL, seed_document_url=README_URL, **kwargs)


def _testnet(client, **kwargs):
    kwargs.setdefault("gossip_port", 4001)
    kwargs.setdefault("retries", 3)
    kwargs.setdefault("backoff", 0.0)
    return TestnetAdapter(client, peers_url=PEERS_URL, **kwargs)


def test_extract_seed_peer_ips_reads_only_mainnet_section():
    assert extract_seed_peer_ips(README) == ["198.51.100.10", "198.51.100.11"]


def test_extract_seed_peer_ips_falls_back_to_whole_document():
    assert extract_seed_peer_ips("peers: 192.0.2.1 and 192.0.2.2, not 999.1.1.1") == ["192.0.2.1", "192.0.2.2"]


@pytest.mark.trio
async def test_mainnet_posts_gossip_root_ips():
    recorder = Recorder({("POST", API_URL): [httpx.Response(200, json=["1.1.1.1", "2.2.2.2", "1.1.1.1"])]})
    async with _client(recorder) as client:
        candidates = await _mainnet(client).fetch_candidates()

    assert [c.ip for c in candidates] == ["1.1.1.1", "2.2.2.2"]
    assert all(c.port == 4001 and c.source == "mainnet-api" for c in candidates)
    assert json.loads(recorder.requests[0].content) == {"type": "gossipRootIps"}


@pytest.mark.trio
async def test_mainnet_drops_ignored_and_malformed_peers():
    recorder = Recorder({("POST", API_URL): [httpx.Response(200, json=["1.1.1.1", "bogus", "3.3.3.3"])]})
    async with _client(recorder) as client:
        candidates = await _mainnet(client, ignored_peers=["3.3.3.3"]).fetch_candidates()
    assert [c.ip for c in candidates] == ["1.1.1.1"]


@pytest.mark.trio
async def test_transient_failures_are_retried():
    recorder = Recorder(
        {
            ("POST", API_URL): [
                httpx.ConnectError("connection refused"),
                httpx.Response(503),
                httpx.Response(200, json=["4.4.4.4"]),
            ]
        }
    )
    async with _client(recorder) as client:
        candidates = await _mainnet(client).fetch_candidates()
    assert [c.ip for c in candidates] == ["4.4.4.4"]
    assert recorder.count("POST", API_URL) == 3


@pytest.mark.trio
async def test_backoff_doubles_between_attempts(autojump_clock):
    recorder = Recorder({("GET", PEERS_URL): [httpx.Response(500)]})
    start = trio.current_time()
    async with _client(recorder) as client:
        with pytest.raises(PeerFetchError, match="after 3 attempts"):
            await _testnet(client, backoff=0.5).fetch_candidates()
    # 0.5s then 1s, no sleep after the last attempt
    assert trio.current_time() - start == pytest.approx(1.5)


@pytest.mark.trio
async def test_client_errors_are_not_retried():
    recorder = Recorder({("GET", PEERS_URL): [httpx.Response(404)]})
    async with _client(recorder) as client:
        with pytest.raises(PeerFetchError, match="HTTP 404"):
            await _testnet(client).fetch_candidates()
    assert recorder.count("GET", PEERS_URL) == 1


def _redirect_loop(request):
    return httpx.Response(302, headers={"Location": str(request.url)})


def _corrupt_gzip(request):
    return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"definitely not gzip")


@pytest.mark.trio
async def test_redirect_loop_is_a_fetch_error():
    seen = []

    def handler(request):
        seen.append(request)
        return _redirect_loop(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True) as client:
        with pytest.raises(PeerFetchError, match="TooManyRedirects"):
            await _testnet(client).fetch_candidates()
    # one request plus the client's redirect budget, no retries on top
    assert len(seen) == client.max_redirects + 1


@pytest.mark.trio
async def test_undecodable_body_is_a_fetch_error():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_corrupt_gzip)) as client:
        with pytest.raises(PeerFetchError, match="DecodingError"):
            await _testnet(client).fetch_candidates()


@pytest.mark.trio
@pytest.mark.parametrize("broken_api", [_redirect_loop, _corrupt_gzip])
async def test_mainnet_falls_back_when_api_answer_is_unusable(broken_api):
    def handler(request):
        if str(request.url) == API_URL:
            return broken_api(request)
        return httpx.Response(200, text="## Mainnet seed peers\n\n| Alpha | 1.2.3.4 |\n")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True) as client:
        candidates = await _mainnet(client).fetch_candidates()
    assert [c.ip for c in candidates] == ["1.2.3.4"]


@pytest.mark.trio
async def test_mainnet_falls_back_to_published_seed_list():
    recorder = Recorder(
        {
            ("POST", API_URL): [httpx.Response(502)],
            ("GET", README_URL): [httpx.Response(200, text=README)],
        }
    )
    async with _client(recorder) as client:
        candidates = await _mainnet(client).fetch_candidates()
    assert [c.ip for c in candidates] == ["198.51.100.10", "198.51.100.11"]
    assert {c.source for c in candidates} == {"mainnet-readme"}


@pytest.mark.trio
async def test_mainnet_empty_api_answer_uses_seed_list():
    recorder = Recorder(
        {
            ("POST", API_URL): [httpx.Response(200, json=[])],
            ("GET", README_URL): [httpx.Response(200, text=README)],
        }
    )
    async with _client(recorder) as client:
        candidates = await _mainnet(client).fetch_candidates()
    assert len(candidates) == 2


@pytest.mark.trio
async def test_mainnet_with_nothing_anywhere_fails():
    recorder = Recorder(
        {
            ("POST", API_URL): [httpx.Response(200, json=[])],
            ("GET", README_URL): [httpx.Response(200, text="no peers here")],
        }
    )
    async with _client(recorder) as client:
        with pytest.raises(PeerFetchError, match="no mainnet seed peers"):
            await _mainnet(client).fetch_candidates()


@pytest.mark.trio
async def test_testnet_parses_root_node_ips():
    body = {"root_node_ips": [{"Ip": "5.5.5.5"}, {"Ip": "6.6.6.6"}, {"Other": "x"}], "try_new_peers": True}
    recorder = Recorder({("GET", PEERS_URL): [httpx.Response(200, json=body)]})
    async with _client(recorder) as client:
        candidates = await _testnet(client, gossip_port=4002).fetch_candidates()
    assert [(c.ip, c.port, c.source) for c in candidates] == [("5.5.5.5", 4002, "imperator"), ("6.6.6.6", 4002, "imperator")]


@pytest.mark.trio
async def test_testnet_empty_list_fails():
    recorder = Recorder({("GET", PEERS_URL): [httpx.Response(200, json={"root_node_ips": []})]})
    async with _client(recorder) as client:
        with pytest.raises(PeerFetchError):
            await _testnet(client).fetch_candidates()


@pytest.mark.trio
async def test_testnet_unparsable_body_fails():
    recorder = Recorder({("GET", PEERS_URL): [httpx.Response(200, text="<html>")]})
    async with _client(recorder) as client:
        with pytest.raises(PeerFetchError, match="failed to parse"):
            await _testnet(client).fetch_candidates()


def test_build_peer_source_picks_adapter(make_settings):
    settings = make_settings(gossip={"ignored_peers": ["7.7.7.7"]})
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    assert isinstance(build_peer_source(NetworkIdentity.MAINNET, settings, client), MainnetAdapter)
    assert isinstance(build_peer_source(NetworkIdentity.TESTNET, settings, client), TestnetAdapter)
