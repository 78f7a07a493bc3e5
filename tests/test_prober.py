import pytest
import trio

from network import LatencyProber, PeerCandidate


class FakeStream(trio.abc.AsyncResource):
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


def _candidates(*ips):
    return [PeerCandidate(ip=ip, port=4001, source="test") for ip in ips]


def _scripted_connect(delays, streams=None):
    """Connect function taking `delays[ip]` seconds; None delays refuse the connection."""

    async def connect(host, port):
        delay = delays[host]
        if delay is None:
            raise ConnectionRefusedError(f"{host}:{port} refused")
        await trio.sleep(delay)
        stream = FakeStream()
        if streams is not None:
            streams.append(stream)
        return stream

    return connect


@pytest.mark.trio
async def test_probe_all_measures_each_candidate(autojump_clock):
    delays = {"10.0.0.1": 0.050, "10.0.0.2": 0.010, "10.0.0.3": None}
    streams = []
    prober = LatencyProber(concurrency=4, connect=_scripted_connect(delays, streams))

    measurements = await prober.probe_all(_candidates(*delays), per_probe_timeout=0.080)

    assert [m.candidate.ip for m in measurements] == list(delays)
    assert measurements[0].latency == pytest.approx(0.050)
    assert measurements[1].latency == pytest.approx(0.010)
    assert measurements[2].latency is None
    assert "refused" in measurements[2].error
    assert all(stream.closed for stream in streams)


@pytest.mark.trio
async def test_probe_timeout_marks_candidate_unreachable(autojump_clock):
    prober = LatencyProber(connect=_scripted_connect({"10.0.0.1": 5.0}))
    start = trio.current_time()
    (measurement,) = await prober.probe_all(_candidates("10.0.0.1"), per_probe_timeout=0.080)
    assert not measurement.reachable
    assert "timed out" in measurement.error
    assert trio.current_time() - start == pytest.approx(0.080)


@pytest.mark.trio
async def test_concurrency_is_bounded(autojump_clock):
    in_flight = 0
    peak = 0

    async def connect(host, port):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await trio.sleep(0.010)
        in_flight -= 1
        return FakeStream()

    prober = LatencyProber(concurrency=3, connect=connect)
    ips = [f"10.0.1.{i}" for i in range(1, 11)]
    measurements = await prober.probe_all(_candidates(*ips), per_probe_timeout=1.0)

    assert peak == 3
    assert all(m.reachable for m in measurements)


@pytest.mark.trio
async def test_probe_all_rejects_empty_input():
    with pytest.raises(ValueError):
        await LatencyProber().probe_all([], per_probe_timeout=0.080)


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        LatencyProber(concurrency=0)


@pytest.mark.trio
async def test_probe_against_local_listener():
    # The kernel completes the handshake for a listening socket without accept()
    listeners = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listeners[0].socket.getsockname()[1]
    try:
        (measurement,) = await LatencyProber().probe_all(
            [PeerCandidate(ip="127.0.0.1", port=port, source="local")], per_probe_timeout=2.0
        )
    finally:
        for listener in listeners:
            await listener.aclose()
    assert measurement.reachable
    assert 0 <= measurement.latency < 2.0


@pytest.mark.trio
async def test_probe_closed_local_port_is_unreachable():
    listeners = await trio.open_tcp_listeners(0, host="127.0.0.1")
    port = listeners[0].socket.getsockname()[1]
    for listener in listeners:
        await listener.aclose()

    (measurement,) = await LatencyProber().probe_all(
        [PeerCandidate(ip="127.0.0.1", port=port, source="local")], per_probe_timeout=2.0
    )
    assert not measurement.reachable
    assert measurement.error
