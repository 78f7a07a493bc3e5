from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

import trio

from errors import ProbeError
from utils import utc_now
from .config import PeerCandidate, PeerMeasurement

logger = logging.getLogger(__name__)

DEFAULT_PROBE_CONCURRENCY = 64

Connector = Callable[[str, int], Awaitable[trio.abc.AsyncResource]]


class LatencyProber:
    """
    Measures TCP connect latency to gossip peer candidates.

    One trio task per candidate, bounded by a capacity limiter. Each probe has
    its own timeout; a failed probe becomes an unreachable measurement.
    """

    def __init__(self, concurrency: int = DEFAULT_PROBE_CONCURRENCY, connect: Optional[Connector] = None) -> None:
        if concurrency < 1:
            raise ValueError("probe concurrency must be at least 1")
        self._concurrency = concurrency
        self._connect = connect or trio.open_tcp_stream

    async def probe_all(self, candidates: Sequence[PeerCandidate], per_probe_timeout: float) -> List[PeerMeasurement]:
        if not candidates:
            raise ValueError("probe_all requires at least one candidate")

        logger.info(
            "Testing latency to %d seed nodes (concurrency=%d, timeout=%.3fs)",
            len(candidates),
            self._concurrency,
            per_probe_timeout,
        )
        limiter = trio.CapacityLimiter(self._concurrency)
        results: List[Optional[PeerMeasurement]] = [None] * len(candidates)

        async def _probe_slot(index: int, candidate: PeerCandidate) -> None:
            async with limiter:
                results[index] = await self.probe(candidate, per_probe_timeout)

        async with trio.open_nursery() as nursery:
            for index, candidate in enumerate(candidates):
                nursery.start_soon(_probe_slot, index, candidate)

        measurements = [m for m in results if m is not None]
        reachable = sum(1 for m in measurements if m.reachable)
        logger.info("Latency test complete: successful=%d failed=%d", reachable, len(measurements) - reachable)
        return measurements

    async def probe(self, candidate: PeerCandidate, timeout: float) -> PeerMeasurement:
        try:
            latency = await self._measure(candidate, timeout)
        except ProbeError as exc:
            logger.debug("Latency test failed for %s: %s", candidate, exc)
            return PeerMeasurement(candidate=candidate, latency=None, probed_at=utc_now(), error=str(exc))
        logger.debug("Latency test ok for %s: %.1fms", candidate, latency * 1000)
        return PeerMeasurement(candidate=candidate, latency=latency, probed_at=utc_now())

    async def _measure(self, candidate: PeerCandidate, timeout: float) -> float:
        stream = None
        latency = None
        start = trio.current_time()
        with trio.move_on_after(timeout):
            try:
                stream = await self._connect(candidate.ip, candidate.port)
            except OSError as exc:
                raise ProbeError(f"connect failed: {exc}") from exc
            latency = trio.current_time() - start
        if stream is not None:
            await trio.aclose_forcefully(stream)
        if latency is None:
            raise ProbeError(f"timed out after {timeout * 1000:g}ms")
        return latency
