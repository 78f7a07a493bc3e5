from __future__ import annotations

import logging
from typing import List, Sequence

from errors import NoReliablePeersError
from utils import format_duration
from .config import PeerMeasurement

logger = logging.getLogger(__name__)


class PeerSelector:
    def select(self, measurements: Sequence[PeerMeasurement], max_latency: float, amount: int) -> List[PeerMeasurement]:
        """
        Keeps reachable measurements at or under `max_latency`, lowest latency
        first (ties keep candidate order), capped at `amount`.
        """
        if amount < 1:
            raise ValueError("amount must be at least 1")

        qualifying = [m for m in measurements if m.latency is not None and m.latency <= max_latency]
        # sorted() is stable, so equal latencies keep their probing order
        qualifying = sorted(qualifying, key=lambda m: m.latency)

        for index, measurement in enumerate(qualifying):
            logger.debug(
                "Seed node measurement #%d: %s %.1fms", index, measurement.candidate, measurement.latency * 1000
            )

        if not qualifying:
            raise NoReliablePeersError(
                "no seed nodes passed latency threshold, try increasing threshold "
                f"(current: {format_duration(max_latency)})"
            )

        picked = qualifying[:amount]
        for index, measurement in enumerate(picked):
            logger.info("Picked seed node #%d: %s (%.1fms)", index, measurement.candidate, measurement.latency * 1000)
        if len(picked) < amount:
            logger.info("Only %d of %d requested seed nodes passed the latency threshold", len(picked), amount)
        return picked
