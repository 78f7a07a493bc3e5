from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PeerCandidate:
    ip: str
    port: int
    source: str

    @property
    def address(self) -> str:
        if ":" in self.ip:
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True)
class PeerMeasurement:
    candidate: PeerCandidate
    # None means the candidate was unreachable within its probe timeout
    latency: Optional[float]
    probed_at: datetime.datetime
    error: Optional[str] = None

    @property
    def reachable(self) -> bool:
        return self.latency is not None
