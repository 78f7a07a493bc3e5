"""Network identity of the deployment and the guard that validates it."""
from __future__ import annotations

import enum
import logging
from typing import Callable, Optional, Union

from errors import NetworkMismatchError


logger = logging.getLogger(__name__)


class NetworkIdentity(enum.Enum):
    MAINNET = "Mainnet"
    TESTNET = "Testnet"

    @classmethod
    def parse(cls, value: Union[str, "NetworkIdentity"]) -> "NetworkIdentity":
        if isinstance(value, NetworkIdentity):
            return value
        lowered = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        raise ValueError(f"unsupported chain '{value}'")

    def __str__(self) -> str:
        return self.value


DEFAULT_NETWORK = NetworkIdentity.MAINNET


class NetworkGuard:
    """
    Confirms the declared network matches what the deployment expects.

    The expected network comes from `expected_loader` (the visor marker file);
    it returns None when the deployment carries no marker. The guard never
    touches the network.
    """

    def __init__(
        self,
        declared: Optional[Union[str, NetworkIdentity]],
        expected_loader: Callable[[], Optional[NetworkIdentity]],
    ) -> None:
        self._declared = NetworkIdentity.parse(declared) if declared is not None else None
        self._expected_loader = expected_loader

    def validate(self) -> NetworkIdentity:
        expected = self._expected_loader()
        declared = self._declared

        if declared is not None and expected is not None and declared is not expected:
            raise NetworkMismatchError(
                f"declared network {declared} does not match the deployment's network {expected}"
            )
        if declared is not None:
            logger.debug("Network specified via settings: %s", declared)
            return declared
        if expected is not None:
            logger.debug("No network specified, using deployment marker: %s", expected)
            return expected
        logger.debug("No network specified and no deployment marker, defaulting to %s", DEFAULT_NETWORK)
        return DEFAULT_NETWORK
