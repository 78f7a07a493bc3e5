"""hl-visor integration: the chain marker file and binary updates."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from typing import Awaitable, Callable, Optional

import httpx
import trio

from errors import ConfigurationError, VisorInstallError
from network.gossip_config import atomic_write_text
from network.identity import NetworkIdentity

logger = logging.getLogger(__name__)

VISOR_BINARY_NAME = "hl-visor"
ETAG_FILE_NAME = ".hl-visor.etag"

BINARY_URLS = {
    NetworkIdentity.MAINNET: "https://binaries.hyperliquid.xyz/Mainnet/hl-visor",
    NetworkIdentity.TESTNET: "https://binaries.hyperliquid-testnet.xyz/Testnet/hl-visor",
}


def read_visor_config(path: str) -> Optional[NetworkIdentity]:
    """Returns the chain recorded in visor.json, or None when the file is absent."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"failed to read hl-visor configuration {path}: {exc}") from exc

    if not isinstance(payload, dict) or "chain" not in payload:
        raise ConfigurationError(f"hl-visor configuration {path} has no 'chain' field")
    try:
        return NetworkIdentity.parse(payload["chain"])
    except ValueError as exc:
        raise ConfigurationError(f"hl-visor configuration {path}: {exc}") from exc


def write_visor_config(path: str, network: NetworkIdentity) -> None:
    atomic_write_text(path, json.dumps({"chain": network.value}))
    logger.info("Wrote hl-visor configuration for %s to %s", network, path)


async def gpg_verify(signature_path: str, binary_path: str) -> None:
    result = await trio.run_process(
        ["gpg", "--verify", signature_path, binary_path],
        capture_stdout=True,
        capture_stderr=True,
        check=False,
    )
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        raise VisorInstallError(f"gpg verification for hl-visor failed with status {result.returncode}:\n{stderr}")


class VisorInstaller:
    """Keeps <directory>/hl-visor in sync with the published binary, keyed by ETag."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        directory: str,
        network: NetworkIdentity,
        verify: Callable[[str, str], Awaitable[None]] = gpg_verify,
    ) -> None:
        self._client = client
        self._directory = directory
        self._network = network
        self._verify = verify

    @property
    def binary_url(self) -> str:
        return BINARY_URLS[self._network]

    @property
    def binary_path(self) -> str:
        return os.path.join(self._directory, VISOR_BINARY_NAME)

    @property
    def etag_path(self) -> str:
        return os.path.join(self._directory, ETAG_FILE_NAME)

    def _stored_etag(self) -> Optional[str]:
        try:
            with open(self.etag_path, "r", encoding="utf-8") as handle:
                return handle.read().strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read last stored etag %s: %s", self.etag_path, exc)
            return None

    async def _fetch_etag(self) -> str:
        logger.debug("Fetching etag for %s", self.binary_url)
        response = await self._client.head(self.binary_url)
        response.raise_for_status()
        etag = response.headers.get("etag")
        if not etag:
            raise VisorInstallError(f"no etag header available in HEAD {self.binary_url} request")
        return etag.strip()

    async def _download(self, url: str, path: str) -> None:
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            with open(path, "wb") as handle:
                async for chunk in response.aiter_bytes():
                    handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())

    async def ensure_latest(self) -> bool:
        """Downloads a new binary when the published ETag changed. Returns True if it did."""
        try:
            return await self._ensure_latest()
        except httpx.HTTPError as exc:
            raise VisorInstallError(f"failed to update hl-visor from {self.binary_url}: {exc}") from exc
        except OSError as exc:
            raise VisorInstallError(f"failed to install hl-visor into {self._directory}: {exc}") from exc

    async def _ensure_latest(self) -> bool:
        logger.debug("Checking for hl-visor updates for %s", self._network)
        new_etag = await self._fetch_etag()
        current_etag = self._stored_etag()
        if current_etag == new_etag and os.path.exists(self.binary_path):
            logger.debug("hl-visor appears up to date (etag %s)", current_etag)
            return False

        logger.info("Downloading new hl-visor binary for %s (etag %s)", self._network, new_etag)
        os.makedirs(self._directory, exist_ok=True)
        binary_fd, binary_tmp = tempfile.mkstemp(prefix=".hl-visor.", dir=self._directory)
        sig_fd, sig_tmp = tempfile.mkstemp(prefix=".hl-visor.", suffix=".asc", dir=self._directory)
        os.close(binary_fd)
        os.close(sig_fd)
        failures = []

        async def _download_into(url: str, path: str) -> None:
            try:
                await self._download(url, path)
            except (httpx.HTTPError, OSError) as exc:
                failures.append(exc)

        try:
            async with trio.open_nursery() as nursery:
                nursery.start_soon(_download_into, self.binary_url, binary_tmp)
                nursery.start_soon(_download_into, f"{self.binary_url}.asc", sig_tmp)
            if failures:
                raise failures[0]

            await self._verify(sig_tmp, binary_tmp)

            os.chmod(binary_tmp, 0o755)
            os.replace(binary_tmp, self.binary_path)
            atomic_write_text(self.etag_path, f"{new_etag}\n")
        finally:
            for leftover in (binary_tmp, sig_tmp):
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(leftover)
        logger.info("Installed hl-visor to %s", self.binary_path)
        return True
