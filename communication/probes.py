"""
Reachability probes used during rendezvous.

A probe is awaited once per attempt. It returns when the peer is reachable
and raises otherwise; retrying and timeouts are the caller's job.
"""

import asyncio
import functools
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import httpx

from core.discovery import PeerAddress
from core.errors import ConfigurationError


logger = logging.getLogger(__name__)


PROBE_KINDS = ("dns", "tcp", "http")


class DNSProbe:
    """
    Peer is reachable once its hostname resolves.

    getaddrinfo blocks, so lookups run in a thread pool owned by the probe.
    A timed-out lookup keeps its thread until the resolver gives up; aclose()
    shuts the pool down without joining those threads, so loop shutdown does
    not wait on them.
    """

    kind = "dns"

    def __init__(self):
        self._executor: Optional[ThreadPoolExecutor] = None

    async def __call__(self, peer: PeerAddress):
        if self._executor is None:
            self._executor = ThreadPoolExecutor(thread_name_prefix="dns-lookup")
        loop = asyncio.get_running_loop()
        infos = await loop.run_in_executor(
            self._executor,
            functools.partial(socket.getaddrinfo, peer.host, peer.port, type=socket.SOCK_STREAM),
        )
        if not infos:
            raise OSError(f"no addresses for {peer.host}")
        logger.debug(f"Resolved {peer.host} -> {infos[0][4][0]}")

    async def aclose(self):
        """Abandon outstanding lookups."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


class TCPProbe:
    """Peer is reachable once a TCP connection to its port succeeds."""

    kind = "tcp"

    async def __call__(self, peer: PeerAddress):
        reader, writer = await asyncio.open_connection(peer.host, peer.port)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # Peer may reset a connection it never expected
            pass
        logger.debug(f"Connected to {peer}")

    async def aclose(self):
        pass


class HTTPProbe:
    """
    Peer is reachable once its status server answers GET /health.

    Probes the status port instead of the inter-worker port, so it also
    tells us the peer's worker process is up.
    """

    kind = "http"

    def __init__(
        self,
        status_port: int = 8080,
        path: str = "/health",
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize HTTP probe.

        Args:
            status_port: Port of the peers' status servers
            path: Health endpoint path
            client: Optional shared client (not closed by aclose)
        """
        self.status_port = status_port
        self.path = path
        self._client = client
        self._owns_client = client is None

    def url_for(self, peer: PeerAddress) -> str:
        return f"http://{peer.host}:{self.status_port}{self.path}"

    async def __call__(self, peer: PeerAddress):
        if self._client is None:
            self._client = httpx.AsyncClient()
        response = await self._client.get(self.url_for(peer))
        response.raise_for_status()
        logger.debug(f"{self.url_for(peer)} -> {response.status_code}")

    async def aclose(self):
        """Close the HTTP client if this probe created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_probe(kind: str, status_port: int = 8080):
    """
    Create a probe by name.

    Args:
        kind: "dns", "tcp" or "http"
        status_port: Peer status port, used by the http probe

    Raises:
        ConfigurationError: If the kind is unknown
    """
    if kind == "dns":
        return DNSProbe()
    if kind == "tcp":
        return TCPProbe()
    if kind == "http":
        return HTTPProbe(status_port=status_port)
    raise ConfigurationError(
        f"unknown probe kind {kind!r} (expected one of {', '.join(PROBE_KINDS)})"
    )
