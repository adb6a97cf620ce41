"""
Error types for podslice worker bring-up.

Two kinds of failure matter during bring-up:
- ConfigurationError: identity or job inputs are missing or malformed.
  Fatal and never retried.
- UnavailablePeer: one or more peers never became reachable before the
  rendezvous deadline. Probes are retried internally; this is only raised
  once the deadline has passed.
"""

from typing import Sequence, Tuple


class PodsliceError(Exception):
    """Base class for all podslice errors."""


class ConfigurationError(PodsliceError, ValueError):
    """Identity, naming or runtime configuration is invalid."""


class UnavailablePeer(PodsliceError):
    """
    Raised when peers are still unreachable at the rendezvous deadline.

    Attributes:
        peers: Unreachable peer addresses, in ordinal order
        timeout: The rendezvous deadline in seconds
    """

    def __init__(self, peers: Sequence, timeout: float):
        self.peers: Tuple = tuple(sorted(peers, key=lambda p: p.ordinal))
        self.timeout = timeout

        hosts = ", ".join(f"{p.host}:{p.port}" for p in self.peers)
        super().__init__(
            f"{len(self.peers)} peer(s) unreachable after {timeout}s: {hosts}"
        )
