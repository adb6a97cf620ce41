"""
Group rendezvous for worker bring-up.

Blocks a worker's startup until every peer in its group is reachable.
Each peer is probed concurrently with exponential backoff; one deadline
covers the whole wait. The group proceeds only when all peers are
confirmed, otherwise the rendezvous fails.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.discovery import PeerAddress, WorkerGroup
from core.errors import ConfigurationError, UnavailablePeer
from core.identity import WorkerIdentity


logger = logging.getLogger(__name__)


Probe = Callable[[PeerAddress], Awaitable[Any]]


class RendezvousState(str, Enum):
    """Rendezvous lifecycle states."""
    INIT = "init"
    RESOLVING_PEERS = "resolving_peers"
    WAITING_FOR_PEERS = "waiting_for_peers"
    READY = "ready"
    FAILED = "failed"


_TRANSITIONS = {
    RendezvousState.INIT: {RendezvousState.RESOLVING_PEERS},
    RendezvousState.RESOLVING_PEERS: {
        RendezvousState.WAITING_FOR_PEERS,
        RendezvousState.READY,
        RendezvousState.FAILED,
    },
    RendezvousState.WAITING_FOR_PEERS: {
        RendezvousState.READY,
        RendezvousState.FAILED,
    },
    RendezvousState.READY: set(),
    RendezvousState.FAILED: set(),
}

TERMINAL_STATES = frozenset({RendezvousState.READY, RendezvousState.FAILED})


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff with jitter.

    Delay before retry n (0-based) is initial * multiplier**n, capped at
    maximum, then scaled by a random factor in [1 - jitter, 1 + jitter].
    """

    initial: float = 1.0  # seconds
    maximum: float = 30.0  # seconds
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay

    def __post_init__(self):
        if self.initial <= 0:
            raise ConfigurationError(f"backoff initial delay must be positive, got {self.initial}")
        if self.maximum < self.initial:
            raise ConfigurationError(
                f"backoff maximum ({self.maximum}) is below initial delay ({self.initial})"
            )
        if self.multiplier < 1.0:
            raise ConfigurationError(f"backoff multiplier must be >= 1, got {self.multiplier}")
        if not 0.0 <= self.jitter < 1.0:
            raise ConfigurationError(f"backoff jitter must be in [0, 1), got {self.jitter}")

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay before the retry following failed attempt `attempt`.

        Args:
            attempt: Number of failed attempts so far minus one
            rng: Random source for jitter

        Returns:
            Delay in seconds
        """
        # Cap the exponent so large attempt counts cannot overflow
        base = min(self.initial * self.multiplier ** min(attempt, 64), self.maximum)
        if self.jitter:
            rng = rng or random
            base *= rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return base


@dataclass
class PeerStatus:
    """Probe progress for one peer."""
    peer: PeerAddress
    reachable: bool = False
    attempts: int = 0
    last_error: Optional[str] = None
    reached_after: Optional[float] = None  # seconds since rendezvous start

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ordinal': self.peer.ordinal,
            'host': self.peer.host,
            'port': self.peer.port,
            'reachable': self.reachable,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'reached_after': self.reached_after,
        }


class GroupRendezvous:
    """
    Waits until every peer of this worker is reachable.

    State machine: INIT -> RESOLVING_PEERS -> WAITING_FOR_PEERS -> READY,
    or -> FAILED when the deadline passes or the wait is cancelled.
    READY and FAILED are terminal.
    """

    def __init__(
        self,
        identity: WorkerIdentity,
        group: WorkerGroup,
        probe: Probe,
        timeout: float = 300.0,
        probe_timeout: float = 5.0,
        backoff: Optional[BackoffPolicy] = None,
        rng: Optional[random.Random] = None,
        on_state_change: Optional[Callable[[RendezvousState, RendezvousState], None]] = None,
    ):
        """
        Initialize rendezvous.

        Args:
            identity: This worker's identity
            group: Discovery table for the whole group
            probe: Awaitable reachability check, raises when a peer is unreachable
            timeout: Deadline for the whole wait in seconds
            probe_timeout: Deadline for a single probe attempt in seconds
            backoff: Retry delay policy
            rng: Random source for backoff jitter
            on_state_change: Called with (old, new) on every transition
        """
        if group.total != identity.total:
            raise ConfigurationError(
                f"group has {group.total} workers but identity expects {identity.total}"
            )
        if timeout <= 0:
            raise ConfigurationError(f"rendezvous timeout must be positive, got {timeout}")
        if probe_timeout <= 0:
            raise ConfigurationError(f"probe timeout must be positive, got {probe_timeout}")

        self.identity = identity
        self.group = group
        self.probe = probe
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.backoff = backoff or BackoffPolicy()
        self.on_state_change = on_state_change
        self._rng = rng or random.Random()

        # State
        self._state = RendezvousState.INIT
        self._peer_status: Dict[int, PeerStatus] = {}
        self._tasks: List[asyncio.Task] = []
        self._started_at: Optional[float] = None
        self._finished_at: Optional[float] = None

    @property
    def state(self) -> RendezvousState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is RendezvousState.READY

    def _transition(self, new_state: RendezvousState):
        old_state = self._state
        if new_state not in _TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Invalid rendezvous transition {old_state.value} -> {new_state.value}"
            )

        self._state = new_state
        if new_state in TERMINAL_STATES:
            self._finished_at = time.monotonic()

        logger.debug(f"Rendezvous {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            self.on_state_change(old_state, new_state)

    async def run(self) -> WorkerGroup:
        """
        Run the rendezvous to completion.

        Returns:
            The worker group, once every peer is reachable

        Raises:
            UnavailablePeer: If peers are still unreachable at the deadline
            RuntimeError: If the rendezvous was already run
        """
        if self._state is not RendezvousState.INIT:
            raise RuntimeError(f"Rendezvous already started (state: {self._state.value})")

        self._started_at = time.monotonic()
        self._transition(RendezvousState.RESOLVING_PEERS)

        peers = self.group.peers_of(self.identity.ordinal)
        self._peer_status = {p.ordinal: PeerStatus(peer=p) for p in peers}

        if not peers:
            logger.info(f"{self.identity}: no peers to wait for")
            self._transition(RendezvousState.READY)
            return self.group

        self._transition(RendezvousState.WAITING_FOR_PEERS)
        logger.info(
            f"{self.identity}: waiting for {len(peers)} peer(s) "
            f"(timeout: {self.timeout}s)"
        )

        self._tasks = [
            asyncio.create_task(
                self._wait_for_peer(self._peer_status[p.ordinal]),
                name=f"rendezvous-peer-{p.ordinal}",
            )
            for p in peers
        ]

        try:
            done, pending = await asyncio.wait(self._tasks, timeout=self.timeout)
        except asyncio.CancelledError:
            logger.warning("Rendezvous cancelled")
            await self.close()
            self._transition(RendezvousState.FAILED)
            raise

        if pending:
            await self.close()

        for task in done:
            if task.cancelled():
                continue
            try:
                task.result()
            except Exception as e:
                logger.error(f"Rendezvous aborted by {task.get_name()}: {e}")
                await self.close()
                self._transition(RendezvousState.FAILED)
                raise

        unreachable = [s.peer for s in self._peer_status.values() if not s.reachable]
        if unreachable:
            self._transition(RendezvousState.FAILED)
            for peer in unreachable:
                status = self._peer_status[peer.ordinal]
                logger.error(
                    f"Peer {peer.ordinal} ({peer}) unreachable after "
                    f"{status.attempts} attempt(s): {status.last_error}"
                )
            raise UnavailablePeer(unreachable, self.timeout)

        self._transition(RendezvousState.READY)
        logger.info(
            f"✓ {self.identity}: all {len(peers)} peer(s) reachable "
            f"in {self.elapsed():.1f}s"
        )
        return self.group

    async def _wait_for_peer(self, status: PeerStatus):
        """Probe one peer until it answers."""
        peer = status.peer

        while True:
            status.attempts += 1
            try:
                await asyncio.wait_for(self.probe(peer), timeout=self.probe_timeout)
            except asyncio.TimeoutError:
                status.last_error = f"probe timed out after {self.probe_timeout}s"
            except Exception as e:
                status.last_error = f"{type(e).__name__}: {e}"
            else:
                status.reachable = True
                status.reached_after = self.elapsed()
                status.last_error = None
                logger.info(
                    f"✓ Peer {peer.ordinal} reachable at {peer} "
                    f"(attempt {status.attempts})"
                )
                return

            delay = self.backoff.delay(status.attempts - 1, self._rng)
            logger.debug(
                f"Peer {peer.ordinal} ({peer}) not reachable "
                f"(attempt {status.attempts}): {status.last_error}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)

    async def close(self):
        """
        Cancel outstanding probe tasks and wait for them to finish.

        Safe to call any number of times.
        """
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"Cancelled {len(tasks)} probe task(s)")
        self._tasks = []

    def elapsed(self) -> float:
        """Seconds since run() started (frozen once finished)."""
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return end - self._started_at

    def pending_peers(self) -> List[PeerAddress]:
        """Peers not confirmed reachable yet."""
        return [s.peer for s in self._peer_status.values() if not s.reachable]

    def get_status(self) -> Dict[str, Any]:
        """
        Get rendezvous status.

        Returns:
            Status dictionary (JSON-serializable)
        """
        return {
            'state': self._state.value,
            'ordinal': self.identity.ordinal,
            'total': self.identity.total,
            'timeout': self.timeout,
            'elapsed': self.elapsed(),
            'peers': [s.to_dict() for s in self._peer_status.values()],
        }
