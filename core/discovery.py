"""
Peer discovery table for a fixed-size worker group.

Pods of an indexed job behind a headless service get stable DNS names of
the form `{job_name}-{ordinal}.{subdomain}`. Every worker can therefore
compute the full table locally, with no registry and no network calls,
and all workers arrive at the same answer.
"""

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from core.errors import ConfigurationError


# Port the TPU runtime uses for worker-to-worker traffic
DEFAULT_PORT = 8471

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_MAX_LABEL_LENGTH = 63


@dataclass(frozen=True)
class PeerAddress:
    """Network address of one worker."""

    ordinal: int
    host: str
    port: int = DEFAULT_PORT

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class WorkerGroup:
    """
    All workers of one job, indexed by ordinal.

    Exactly one PeerAddress per ordinal in [0, len(group)), no gaps and no
    duplicate addresses.
    """

    peers: Tuple[PeerAddress, ...]

    def __post_init__(self):
        peers = tuple(sorted(self.peers, key=lambda p: p.ordinal))
        object.__setattr__(self, "peers", peers)

        if not peers:
            raise ConfigurationError("worker group is empty")

        ordinals = [p.ordinal for p in peers]
        if ordinals != list(range(len(peers))):
            raise ConfigurationError(
                f"worker group ordinals must be 0..{len(peers) - 1}, got {ordinals}"
            )

        addresses = {(p.host, p.port) for p in peers}
        if len(addresses) != len(peers):
            raise ConfigurationError("worker group contains duplicate addresses")

    def __len__(self) -> int:
        return len(self.peers)

    def __iter__(self) -> Iterator[PeerAddress]:
        return iter(self.peers)

    @property
    def total(self) -> int:
        return len(self.peers)

    def address_of(self, ordinal: int) -> PeerAddress:
        """
        Get the address of one worker.

        Raises:
            ConfigurationError: If the ordinal is not in the group
        """
        if not 0 <= ordinal < len(self.peers):
            raise ConfigurationError(
                f"ordinal {ordinal} not in group of {len(self.peers)}"
            )
        return self.peers[ordinal]

    def peers_of(self, ordinal: int) -> List[PeerAddress]:
        """Every worker except `ordinal`."""
        self.address_of(ordinal)
        return [p for p in self.peers if p.ordinal != ordinal]

    def hostnames(self) -> List[str]:
        return [p.host for p in self.peers]

    def to_env_value(self) -> str:
        """Comma-separated host list, the format of TPU_WORKER_HOSTNAMES."""
        return ",".join(self.hostnames())


def _check_label(name: str, value: str):
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{name} must be a non-empty string")
    if len(value) > _MAX_LABEL_LENGTH or not _DNS_LABEL.match(value):
        raise ConfigurationError(
            f"{name} {value!r} is not a valid DNS label "
            f"(lowercase alphanumerics and '-', at most {_MAX_LABEL_LENGTH} chars)"
        )


def _check_port(port: int):
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigurationError(f"port must be in 1..65535, got {port!r}")


def pod_hostname(job_name: str, ordinal: int) -> str:
    """Hostname the orchestrator gives the pod with this completion index."""
    return f"{job_name}-{ordinal}"


def build_worker_group(
    job_name: str,
    subdomain: str,
    total: int,
    port: int = DEFAULT_PORT,
) -> WorkerGroup:
    """
    Compute the discovery table for a job.

    Args:
        job_name: Name of the indexed job
        subdomain: Name of the headless service
        total: Number of workers
        port: Inter-worker port

    Returns:
        WorkerGroup with one entry per ordinal

    Raises:
        ConfigurationError: On invalid names, count or port
    """
    _check_label("job name", job_name)
    _check_label("subdomain", subdomain)
    _check_port(port)

    if isinstance(total, bool) or not isinstance(total, int) or total <= 0:
        raise ConfigurationError(f"worker count must be a positive integer, got {total!r}")

    # Pod hostnames are DNS labels too
    _check_label("pod hostname", pod_hostname(job_name, total - 1))

    return WorkerGroup(tuple(
        PeerAddress(
            ordinal=ordinal,
            host=f"{pod_hostname(job_name, ordinal)}.{subdomain}",
            port=port,
        )
        for ordinal in range(total)
    ))


def parse_worker_hostnames(
    value: str,
    port: int = DEFAULT_PORT,
    total: Optional[int] = None,
) -> WorkerGroup:
    """
    Build a WorkerGroup from an explicit host list.

    Args:
        value: Comma-separated hostnames (TPU_WORKER_HOSTNAMES), ordinal = position
        port: Inter-worker port
        total: Expected number of workers, if known

    Raises:
        ConfigurationError: On empty entries, duplicates or a count mismatch
    """
    _check_port(port)

    hosts = [h.strip() for h in (value or "").split(",")]
    if not any(hosts):
        raise ConfigurationError("worker hostname list is empty")
    if not all(hosts):
        raise ConfigurationError(f"worker hostname list has empty entries: {value!r}")

    if total is not None and len(hosts) != total:
        raise ConfigurationError(
            f"worker hostname list has {len(hosts)} entries, expected {total}"
        )

    return WorkerGroup(tuple(
        PeerAddress(ordinal=i, host=host, port=port)
        for i, host in enumerate(hosts)
    ))
