"""
Core module for podslice worker bring-up.

Pure, side-effect-free building blocks shared by every worker:
- Worker identity from the orchestrator's completion index
- Deterministic peer discovery table
- Error types
"""

from core.errors import PodsliceError, ConfigurationError, UnavailablePeer
from core.identity import WorkerIdentity, resolve_identity
from core.discovery import (
    DEFAULT_PORT,
    PeerAddress,
    WorkerGroup,
    build_worker_group,
    parse_worker_hostnames,
)

__version__ = "0.1.0"

__all__ = [
    "PodsliceError",
    "ConfigurationError",
    "UnavailablePeer",
    "WorkerIdentity",
    "resolve_identity",
    "DEFAULT_PORT",
    "PeerAddress",
    "WorkerGroup",
    "build_worker_group",
    "parse_worker_hostnames",
]
