"""
Worker identity resolution.

An indexed batch job gives every pod a completion index. Together with the
operator-supplied worker count this is the worker's identity for the whole
lifetime of the process.
"""

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from core.errors import ConfigurationError


# Checked in order. The TPU runtime reads TPU_WORKER_ID; the orchestrator
# exports JOB_COMPLETION_INDEX for every indexed job.
INDEX_ENV_VARS = ("TPU_WORKER_ID", "JOB_COMPLETION_INDEX")
NUM_WORKERS_ENV_VAR = "PODSLICE_NUM_WORKERS"


@dataclass(frozen=True)
class WorkerIdentity:
    """Ordinal of this worker within a fixed-size group of `total` workers."""

    ordinal: int
    total: int

    def __post_init__(self):
        for name in ("ordinal", "total"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(
                    f"{name} must be an integer, got {value!r}"
                )

        if self.total <= 0:
            raise ConfigurationError(f"total must be positive, got {self.total}")

        if not 0 <= self.ordinal < self.total:
            raise ConfigurationError(
                f"ordinal {self.ordinal} outside [0, {self.total})"
            )

    def __str__(self) -> str:
        return f"worker {self.ordinal}/{self.total}"


# Plain ASCII decimal only; int() alone also takes "+1", "1_0" and non-ASCII digits
_DECIMAL = re.compile(r"-?[0-9]+")


def parse_int(raw: str) -> int:
    """Parse a plain decimal integer, raising ValueError for anything else."""
    value = raw.strip()
    if not _DECIMAL.fullmatch(value):
        raise ValueError(f"not an integer: {raw!r}")
    return int(value)


def _parse_int(name: str, raw: str) -> int:
    try:
        return parse_int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} is not an integer: {raw!r}") from None


def resolve_total(
    total: Optional[int] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """
    Resolve the group size.

    Args:
        total: Explicit worker count; read from PODSLICE_NUM_WORKERS if None
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Positive worker count

    Raises:
        ConfigurationError: If the count is missing, non-numeric or not positive
    """
    if total is None:
        environ = os.environ if environ is None else environ
        raw = environ.get(NUM_WORKERS_ENV_VAR)
        if raw is None or not raw.strip():
            raise ConfigurationError(f"{NUM_WORKERS_ENV_VAR} is not set")
        total = _parse_int(NUM_WORKERS_ENV_VAR, raw)

    if isinstance(total, bool) or not isinstance(total, int) or total <= 0:
        raise ConfigurationError(f"worker count must be a positive integer, got {total!r}")

    return total


def resolve_identity(
    total: Optional[int] = None,
    environ: Optional[Mapping[str, str]] = None,
    index_vars: Sequence[str] = INDEX_ENV_VARS,
) -> WorkerIdentity:
    """
    Build this process's WorkerIdentity from the environment.

    Args:
        total: Worker count; read from PODSLICE_NUM_WORKERS if None
        environ: Environment mapping (defaults to os.environ)
        index_vars: Variables holding the completion index, first present wins

    Returns:
        WorkerIdentity

    Raises:
        ConfigurationError: If the index is missing, non-numeric, disagrees
            between variables, or is outside [0, total)
    """
    environ = os.environ if environ is None else environ
    total = resolve_total(total, environ)

    found = {}
    for name in index_vars:
        raw = environ.get(name)
        if raw is not None and raw.strip():
            found[name] = _parse_int(name, raw)

    if not found:
        raise ConfigurationError(
            f"completion index not found (checked {', '.join(index_vars)})"
        )

    if len(set(found.values())) > 1:
        detail = ", ".join(f"{k}={v}" for k, v in found.items())
        raise ConfigurationError(f"conflicting completion indexes: {detail}")

    ordinal = next(iter(found.values()))
    return WorkerIdentity(ordinal=ordinal, total=total)
