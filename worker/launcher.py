"""
Compute-phase launcher.

Once the rendezvous is READY the worker hands off to the real workload.
The workload sees the accelerator runtime's environment (TPU_WORKER_ID,
TPU_WORKER_HOSTNAMES) filled in from the identity and discovery table.
"""

import asyncio
import logging
import os
from typing import Dict, List, Mapping, Optional

from core.discovery import WorkerGroup
from core.errors import ConfigurationError
from core.identity import WorkerIdentity, NUM_WORKERS_ENV_VAR


logger = logging.getLogger(__name__)


def build_worker_env(
    identity: WorkerIdentity,
    group: WorkerGroup,
    base: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Build the workload environment.

    Args:
        identity: This worker's identity
        group: Discovery table for the whole group
        base: Environment to extend (defaults to os.environ)

    Returns:
        New environment dictionary
    """
    env = dict(os.environ if base is None else base)
    env.update({
        'TPU_WORKER_ID': str(identity.ordinal),
        'TPU_WORKER_HOSTNAMES': group.to_env_value(),
        'PODSLICE_WORKER_ORDINAL': str(identity.ordinal),
        NUM_WORKERS_ENV_VAR: str(identity.total),
    })
    return env


async def _stream_output(stream: asyncio.StreamReader, name: str):
    """Forward process output to the logger line by line."""
    while True:
        line = await stream.readline()
        if not line:
            break
        logger.info(f"[{name}] {line.decode('utf-8', errors='replace').rstrip()}")


async def run_command(command: List[str], env: Optional[Dict[str, str]] = None) -> int:
    """
    Run the workload and wait for it to exit.

    Args:
        command: Program and arguments
        env: Process environment

    Returns:
        The process exit code

    Raises:
        ConfigurationError: If the command is empty
    """
    if not command:
        raise ConfigurationError("workload command is empty")

    name = os.path.basename(command[0])
    logger.info(f"Launching workload: {' '.join(command)}")

    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=env
    )

    try:
        await _stream_output(process.stdout, name)
        returncode = await process.wait()
    except asyncio.CancelledError:
        logger.warning(f"Terminating workload (pid {process.pid})")
        if process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=10.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        raise

    if returncode == 0:
        logger.info("✓ Workload finished")
    else:
        logger.error(f"Workload exited with code {returncode}")
    return returncode
