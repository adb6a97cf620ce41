"""
Main worker entrypoint for podslice bring-up.

Orchestrates identity resolution, peer discovery, rendezvous and the
hand-off to the workload, and maps failures to process exit codes.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Dict, List, Mapping, Optional

from communication.probes import create_probe, PROBE_KINDS
from core.discovery import WorkerGroup, build_worker_group, parse_worker_hostnames
from core.errors import ConfigurationError, UnavailablePeer
from core.identity import WorkerIdentity, resolve_identity
from worker.config import WorkerConfig
from worker.launcher import build_worker_env, run_command
from worker.rendezvous import BackoffPolicy, GroupRendezvous, Probe
from worker.status_server import StatusServer


logger = logging.getLogger(__name__)


# Exit codes (sysexits.h where one fits)
EXIT_OK = 0
EXIT_UNAVAILABLE = 69
EXIT_CONFIG = 78
EXIT_COMMAND_NOT_FOUND = 127
EXIT_INTERRUPTED = 130

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure root logging for the worker process.

    Args:
        level: Log level name
        log_file: Optional file to log to in addition to stderr
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def resolve_worker(
    config: WorkerConfig,
    environ: Optional[Mapping[str, str]] = None
) -> tuple[WorkerIdentity, WorkerGroup]:
    """
    Resolve this worker's identity and the discovery table.

    An explicit host list wins over the naming convention.

    Args:
        config: Worker configuration
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Tuple of (identity, group)

    Raises:
        ConfigurationError: If identity or naming inputs are invalid
    """
    if config.hostnames:
        group = parse_worker_hostnames(
            config.hostnames, port=config.port, total=config.num_workers
        )
        identity = resolve_identity(total=group.total, environ=environ)
        return identity, group

    if not config.job_name or not config.subdomain:
        raise ConfigurationError(
            "job name and subdomain are required when no host list is given"
        )

    identity = resolve_identity(total=config.num_workers, environ=environ)
    group = build_worker_group(
        config.job_name, config.subdomain, identity.total, port=config.port
    )
    return identity, group


class WorkerClient:
    """
    Main worker client orchestrating all components.

    Manages the worker lifecycle: resolve, rendezvous, launch, shutdown.
    """

    def __init__(
        self,
        config: WorkerConfig,
        environ: Optional[Mapping[str, str]] = None,
        probe: Optional[Probe] = None
    ):
        """
        Initialize worker client.

        Args:
            config: Worker configuration
            environ: Environment for identity and workload (defaults to os.environ)
            probe: Reachability probe (built from config.probe if None)
        """
        self.config = config
        self.environ = environ
        self._probe = probe

        # Components (initialized in start())
        self.identity: Optional[WorkerIdentity] = None
        self.group: Optional[WorkerGroup] = None
        self.rendezvous: Optional[GroupRendezvous] = None
        self.status_server: Optional[StatusServer] = None

    async def start(self):
        """
        Resolve identity and group, and start the status server.

        Raises:
            ConfigurationError: If identity or naming inputs are invalid
        """
        self.identity, self.group = resolve_worker(self.config, self.environ)

        logger.info("=" * 60)
        logger.info("Starting podslice worker")
        logger.info("=" * 60)
        logger.info(f"Worker: {self.identity.ordinal} of {self.identity.total}")
        logger.info(f"Hostname: {self.group.address_of(self.identity.ordinal).host}")
        logger.info(f"Probe: {self.config.probe}")
        logger.info("=" * 60)

        if self._probe is None:
            self._probe = create_probe(self.config.probe, status_port=self.config.status_port)

        self.rendezvous = GroupRendezvous(
            identity=self.identity,
            group=self.group,
            probe=self._probe,
            timeout=self.config.rendezvous_timeout,
            probe_timeout=self.config.probe_timeout,
            backoff=BackoffPolicy(
                initial=self.config.backoff_initial,
                maximum=self.config.backoff_max,
                multiplier=self.config.backoff_multiplier,
                jitter=self.config.backoff_jitter,
            ),
        )

        if self.config.status_enabled:
            self.status_server = StatusServer(
                self.rendezvous,
                host=self.config.status_host,
                port=self.config.status_port,
            )
            await self.status_server.start()

    async def run(self) -> int:
        """
        Run the worker to completion.

        Returns:
            Process exit code
        """
        try:
            try:
                await self.start()
                await self.rendezvous.run()
            except ConfigurationError as e:
                logger.error(f"Configuration error: {e}")
                return EXIT_CONFIG
            except UnavailablePeer as e:
                logger.error(f"Rendezvous failed: {e}")
                return EXIT_UNAVAILABLE

            if not self.config.command:
                logger.info("No workload command configured, rendezvous complete")
                return EXIT_OK

            env = build_worker_env(self.identity, self.group, base=self.environ)
            try:
                return await run_command(self.config.command, env)
            except FileNotFoundError as e:
                logger.error(f"Workload command not found: {e}")
                return EXIT_COMMAND_NOT_FOUND

        finally:
            await self.stop()

    async def stop(self):
        """
        Stop worker client.

        Cancels outstanding probes and stops background services.
        Safe to call more than once.
        """
        if self.rendezvous is not None:
            await self.rendezvous.close()

        if self.status_server is not None:
            await self.status_server.stop()
            self.status_server = None

        aclose = getattr(self._probe, "aclose", None)
        if aclose is not None:
            await aclose()

    def get_status(self) -> Dict[str, Any]:
        """
        Get worker status.

        Returns:
            Status dictionary
        """
        if self.rendezvous is None:
            return {'state': 'init'}
        return self.rendezvous.get_status()


# Command line

def build_parser() -> argparse.ArgumentParser:
    """Create the podslice-worker argument parser."""
    parser = argparse.ArgumentParser(
        prog="podslice-worker",
        description="Wait for every worker of an indexed job, then run the workload.",
    )
    parser.add_argument("--config", help="JSON config file")
    parser.add_argument("--job-name", dest="job_name", help="Indexed job name")
    parser.add_argument("--subdomain", help="Headless service name")
    parser.add_argument("--num-workers", dest="num_workers", type=int, help="Workers in the group")
    parser.add_argument("--port", type=int, help="Inter-worker port")
    parser.add_argument("--hostnames", help="Explicit comma-separated worker host list")
    parser.add_argument("--probe", choices=PROBE_KINDS, help="Reachability probe")
    parser.add_argument("--timeout", dest="rendezvous_timeout", type=float,
                        help="Rendezvous deadline in seconds")
    parser.add_argument("--probe-timeout", dest="probe_timeout", type=float,
                        help="Per-attempt probe deadline in seconds")
    parser.add_argument("--status-port", dest="status_port", type=int, help="Status server port")
    parser.add_argument("--no-status", dest="status_enabled", action="store_false", default=None,
                        help="Do not start the status server")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", dest="log_file", help="Also log to this file")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Workload to run after the rendezvous (after --)")
    return parser


def load_config(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> WorkerConfig:
    """
    Build the worker config: JSON file, then environment, then flags.

    Raises:
        ConfigurationError: If any source holds invalid values
    """
    args = build_parser().parse_args(argv)

    values: Dict[str, Any] = {}
    if args.config:
        values.update(WorkerConfig.from_json_file(args.config).to_dict())
    values.update(WorkerConfig.env_overrides(environ))

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if command:
        values['command'] = command

    for name, value in vars(args).items():
        if name in ("config", "command") or value is None:
            continue
        values[name] = value

    return WorkerConfig.from_dict(values)


async def main(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> int:
    """
    Main entry point for the worker.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Process exit code
    """
    try:
        config = load_config(argv, environ)
    except (ConfigurationError, OSError) as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG

    setup_logging(config.log_level, config.log_file)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def signal_handler(signum):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        task.cancel()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    worker = WorkerClient(config, environ=environ)
    try:
        return await worker.run()
    except asyncio.CancelledError:
        logger.warning("Worker interrupted")
        return EXIT_INTERRUPTED
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def cli():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
