"""
Worker configuration for podslice bring-up.

Defines all configuration parameters for a worker: job naming, rendezvous
timing, status server and the workload command.
"""

import os
import shlex
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Mapping
import json

from core.discovery import DEFAULT_PORT
from core.errors import ConfigurationError
from core.identity import NUM_WORKERS_ENV_VAR, parse_int


# Environment variable -> (field name, parser)
ENV_FIELDS = {
    'PODSLICE_JOB_NAME': ('job_name', str),
    'PODSLICE_SUBDOMAIN': ('subdomain', str),
    NUM_WORKERS_ENV_VAR: ('num_workers', parse_int),
    'PODSLICE_PORT': ('port', parse_int),
    'TPU_WORKER_HOSTNAMES': ('hostnames', str),
    'PODSLICE_PROBE': ('probe', str),
    'PODSLICE_RENDEZVOUS_TIMEOUT': ('rendezvous_timeout', float),
    'PODSLICE_PROBE_TIMEOUT': ('probe_timeout', float),
    'PODSLICE_STATUS_PORT': ('status_port', parse_int),
    'PODSLICE_LOG_LEVEL': ('log_level', str),
    'PODSLICE_COMMAND': ('command', shlex.split),
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class WorkerConfig:
    """
    Configuration for a podslice worker.

    Identity (the completion index) is not part of the config; it is read
    from the environment when the worker starts.
    """

    # Job naming
    job_name: Optional[str] = None
    subdomain: Optional[str] = None  # headless service name
    num_workers: Optional[int] = None
    port: int = DEFAULT_PORT  # inter-worker port
    hostnames: Optional[str] = None  # explicit comma-separated host list

    # Rendezvous
    probe: str = "dns"  # "dns", "tcp", "http"
    rendezvous_timeout: float = 300.0  # seconds for the whole wait
    probe_timeout: float = 5.0  # seconds per probe attempt
    backoff_initial: float = 1.0  # seconds
    backoff_max: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.1

    # Status server
    status_enabled: bool = True
    status_host: str = "0.0.0.0"
    status_port: int = 8080

    # Workload run after a successful rendezvous
    command: List[str] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate settings that do not depend on the environment."""
        if self.probe not in ("dns", "tcp", "http"):
            raise ConfigurationError(f"unknown probe kind {self.probe!r}")

        for name in ("rendezvous_timeout", "probe_timeout", "backoff_initial", "backoff_max"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        for name in ("port", "status_port"):
            value = getattr(self, name)
            if not 0 < value < 65536:
                raise ConfigurationError(f"{name} must be in 1..65535, got {value}")

        if not isinstance(self.command, list) or not all(isinstance(a, str) for a in self.command):
            raise ConfigurationError(
                f"command must be a list of strings, got {self.command!r}"
            )

        if self.num_workers is not None and self.num_workers <= 0:
            raise ConfigurationError(f"num_workers must be positive, got {self.num_workers}")

        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"unknown log level {self.log_level!r}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert config to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            'job_name': self.job_name,
            'subdomain': self.subdomain,
            'num_workers': self.num_workers,
            'port': self.port,
            'hostnames': self.hostnames,
            'probe': self.probe,
            'rendezvous_timeout': self.rendezvous_timeout,
            'probe_timeout': self.probe_timeout,
            'backoff_initial': self.backoff_initial,
            'backoff_max': self.backoff_max,
            'backoff_multiplier': self.backoff_multiplier,
            'backoff_jitter': self.backoff_jitter,
            'status_enabled': self.status_enabled,
            'status_host': self.status_host,
            'status_port': self.status_port,
            'command': list(self.command),
            'log_level': self.log_level,
            'log_file': self.log_file,
        }

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'WorkerConfig':
        """
        Create config from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            WorkerConfig instance
        """
        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"invalid worker config: {e}") from e

    @classmethod
    def from_json_file(cls, path: str) -> 'WorkerConfig':
        """
        Load config from JSON file.

        Args:
            path: Path to JSON config file

        Returns:
            WorkerConfig instance
        """
        with open(path, 'r') as f:
            try:
                config_dict = json.load(f)
            except ValueError as e:
                raise ConfigurationError(f"invalid JSON in {path}: {e}") from e
        return cls.from_dict(config_dict)

    def to_json_file(self, path: str):
        """
        Save config to JSON file.

        Args:
            path: Path to save JSON config
        """
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @staticmethod
    def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        """
        Read config values from PODSLICE_* environment variables.

        Args:
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Field overrides for the variables that are set
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for var, (name, parse) in ENV_FIELDS.items():
            raw = environ.get(var)
            if raw is None or not raw.strip():
                continue
            try:
                overrides[name] = parse(raw.strip())
            except ValueError:
                raise ConfigurationError(f"{var} has an invalid value: {raw!r}") from None
        return overrides

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **defaults
    ) -> 'WorkerConfig':
        """
        Create config from the environment.

        Args:
            environ: Environment mapping (defaults to os.environ)
            **defaults: Values used where the environment is silent

        Returns:
            WorkerConfig instance
        """
        values = dict(defaults)
        values.update(cls.env_overrides(environ))
        return cls.from_dict(values)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"WorkerConfig(job='{self.job_name}', "
            f"subdomain='{self.subdomain}', "
            f"num_workers={self.num_workers}, "
            f"probe='{self.probe}')"
        )
