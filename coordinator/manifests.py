"""
Manifest rendering for podslice jobs.

Produces the two objects a podslice job needs:
- A headless Service giving every pod a stable DNS name
- An indexed Job running one worker per accelerator host

The environment injected into each pod is exactly what the worker
entrypoint reads, so the discovery table computed here and the one every
worker computes at startup agree.
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

from core.discovery import DEFAULT_PORT, build_worker_group
from core.errors import ConfigurationError
from core.identity import NUM_WORKERS_ENV_VAR

logger = logging.getLogger(__name__)


COMPLETION_INDEX_FIELD = "metadata.annotations['batch.kubernetes.io/job-completion-index']"
TPU_RESOURCE = "google.com/tpu"


@dataclass
class PodsliceJobSpec:
    """
    Description of one podslice job.

    num_workers is the number of accelerator hosts, e.g. 4 for a v4-32
    (32 cores / 8 cores per host).
    """

    job_name: str = "tpu-job-podslice"
    subdomain: str = "headless-svc"
    num_workers: int = 4

    # Container
    image: str = "python:3.11"
    command: List[str] = field(default_factory=list)
    port: int = DEFAULT_PORT
    privileged: bool = True

    # Scheduling
    accelerator: str = "tpu-v4-podslice"
    topology: str = "2x2x4"
    chips_per_worker: int = 4
    node_selector: Dict[str, str] = field(default_factory=dict)

    # Rendezvous
    probe: str = "dns"
    rendezvous_timeout: float = 300.0

    # Extra container environment
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.chips_per_worker <= 0:
            raise ConfigurationError(
                f"chips_per_worker must be positive, got {self.chips_per_worker}"
            )
        if self.rendezvous_timeout <= 0:
            raise ConfigurationError("rendezvous_timeout must be positive")
        if self.probe not in ("dns", "tcp", "http"):
            raise ConfigurationError(f"unknown probe kind {self.probe!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PodsliceJobSpec':
        """Create from dictionary."""
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"invalid job spec: {e}") from e

    @classmethod
    def from_json_file(cls, path: str) -> 'PodsliceJobSpec':
        """Load from JSON file."""
        with open(path, 'r') as f:
            try:
                data = json.load(f)
            except ValueError as e:
                raise ConfigurationError(f"invalid JSON in {path}: {e}") from e
        return cls.from_dict(data)


def render_service(spec: PodsliceJobSpec) -> Dict[str, Any]:
    """Headless service selecting the job's pods."""
    return {
        'apiVersion': 'v1',
        'kind': 'Service',
        'metadata': {'name': spec.subdomain},
        'spec': {
            'clusterIP': 'None',
            'selector': {'job-name': spec.job_name},
        },
    }


def _container_env(spec: PodsliceJobSpec, hostnames: str) -> List[Dict[str, Any]]:
    env = [
        {
            'name': 'TPU_WORKER_ID',
            'valueFrom': {'fieldRef': {'fieldPath': COMPLETION_INDEX_FIELD}},
        },
        {'name': 'TPU_WORKER_HOSTNAMES', 'value': hostnames},
        {'name': 'PODSLICE_JOB_NAME', 'value': spec.job_name},
        {'name': 'PODSLICE_SUBDOMAIN', 'value': spec.subdomain},
        {'name': NUM_WORKERS_ENV_VAR, 'value': str(spec.num_workers)},
        {'name': 'PODSLICE_PORT', 'value': str(spec.port)},
        {'name': 'PODSLICE_PROBE', 'value': spec.probe},
        {'name': 'PODSLICE_RENDEZVOUS_TIMEOUT', 'value': str(spec.rendezvous_timeout)},
    ]
    env.extend({'name': k, 'value': v} for k, v in sorted(spec.env.items()))
    return env


def render_job(spec: PodsliceJobSpec) -> Dict[str, Any]:
    """
    Indexed job running one worker per accelerator host.

    Raises:
        ConfigurationError: If the names, worker count or port are invalid
    """
    group = build_worker_group(spec.job_name, spec.subdomain, spec.num_workers, port=spec.port)

    node_selector = {
        'cloud.google.com/gke-tpu-accelerator': spec.accelerator,
        'cloud.google.com/gke-tpu-topology': spec.topology,
    }
    node_selector.update(spec.node_selector)

    container: Dict[str, Any] = {
        'name': 'tpu-job',
        'image': spec.image,
        'ports': [{'containerPort': spec.port}],
        'securityContext': {'privileged': spec.privileged},
        'env': _container_env(spec, group.to_env_value()),
        'resources': {
            'requests': {TPU_RESOURCE: spec.chips_per_worker},
            'limits': {TPU_RESOURCE: spec.chips_per_worker},
        },
    }
    if spec.command:
        container['command'] = list(spec.command)

    return {
        'apiVersion': 'batch/v1',
        'kind': 'Job',
        'metadata': {'name': spec.job_name},
        'spec': {
            # A partial group is useless, so never retry individual pods
            'backoffLimit': 0,
            'completions': spec.num_workers,
            'parallelism': spec.num_workers,
            'completionMode': 'Indexed',
            'template': {
                'spec': {
                    'subdomain': spec.subdomain,
                    'restartPolicy': 'Never',
                    'nodeSelector': node_selector,
                    'containers': [container],
                },
            },
        },
    }


def render_manifests(spec: PodsliceJobSpec) -> List[Dict[str, Any]]:
    """Service and job manifests for a podslice job."""
    return [render_service(spec), render_job(spec)]


def to_json(manifests: List[Dict[str, Any]]) -> str:
    """Serialize manifests as a v1 List, accepted by kubectl apply -f."""
    return json.dumps(
        {'apiVersion': 'v1', 'kind': 'List', 'items': manifests},
        indent=2
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Render podslice manifests to stdout.

    Usage:
        podslice-manifest --job-name tpu-job-podslice --num-workers 4 \\
            -- podslice-worker -- python train.py
    """
    parser = argparse.ArgumentParser(
        prog="podslice-manifest",
        description="Render the headless Service and indexed Job for a podslice job.",
    )
    parser.add_argument("--spec", help="JSON job spec file")
    parser.add_argument("--job-name", dest="job_name")
    parser.add_argument("--subdomain")
    parser.add_argument("--num-workers", dest="num_workers", type=int)
    parser.add_argument("--image")
    parser.add_argument("--port", type=int)
    parser.add_argument("--accelerator")
    parser.add_argument("--topology")
    parser.add_argument("--chips-per-worker", dest="chips_per_worker", type=int)
    parser.add_argument("--probe", choices=("dns", "tcp", "http"))
    parser.add_argument("--timeout", dest="rendezvous_timeout", type=float)
    parser.add_argument("-e", "--env", action="append", default=[], metavar="KEY=VALUE",
                        help="Extra container environment variable")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Container command (after --)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        values: Dict[str, Any] = {}
        if args.spec:
            values.update(PodsliceJobSpec.from_json_file(args.spec).to_dict())

        for name, value in vars(args).items():
            if name in ("spec", "env", "command") or value is None:
                continue
            values[name] = value

        env = dict(values.get('env', {}))
        for item in args.env:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise ConfigurationError(f"--env expects KEY=VALUE, got {item!r}")
            env[key] = value
        values['env'] = env

        command = list(args.command)
        if command and command[0] == "--":
            command = command[1:]
        if command:
            values['command'] = command

        spec = PodsliceJobSpec.from_dict(values)
        print(to_json(render_manifests(spec)))

    except (ConfigurationError, OSError) as e:
        logger.error(f"Cannot render manifests: {e}")
        return 1

    logger.info(f"Rendered manifests for {spec.job_name} ({spec.num_workers} workers)")
    return 0


def cli():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
