"""
Unit tests for worker components.

Tests:
- Configuration
- Workload launcher
- Worker client and entrypoint
"""

import asyncio
import json
import os
import signal
import socket
import sys
import tempfile

import pytest

from core.discovery import build_worker_group
from core.errors import ConfigurationError
from core.identity import WorkerIdentity
from worker.config import WorkerConfig
from worker.launcher import build_worker_env, run_command
from worker.rendezvous import RendezvousState
from worker.client import (
    WorkerClient,
    resolve_worker,
    load_config,
    main,
    EXIT_OK,
    EXIT_CONFIG,
    EXIT_UNAVAILABLE,
    EXIT_COMMAND_NOT_FOUND,
    EXIT_INTERRUPTED,
)


async def always_reachable(peer):
    return None


async def never_reachable(peer):
    raise OSError("connection refused")


class TestWorkerConfig:
    """Test worker configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = WorkerConfig()

        assert config.port == 8471
        assert config.probe == "dns"
        assert config.rendezvous_timeout == 300.0
        assert config.status_enabled is True
        assert config.status_port == 8080
        assert config.command == []

    def test_custom_config(self):
        """Test custom configuration."""
        config = WorkerConfig(
            job_name="tpu-job-podslice",
            subdomain="headless-svc",
            num_workers=4,
            probe="tcp",
            log_level="debug",
        )

        assert config.job_name == "tpu-job-podslice"
        assert config.num_workers == 4
        assert config.probe == "tcp"
        assert config.log_level == "DEBUG"

    @pytest.mark.parametrize("kwargs", [
        {"probe": "icmp"},
        {"rendezvous_timeout": 0},
        {"probe_timeout": -1},
        {"port": 70000},
        {"status_port": 0},
        {"num_workers": 0},
        {"log_level": "LOUD"},
    ])
    def test_invalid_config(self, kwargs):
        """Test that invalid values are rejected."""
        with pytest.raises(ConfigurationError):
            WorkerConfig(**kwargs)

    def test_from_dict(self):
        """Test creating config from dictionary."""
        config = WorkerConfig.from_dict({
            'job_name': 'job',
            'num_workers': 2,
            'command': ['python', 'train.py'],
        })

        assert config.job_name == 'job'
        assert config.num_workers == 2
        assert config.command == ['python', 'train.py']

    def test_from_dict_unknown_key(self):
        """Test that unknown keys are a configuration error."""
        with pytest.raises(ConfigurationError):
            WorkerConfig.from_dict({'model_size': 'tiny'})

    @pytest.mark.parametrize("command", ["python train.py", ["python", 3], None])
    def test_command_must_be_argument_list(self, command):
        """Test that a command given as a shell string or mixed list is rejected."""
        with pytest.raises(ConfigurationError, match="command"):
            WorkerConfig.from_dict({'command': command})

    def test_from_json_file_malformed(self, tmp_path):
        """Test that a malformed config file is a configuration error."""
        path = tmp_path / "worker.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="invalid JSON"):
            WorkerConfig.from_json_file(str(path))

    def test_json_serialization(self):
        """Test JSON save/load."""
        config = WorkerConfig(job_name="job", subdomain="svc", num_workers=8, probe="http")

        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            path = f.name

        try:
            config.to_json_file(path)
            loaded_config = WorkerConfig.from_json_file(path)

            assert loaded_config == config
        finally:
            os.unlink(path)

    def test_from_env(self):
        """Test reading PODSLICE_* variables."""
        config = WorkerConfig.from_env({
            'PODSLICE_JOB_NAME': 'tpu-job-podslice',
            'PODSLICE_SUBDOMAIN': 'headless-svc',
            'PODSLICE_NUM_WORKERS': '4',
            'PODSLICE_PORT': '9000',
            'PODSLICE_PROBE': 'tcp',
            'PODSLICE_RENDEZVOUS_TIMEOUT': '60',
            'PODSLICE_COMMAND': 'python -c "print(1)"',
            'UNRELATED': 'x',
        })

        assert config.job_name == 'tpu-job-podslice'
        assert config.subdomain == 'headless-svc'
        assert config.num_workers == 4
        assert config.port == 9000
        assert config.probe == 'tcp'
        assert config.rendezvous_timeout == 60.0
        assert config.command == ['python', '-c', 'print(1)']

    def test_from_env_defaults(self):
        """Test that defaults apply where the environment is silent."""
        config = WorkerConfig.from_env({'PODSLICE_PROBE': ''}, probe_timeout=2.0)

        assert config.probe == 'dns'
        assert config.probe_timeout == 2.0

    @pytest.mark.parametrize("var,raw", [
        ('PODSLICE_PORT', 'eighty'),
        ('PODSLICE_PORT', '8_471'),
        ('PODSLICE_NUM_WORKERS', '+4'),
    ])
    def test_from_env_invalid_value(self, var, raw):
        """Test that unparsable values name the variable."""
        with pytest.raises(ConfigurationError, match=var):
            WorkerConfig.from_env({var: raw})


class TestLauncher:
    """Test the workload launcher."""

    def test_build_worker_env(self):
        """Test the accelerator runtime variables."""
        group = build_worker_group("tpu-job-podslice", "headless-svc", 4)
        env = build_worker_env(WorkerIdentity(2, 4), group, base={'PATH': '/bin'})

        assert env['PATH'] == '/bin'
        assert env['TPU_WORKER_ID'] == '2'
        assert env['TPU_WORKER_HOSTNAMES'] == group.to_env_value()
        assert env['PODSLICE_WORKER_ORDINAL'] == '2'
        assert env['PODSLICE_NUM_WORKERS'] == '4'

    def test_build_worker_env_copies_base(self):
        """Test that the base environment is not modified."""
        base = {'PATH': '/bin'}
        build_worker_env(WorkerIdentity(0, 1), build_worker_group("job", "svc", 1), base=base)

        assert base == {'PATH': '/bin'}

    @pytest.mark.asyncio
    async def test_run_command_exit_code(self):
        """Test that the workload exit code is returned."""
        code = await run_command([sys.executable, "-c", "print('hello'); raise SystemExit(3)"])
        assert code == 3

    @pytest.mark.asyncio
    async def test_run_command_env(self):
        """Test that the workload sees the given environment."""
        env = dict(os.environ, TPU_WORKER_ID="5")
        code = await run_command(
            [sys.executable, "-c", "import os, sys; sys.exit(0 if os.environ['TPU_WORKER_ID'] == '5' else 1)"],
            env,
        )
        assert code == 0

    @pytest.mark.asyncio
    async def test_run_command_empty(self):
        """Test that an empty command is a configuration error."""
        with pytest.raises(ConfigurationError):
            await run_command([])


class TestResolveWorker:
    """Test identity and group resolution for the worker."""

    def test_naming_convention(self):
        """Test building the group from job name and subdomain."""
        config = WorkerConfig(job_name="tpu-job-podslice", subdomain="headless-svc", num_workers=4)

        identity, group = resolve_worker(config, {'TPU_WORKER_ID': '2'})

        assert identity == WorkerIdentity(2, 4)
        assert group.address_of(2).host == "tpu-job-podslice-2.headless-svc"

    def test_explicit_hostnames(self):
        """Test that an explicit host list defines the group and its size."""
        config = WorkerConfig(hostnames="a.svc,b.svc,c.svc")

        identity, group = resolve_worker(config, {'JOB_COMPLETION_INDEX': '1'})

        assert identity == WorkerIdentity(1, 3)
        assert group.hostnames() == ["a.svc", "b.svc", "c.svc"]

    def test_hostnames_count_mismatch(self):
        """Test that the host list must agree with num_workers."""
        config = WorkerConfig(hostnames="a.svc,b.svc", num_workers=4)

        with pytest.raises(ConfigurationError):
            resolve_worker(config, {'TPU_WORKER_ID': '0'})

    def test_missing_names(self):
        """Test that naming inputs are required without a host list."""
        config = WorkerConfig(num_workers=2)

        with pytest.raises(ConfigurationError, match="job name"):
            resolve_worker(config, {'TPU_WORKER_ID': '0'})


def make_config(**kwargs):
    values = dict(
        job_name="tpu-job-podslice",
        subdomain="headless-svc",
        num_workers=2,
        status_enabled=False,
        rendezvous_timeout=1.0,
        backoff_initial=0.01,
        backoff_max=0.02,
    )
    values.update(kwargs)
    return WorkerConfig(**values)


class TestWorkerClient:
    """Test the worker lifecycle."""

    @pytest.mark.asyncio
    async def test_rendezvous_without_command(self):
        """Test a successful rendezvous with nothing to launch."""
        worker = WorkerClient(make_config(), environ={'TPU_WORKER_ID': '0'}, probe=always_reachable)

        assert await worker.run() == EXIT_OK
        assert worker.get_status()['state'] == 'ready'

    @pytest.mark.asyncio
    async def test_single_worker(self):
        """Test that a one-worker job never probes."""
        calls = []

        async def probe(peer):
            calls.append(peer)

        worker = WorkerClient(make_config(num_workers=1), environ={'TPU_WORKER_ID': '0'}, probe=probe)

        assert await worker.run() == EXIT_OK
        assert calls == []

    @pytest.mark.asyncio
    async def test_configuration_error_exit_code(self):
        """Test that a missing index exits with EX_CONFIG."""
        worker = WorkerClient(make_config(), environ={}, probe=always_reachable)

        assert await worker.run() == EXIT_CONFIG
        assert worker.get_status() == {'state': 'init'}

    @pytest.mark.asyncio
    async def test_unavailable_peer_exit_code(self):
        """Test that an unreachable peer exits with EX_UNAVAILABLE."""
        worker = WorkerClient(
            make_config(rendezvous_timeout=0.1),
            environ={'TPU_WORKER_ID': '1'},
            probe=never_reachable,
        )

        assert await worker.run() == EXIT_UNAVAILABLE
        assert worker.get_status()['state'] == 'failed'

    @pytest.mark.asyncio
    async def test_launches_command_with_runtime_env(self):
        """Test that the workload runs with TPU_WORKER_* set."""
        script = (
            "import os, sys; "
            "ok = os.environ['TPU_WORKER_ID'] == '1' and "
            "os.environ['TPU_WORKER_HOSTNAMES'] == "
            "'tpu-job-podslice-0.headless-svc,tpu-job-podslice-1.headless-svc'; "
            "sys.exit(0 if ok else 4)"
        )
        worker = WorkerClient(
            make_config(command=[sys.executable, "-c", script]),
            environ=dict(os.environ, TPU_WORKER_ID='1'),
            probe=always_reachable,
        )

        assert await worker.run() == EXIT_OK

    @pytest.mark.asyncio
    async def test_command_exit_code_propagates(self):
        """Test that the workload's exit code becomes the worker's."""
        worker = WorkerClient(
            make_config(command=[sys.executable, "-c", "raise SystemExit(7)"]),
            environ=dict(os.environ, TPU_WORKER_ID='0'),
            probe=always_reachable,
        )

        assert await worker.run() == 7

    @pytest.mark.asyncio
    async def test_command_not_found(self):
        """Test a missing workload binary."""
        worker = WorkerClient(
            make_config(command=["/nonexistent/podslice-workload"]),
            environ={'TPU_WORKER_ID': '0'},
            probe=always_reachable,
        )

        assert await worker.run() == EXIT_COMMAND_NOT_FOUND

    @pytest.mark.asyncio
    async def test_status_port_in_use(self):
        """Test that a status server that cannot bind exits with EX_CONFIG."""
        closed = []

        class ClosingProbe:
            async def __call__(self, peer):
                return None

            async def aclose(self):
                closed.append(True)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as held:
            held.bind(("127.0.0.1", 0))
            held.listen()
            port = held.getsockname()[1]

            worker = WorkerClient(
                make_config(status_enabled=True, status_host="127.0.0.1", status_port=port),
                environ={'TPU_WORKER_ID': '0'},
                probe=ClosingProbe(),
            )

            assert await worker.run() == EXIT_CONFIG

        assert worker.get_status()['state'] == 'init'
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        """Test that stopping twice is harmless."""
        worker = WorkerClient(make_config(), environ={'TPU_WORKER_ID': '0'}, probe=always_reachable)
        await worker.run()

        await worker.stop()
        await worker.stop()


class TestEntrypoint:
    """Test command line handling."""

    def test_load_config_precedence(self):
        """Test that flags override the environment, which overrides the file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            json.dump({'job_name': 'from-file', 'subdomain': 'file-svc', 'probe_timeout': 9.0}, f)
            path = f.name

        try:
            config = load_config(
                ["--config", path, "--job-name", "from-flag", "--", "python", "train.py"],
                {'PODSLICE_JOB_NAME': 'from-env', 'PODSLICE_SUBDOMAIN': 'env-svc'},
            )
        finally:
            os.unlink(path)

        assert config.job_name == 'from-flag'
        assert config.subdomain == 'env-svc'
        assert config.probe_timeout == 9.0
        assert config.command == ['python', 'train.py']

    def test_load_config_no_status(self):
        """Test the --no-status flag."""
        assert load_config(["--no-status"], {}).status_enabled is False
        assert load_config([], {}).status_enabled is True

    @pytest.mark.asyncio
    async def test_main_single_worker(self):
        """Test a full run of the entrypoint."""
        code = await main(
            ["--job-name", "solo", "--subdomain", "svc", "--num-workers", "1", "--no-status"],
            {'TPU_WORKER_ID': '0'},
        )
        assert code == EXIT_OK

    @pytest.mark.asyncio
    async def test_main_invalid_config(self):
        """Test that invalid flags exit with EX_CONFIG."""
        code = await main(["--timeout", "-1"], {})
        assert code == EXIT_CONFIG

    @pytest.mark.asyncio
    async def test_main_missing_index(self):
        """Test that a missing completion index exits with EX_CONFIG."""
        code = await main(
            ["--job-name", "job", "--subdomain", "svc", "--num-workers", "2", "--no-status"],
            {},
        )
        assert code == EXIT_CONFIG

    @pytest.mark.asyncio
    async def test_main_malformed_config_file(self, tmp_path):
        """Test that a config file that is not JSON exits with EX_CONFIG."""
        path = tmp_path / "worker.json"
        path.write_text("{not json")

        code = await main(["--config", str(path), "--no-status"], {})
        assert code == EXIT_CONFIG

    @pytest.mark.asyncio
    async def test_main_sigterm_during_rendezvous(self, monkeypatch):
        """Test that SIGTERM while waiting for peers fails the rendezvous and exits 130."""
        workers = []

        class RecordingWorkerClient(WorkerClient):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                workers.append(self)

        monkeypatch.setattr("worker.client.WorkerClient", RecordingWorkerClient)
        monkeypatch.setattr("worker.client.create_probe", lambda kind, status_port: never_reachable)

        task = asyncio.create_task(main(
            ["--job-name", "job", "--subdomain", "svc", "--num-workers", "3",
             "--timeout", "30", "--no-status"],
            {'TPU_WORKER_ID': '0'},
        ))

        for _ in range(200):
            if workers and workers[0].rendezvous is not None \
                    and workers[0].rendezvous.state is RendezvousState.WAITING_FOR_PEERS:
                break
            await asyncio.sleep(0.01)
        else:
            pytest.fail("rendezvous did not start")

        os.kill(os.getpid(), signal.SIGTERM)

        assert await asyncio.wait_for(task, timeout=5.0) == EXIT_INTERRUPTED
        assert workers[0].rendezvous.state is RendezvousState.FAILED
        assert not [
            t for t in asyncio.all_tasks()
            if t.get_name().startswith("rendezvous-peer-")
        ]
