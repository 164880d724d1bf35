"""Tests for SSH infrastructure (ssh and rsync calls are faked)."""

import subprocess
from pathlib import Path

import pytest

from perftest.errors import ArtifactRetrievalError, ProvisioningError
from perftest.infrastructure.ssh import SshClient, SshInfraManager


class FakeRemote:
    """Records ssh/rsync command lines and answers them per host."""

    def __init__(self, failing_hosts=(), timeout_hosts=(), unreachable=()):
        self.calls = []
        self.failing_hosts = set(failing_hosts)
        self.timeout_hosts = set(timeout_hosts)
        self.unreachable = set(unreachable)
        self.rsync_error = None

    def run(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd[0] == 'rsync':
            if self.rsync_error:
                raise self.rsync_error
            return subprocess.CompletedProcess(cmd, 0, '', '')

        host = cmd[-2].split('@')[-1]
        command = cmd[-1]
        if host in self.timeout_hosts:
            raise subprocess.TimeoutExpired(cmd, kwargs.get('timeout'))
        if command == 'echo OK':
            out = '' if host in self.unreachable else 'OK\n'
            return subprocess.CompletedProcess(cmd, 0 if out else 255, out, '')
        if host in self.failing_hosts:
            return subprocess.CompletedProcess(cmd, 1, '', 'Permission denied')
        return subprocess.CompletedProcess(cmd, 0, '', '')

    def commands_for(self, host):
        return [cmd[-1] for cmd in self.calls if cmd[0] == 'ssh' and cmd[-2].endswith(host)]


@pytest.fixture
def remote(monkeypatch):
    fake = FakeRemote()
    monkeypatch.setattr(subprocess, 'run', fake.run)
    return fake


@pytest.fixture
def manager():
    return SshInfraManager(
        hosts=['perf-01', 'perf-02', 'perf-03'],
        user='bench',
        key='/keys/id_ed25519',
        remote_dir='/data/perf/',
    )


class TestSshClient:
    """Tests for ssh/rsync command construction."""

    def test_ssh_cmd(self):
        client = SshClient(user='bench', key='/keys/id', ssh_options=['-o', 'BatchMode=yes'])

        cmd = client.ssh_cmd('perf-01', 'uptime')

        assert cmd == ['ssh', '-o', 'BatchMode=yes', '-i', '/keys/id', 'bench@perf-01', 'uptime']

    def test_ssh_cmd_without_user_or_key(self):
        client = SshClient(ssh_options=[])

        assert client.ssh_cmd('perf-01', 'uptime') == ['ssh', 'perf-01', 'uptime']

    def test_rsync_cmd(self):
        client = SshClient(user='bench', ssh_options=['-o', 'BatchMode=yes'])

        cmd = client.rsync_cmd('perf-01', '/data/run/node-0/output', Path('/local/node-0'))

        assert cmd[:2] == ['rsync', '-az']
        assert cmd[2:4] == ['-e', 'ssh -o BatchMode=yes']
        assert cmd[-2:] == ['bench@perf-01:/data/run/node-0/output/', '/local/node-0/']


class TestSshInfraManager:
    """Tests for provisioning SSH clusters."""

    def test_create_uses_first_hosts(self, manager, remote):
        infra = manager.create(2)

        assert [node.host for node in infra.nodes] == ['perf-01', 'perf-02']
        assert infra.run_dir.startswith('/data/perf/run-')
        assert infra.nodes[1].work_dir == f"{infra.run_dir}/node-1"
        for node in infra.nodes:
            assert remote.commands_for(node.host) == [f"mkdir -p {node.work_dir}/output"]
        assert remote.commands_for('perf-03') == []

    def test_too_few_hosts(self, manager, remote):
        with pytest.raises(ProvisioningError, match="Need 4, have 3"):
            manager.create(4)
        assert remote.calls == []

    def test_rejects_empty_cluster(self, manager, remote):
        with pytest.raises(ProvisioningError):
            manager.create(0)

    def test_failed_host_cleans_prepared_hosts(self, manager, remote):
        remote.failing_hosts = {'perf-02'}

        with pytest.raises(ProvisioningError, match="perf-02"):
            manager.create(3)

        for host in ('perf-01', 'perf-03'):
            commands = remote.commands_for(host)
            assert commands[0].startswith('mkdir -p ')
            assert commands[1].startswith('rm -rf /data/perf/run-')
        assert not any(c.startswith('rm -rf') for c in remote.commands_for('perf-02'))

    def test_timeout_counts_as_failure(self, manager, remote):
        remote.timeout_hosts = {'perf-01'}

        with pytest.raises(ProvisioningError, match="perf-01"):
            manager.create(1)

    def test_check_connectivity(self, manager, remote):
        remote.unreachable = {'perf-03'}

        status = manager.check_connectivity()

        assert status == {'perf-01': True, 'perf-02': True, 'perf-03': False}


class TestSshInfrastructure:
    """Tests for a provisioned SSH cluster."""

    def test_close_removes_run_directory_once_per_host(self, manager, remote):
        infra = manager.create(2)
        remote.calls.clear()

        infra.close()
        infra.close()

        assert sorted(cmd[-2] for cmd in remote.calls) == ['bench@perf-01', 'bench@perf-02']
        assert all(cmd[-1] == f"rm -rf {infra.run_dir}" for cmd in remote.calls)

    def test_close_failure_raises(self, manager, remote):
        infra = manager.create(2)
        remote.failing_hosts = {'perf-02'}

        with pytest.raises(ProvisioningError, match="perf-02"):
            infra.close()
        assert infra.closed

    def test_copy_from_node(self, manager, remote, tmp_path):
        infra = manager.create(1)
        node = infra.nodes[0]

        destination = infra.copy_from_node(node, 'output', tmp_path / 'node-0')

        rsync = remote.calls[-1]
        assert rsync[0] == 'rsync'
        assert rsync[-2] == f"bench@perf-01:{node.work_dir}/output/"
        assert rsync[-1] == str(tmp_path / 'node-0') + '/'
        assert destination.is_dir()

    def test_copy_failure(self, manager, remote, tmp_path):
        infra = manager.create(1)
        remote.rsync_error = subprocess.CalledProcessError(23, ['rsync'], stderr='some files vanished')

        with pytest.raises(ArtifactRetrievalError, match="exit 23"):
            infra.copy_from_node(infra.nodes[0], 'output', tmp_path / 'node-0')

    def test_spawn_runs_in_work_dir(self, manager, remote, monkeypatch):
        started = []

        def fake_popen(cmd, **kwargs):
            started.append((cmd, kwargs))
            return 'process'

        monkeypatch.setattr(subprocess, 'Popen', fake_popen)
        infra = manager.create(1)
        node = infra.nodes[0]

        process = infra.spawn(node, infra.python_command() + ['-m', 'perftest.workers.worker'],
                              stdin=subprocess.PIPE)

        assert process == 'process'
        cmd, kwargs = started[0]
        assert cmd[-2] == 'bench@perf-01'
        assert cmd[-1] == f"cd {node.work_dir} && exec python3 -m perftest.workers.worker"
        assert kwargs['stdin'] == subprocess.PIPE
