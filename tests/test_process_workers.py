"""
Tests for process workers.

These start real worker processes on a local cluster. Tasks used here are
defined at module level so the worker processes can unpickle them.
"""

import io
import json
from pathlib import Path

import pytest

from perftest.config import PerformanceTest
from perftest.errors import ConfigurationError, LaunchError, TaskFailedError
from perftest.infrastructure.local import LocalInfraManager, LocalInfrastructure
from perftest.run.runner import TestRunner
from perftest.run.summary import load_summary
from perftest.tasks import CommandTask, Task
from perftest.workers.base import WorkerAssignment
from perftest.workers.channel import HEADER
from perftest.workers.process import ProcessWorkerLauncher, ProcessWorkerSet, RemoteWorker


class WriteIdentity(Task):
    """Write what the worker knows about itself to its output directory."""

    def run(self, context):
        identity = {
            'worker_id': context.worker_id,
            'role': context.role,
            'servers': context.hosts_for_role('server'),
        }
        path = context.output_dir / f"{context.role}-{context.worker_id}.json"
        path.write_text(json.dumps(identity))


class Remember(Task):
    def run(self, context):
        context.set_attribute('token', f"token-{context.worker_id}")


class UseRemembered(Task):
    def run(self, context):
        token = context.get_attribute('token')
        if token is None:
            raise RuntimeError("setup did not run on this worker")
        (context.output_dir / 'token.txt').write_text(token)


class FailOn(Task):
    def __init__(self, worker_id):
        self.worker_id = worker_id

    def run(self, context):
        if context.worker_id == self.worker_id:
            raise RuntimeError(f"boom on {context.worker_id}")


class ServerClientTest(PerformanceTest):
    def configure(self, config):
        config.role('server', 1)
        config.role('client', 2)
        config.setup(Remember(), 'server', 'client')
        config.workload(UseRemembered(), 'client')
        config.teardown(WriteIdentity(), 'server')


@pytest.fixture
def manager(tmp_path):
    return LocalInfraManager(base_dir=tmp_path / 'clusters')


@pytest.fixture
def launcher(tmp_path):
    return ProcessWorkerLauncher(logs_dir=tmp_path / 'logs', start_timeout=60, stop_timeout=10)


def node_output(infra, index):
    return Path(infra.nodes[index].work_dir) / 'output'


class BrokenNodeInfrastructure(LocalInfrastructure):
    """Local cluster that starts `command` instead of a worker on node 1."""

    def __init__(self, root, nodes, command):
        super().__init__(root, nodes)
        self.command = command
        self.spawned = []

    def spawn(self, node, argv, stdin=None, stdout=None, stderr=None):
        if node == self.nodes[1]:
            argv = self.command
        process = super().spawn(node, argv, stdin=stdin, stdout=stdout, stderr=stderr)
        self.spawned.append(process)
        return process


@pytest.fixture
def broken_cluster(manager):
    clusters = []

    def create(command, node_count=3):
        infra = manager.create(node_count)
        broken = BrokenNodeInfrastructure(infra.root, infra.nodes, command)
        clusters.append(broken)
        return broken

    yield create
    for infra in clusters:
        infra.close()


class FakeProcess:
    """Popen stand-in whose stdout replays fixed bytes."""

    def __init__(self, reply):
        self.stdin = io.BytesIO()
        self.stdout = io.BytesIO(reply)

    def poll(self):
        return None


class TestProcessWorkerLauncher:
    """Tests for launching and stopping worker processes."""

    def test_launch_and_close(self, manager, launcher, tmp_path):
        with manager.create(3) as infra:
            workers = launcher.launch(infra, {'server': 1, 'client': 2})

            assert [(a.worker_id, a.role) for a in workers.assignments] == [
                (0, 'server'), (1, 'client'), (2, 'client'),
            ]
            workers.close()
            workers.close()

            assert workers.closed
            assert all(worker.process.returncode == 0 for worker in workers.workers)
        assert (tmp_path / 'logs' / 'worker-0-server.log').exists()
        assert (tmp_path / 'logs' / 'worker-2-client.log').exists()

    def test_too_few_nodes(self, manager, launcher):
        with manager.create(1) as infra:
            with pytest.raises(LaunchError, match="Need 2, have 1"):
                launcher.launch(infra, {'server': 1, 'client': 1})

    @pytest.mark.parametrize('roles', [{}, {'client': 0}])
    def test_no_workers(self, manager, launcher, roles):
        with manager.create(1) as infra:
            with pytest.raises(LaunchError, match="No workers"):
                launcher.launch(infra, roles)

    def test_worker_exiting_at_startup_stops_the_others(self, broken_cluster, launcher):
        infra = broken_cluster(['sh', '-c', 'exit 3'])

        with pytest.raises(LaunchError, match="exited during startup"):
            launcher.launch(infra, {'server': 1, 'client': 2})

        assert len(infra.spawned) == 3
        assert all(process.poll() is not None for process in infra.spawned)

    def test_worker_not_ready_in_time_stops_all(self, broken_cluster, tmp_path):
        launcher = ProcessWorkerLauncher(logs_dir=tmp_path / 'logs', start_timeout=1, stop_timeout=2)
        infra = broken_cluster(['sleep', '30'])

        with pytest.raises(LaunchError, match="not ready after 1s"):
            launcher.launch(infra, {'server': 1, 'client': 2})

        assert len(infra.spawned) == 3
        assert all(process.poll() is not None for process in infra.spawned)


class TestProcessWorkerSet:
    """Tests for dispatching tasks to worker processes."""

    def test_execute_targets_roles(self, manager, launcher):
        with manager.create(3) as infra:
            with launcher.launch(infra, {'server': 1, 'client': 2}) as workers:
                workers.execute(WriteIdentity(), ['client'])

                assert list(node_output(infra, 0).iterdir()) == []
                identity = json.loads((node_output(infra, 2) / 'client-2.json').read_text())
                assert identity == {'worker_id': 2, 'role': 'client', 'servers': ['localhost']}

    def test_attributes_persist_between_tasks(self, manager, launcher):
        with manager.create(2) as infra:
            with launcher.launch(infra, {'client': 2}) as workers:
                workers.execute(Remember(), ['client'])
                workers.execute(UseRemembered(), ['client'])

                assert (node_output(infra, 1) / 'token.txt').read_text() == 'token-1'

    def test_failure_reports_every_failing_worker(self, manager, launcher):
        with manager.create(3) as infra:
            with launcher.launch(infra, {'client': 3}) as workers:
                with pytest.raises(TaskFailedError) as excinfo:
                    workers.execute(CommandTask('exit 3'), ['client'])

                assert sorted(f.worker_id for f in excinfo.value.failures) == [0, 1, 2]
                assert 'CalledProcessError' in excinfo.value.failures[0].details

    def test_failure_on_one_worker(self, manager, launcher):
        with manager.create(2) as infra:
            with launcher.launch(infra, {'client': 2}) as workers:
                with pytest.raises(TaskFailedError) as excinfo:
                    workers.execute(FailOn(1), ['client'])

                failures = excinfo.value.failures
                assert [(f.worker_id, f.role) for f in failures] == [(1, 'client')]
                assert 'boom on 1' in failures[0].details

                # The worker survives a failed task.
                workers.execute(WriteIdentity(), ['client'])
                assert (node_output(infra, 1) / 'client-1.json').exists()

    def test_command_task_environment(self, manager, launcher):
        with manager.create(2) as infra:
            with launcher.launch(infra, {'server': 1, 'client': 1}) as workers:
                workers.execute(
                    CommandTask('echo "$PERFTEST_ROLE $PERFTEST_WORKER_ID $PERFTEST_HOSTS_SERVER"',
                                name='env'),
                    ['client'],
                )

                log = (node_output(infra, 1) / 'env.log').read_text()
                assert log.strip() == 'client 1 localhost'

    def test_unpicklable_task(self, manager, launcher):
        with manager.create(1) as infra:
            with launcher.launch(infra, {'client': 1}) as workers:
                with pytest.raises(ConfigurationError, match="cannot be sent"):
                    workers.execute(lambda context: None, ['client'])

    def test_no_targets_is_a_no_op(self, manager, launcher):
        with manager.create(1) as infra:
            with launcher.launch(infra, {'client': 1}) as workers:
                workers.execute(FailOn(0), ['server'])

    def test_corrupt_reply_is_a_task_failure(self, manager, tmp_path):
        garbage = b'\x00\x01\x02'
        with manager.create(1) as infra:
            assignment = WorkerAssignment(worker_id=0, role='client', node=infra.nodes[0])
            with open(tmp_path / 'worker.log', 'wb') as log_file:
                worker = RemoteWorker(assignment, FakeProcess(HEADER.pack(len(garbage)) + garbage), log_file)

                with pytest.raises(TaskFailedError) as excinfo:
                    ProcessWorkerSet([worker]).execute(Remember(), ['client'])

        failure = excinfo.value.failures[0]
        assert (failure.worker_id, failure.role) == (0, 'client')
        assert 'Corrupt reply' in failure.details


class TestRunnerWithProcesses:
    """End-to-end runs on a local cluster."""

    def test_full_run(self, manager, launcher, tmp_path):
        output = tmp_path / 'results'
        runner = TestRunner(manager, launcher, output_dir=output)

        summary = runner.run_test(ServerClientTest(), nodes=3)

        assert sorted(p.name for p in output.iterdir()) == [
            'node-0', 'node-1', 'node-2', 'run_summary.yaml',
        ]
        assert (output / 'node-0' / 'server-0.json').exists()
        assert (output / 'node-2' / 'token.txt').read_text() == 'token-2'
        assert [p.name for p in summary.phases] == ['setup', 'workload', 'teardown']
        assert load_summary(output)['roles'] == {'server': 1, 'client': 2}
        assert list((tmp_path / 'clusters').iterdir()) == []

    def test_failed_run_copies_nothing(self, manager, launcher, tmp_path):
        class FailingTest(PerformanceTest):
            def configure(self, config):
                config.role('client', 2)
                config.workload(FailOn(0), 'client')

        output = tmp_path / 'results'
        runner = TestRunner(manager, launcher, output_dir=output)

        with pytest.raises(TaskFailedError):
            runner.run_test(FailingTest(), nodes=2)

        assert not output.exists()
        assert list((tmp_path / 'clusters').iterdir()) == []
