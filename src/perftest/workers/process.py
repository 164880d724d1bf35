"""
Process-based workers.

Every worker is a separate Python process started on its node through the
Infrastructure, so the same launcher serves local and SSH clusters. Tasks
are pickled on the controller and unpickled by the worker, which means a
task must be importable on the node (module-level classes and functions).

Dispatch policy: a task is sent to all targeted workers at once and the
step waits for every one of them, successful or not, before reporting.
Nothing is left running remotely when a step fails.
"""

import logging
import pickle
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import IO, Iterable, List, Mapping, Optional, Union

from .base import WorkerAssignment, WorkerLauncher, WorkerSet, assign_workers, roles_to_hosts
from .channel import receive_message, send_message
from .context import WorkerInfo
from ..errors import ConfigurationError, LaunchError, TaskFailedError, WorkerFailure
from ..infrastructure.base import Infrastructure

logger = logging.getLogger(__name__)

WORKER_MODULE = 'perftest.workers.worker'


class RemoteWorker:
    """Controller-side handle on one worker process."""

    def __init__(self, assignment: WorkerAssignment, process: subprocess.Popen, log_file: IO[bytes]):
        self.assignment = assignment
        self.process = process
        self.log_file = log_file

    @property
    def worker_id(self) -> int:
        return self.assignment.worker_id

    @property
    def role(self) -> str:
        return self.assignment.role

    @property
    def host(self) -> str:
        return self.assignment.node.host

    def __str__(self):
        return f"worker {self.worker_id} ({self.role}@{self.host})"

    def handshake(self, info: WorkerInfo) -> None:
        """Send the worker its identity and wait until it reports ready."""
        try:
            send_message(self.process.stdin, 'init', info)
            kind, _ = receive_message(self.process.stdout)
        except (EOFError, OSError, pickle.UnpicklingError) as e:
            raise LaunchError(
                f"{self} exited during startup (exit code {self.process.poll()}), "
                f"see {self.log_file.name}"
            ) from e
        if kind != 'ready':
            raise LaunchError(f"{self} sent {kind!r} instead of 'ready'")

    def run(self, payload: bytes) -> Optional[str]:
        """
        Run a pickled task and wait for its outcome.

        Returns:
            None on success, otherwise a description of the failure
        """
        try:
            send_message(self.process.stdin, 'run', payload)
            kind, details = receive_message(self.process.stdout)
        except (EOFError, OSError) as e:
            return (
                f"Worker process died (exit code {self.process.poll()}): {e}\n"
                f"See {self.log_file.name}"
            )
        except pickle.UnpicklingError as e:
            return f"Corrupt reply from worker: {e}\nSee {self.log_file.name}"
        if kind == 'done':
            return None
        if kind == 'failed':
            return details
        return f"Unexpected reply {kind!r}"

    def stop(self, timeout: float) -> None:
        """Ask the worker to exit; kill it if it does not within `timeout`."""
        try:
            if self.process.poll() is None:
                try:
                    send_message(self.process.stdin, 'stop')
                    self.process.stdin.close()
                except OSError:
                    pass
                try:
                    self.process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.warning("%s did not stop within %ss, killing it", self, timeout)
                    self.process.kill()
                    self.process.wait()
        finally:
            for stream in (self.process.stdin, self.process.stdout):
                if stream is not None and not stream.closed:
                    try:
                        stream.close()
                    except OSError:
                        pass
            self.log_file.close()


class ProcessWorkerSet(WorkerSet):
    """Workers running as processes on cluster nodes."""

    def __init__(self, workers: List[RemoteWorker], stop_timeout: float = 30.0):
        super().__init__([worker.assignment for worker in workers])
        self.workers = list(workers)
        self.stop_timeout = stop_timeout

    def execute(self, task, roles: Iterable[str]) -> None:
        roles = frozenset(roles)
        targets = [worker for worker in self.workers if worker.role in roles]
        if not targets:
            logger.warning("No workers with role(s) %s for %r", sorted(roles), task)
            return

        try:
            payload = pickle.dumps(task, protocol=pickle.DEFAULT_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Task {task!r} cannot be sent to workers: {e}") from e

        logger.debug("Dispatching %r to %d worker(s)", task, len(targets))
        with ThreadPoolExecutor(max_workers=len(targets)) as executor:
            outcomes = list(executor.map(lambda worker: worker.run(payload), targets))

        failures = [
            WorkerFailure(worker_id=worker.worker_id, role=worker.role, host=worker.host, details=details)
            for worker, details in zip(targets, outcomes)
            if details is not None
        ]
        if failures:
            raise TaskFailedError(task, failures)

    def _release(self):
        _stop_workers(self.workers, self.stop_timeout)


class ProcessWorkerLauncher(WorkerLauncher):
    """
    Launches one worker process per worker.

    Args:
        logs_dir: Local directory for worker log files
        start_timeout: Seconds to wait for all workers to report ready
        stop_timeout: Seconds to wait for a worker to exit before killing it
    """

    def __init__(
        self,
        logs_dir: Union[str, Path] = 'logs',
        start_timeout: float = 60.0,
        stop_timeout: float = 30.0,
    ):
        self.logs_dir = Path(logs_dir)
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout

    def launch(self, infra: Infrastructure, roles: Mapping[str, int]) -> ProcessWorkerSet:
        assignments = assign_workers(infra.nodes, roles)
        if not assignments:
            raise LaunchError("No workers to launch")
        hosts = roles_to_hosts(assignments)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        argv = infra.python_command() + ['-m', WORKER_MODULE]

        workers: List[RemoteWorker] = []
        executor = None
        try:
            for assignment in assignments:
                workers.append(self._start(infra, assignment, argv))

            # Handshakes block on the worker pipes; killing the processes on
            # failure unblocks them before the executor is shut down.
            executor = ThreadPoolExecutor(max_workers=len(workers))
            futures = [
                executor.submit(
                    worker.handshake,
                    WorkerInfo(
                        worker_id=worker.worker_id,
                        role=worker.role,
                        host=worker.host,
                        roles_to_hosts=hosts,
                    ),
                )
                for worker in workers
            ]
            wait(futures, timeout=self.start_timeout)

            errors = []
            for worker, future in zip(workers, futures):
                if not future.done():
                    errors.append(f"{worker} not ready after {self.start_timeout}s")
                elif future.exception() is not None:
                    errors.append(str(future.exception()))
            if errors:
                raise LaunchError("Failed to start workers: " + "; ".join(errors))
        except BaseException:
            _stop_workers(workers, self.stop_timeout)
            raise
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        logger.info("Launched %d worker(s): %s", len(workers),
                    ", ".join(f"{role}={count}" for role, count in roles.items()))
        return ProcessWorkerSet(workers, stop_timeout=self.stop_timeout)

    def _start(self, infra: Infrastructure, assignment: WorkerAssignment, argv: List[str]) -> RemoteWorker:
        log_path = self.logs_dir / f"worker-{assignment.worker_id}-{assignment.role}.log"
        log_file = open(log_path, 'wb')
        try:
            process = infra.spawn(
                assignment.node,
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=log_file,
            )
        except OSError as e:
            log_file.close()
            raise LaunchError(
                f"Could not start worker {assignment.worker_id} on {assignment.node.name}: {e}"
            ) from e
        return RemoteWorker(assignment, process, log_file)


def _stop_workers(workers: List[RemoteWorker], timeout: float) -> None:
    if not workers:
        return
    with ThreadPoolExecutor(max_workers=len(workers)) as executor:
        list(executor.map(lambda worker: worker.stop(timeout), workers))
