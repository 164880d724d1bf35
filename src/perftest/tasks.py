"""
Tasks that workers run.

A task is any picklable object with a run(context) method; subclassing Task
is the usual way to write one. Tasks are pickled on the controller and run
inside the worker process on the node, so they must be defined at module
level in a module importable on the node.

Built-in tasks:
    CommandTask           - run a shell command, output logged to the node
    SleepTask             - wait a fixed time
    BenchmarkTask         - base class for timed operation loops
    CommandBenchmarkTask  - benchmark a shell command
"""

import os
import subprocess
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Union

import numpy as np

from .workers.context import WorkerContext

LATENCY_SUFFIX = '.latencies.csv'
LATENCY_COLUMNS = ('timestamp_ns', 'latency_ns')


class Task(ABC):
    """Abstract base class for all tasks."""

    @abstractmethod
    def run(self, context: WorkerContext) -> None:
        """
        Execute the task on one worker.

        Args:
            context: The worker's identity, output directory and attributes

        Raises:
            Exception: Any exception fails the step this task belongs to
        """
        pass

    def __repr__(self):
        return f"{type(self).__name__}()"


def worker_environment(context: WorkerContext) -> dict:
    """Environment for commands run on behalf of a worker."""
    env = os.environ.copy()
    env['PERFTEST_ROLE'] = context.role
    env['PERFTEST_WORKER_ID'] = str(context.worker_id)
    env['PERFTEST_OUTPUT_DIR'] = str(context.output_dir.resolve())
    for role, hosts in context.info.roles_to_hosts.items():
        env[f"PERFTEST_HOSTS_{role.upper().replace('-', '_')}"] = ','.join(hosts)
    return env


class CommandTask(Task):
    """
    Run a command on every targeted worker.

    The command sees PERFTEST_ROLE, PERFTEST_WORKER_ID, PERFTEST_OUTPUT_DIR
    and PERFTEST_HOSTS_<ROLE> in its environment. Its output goes to
    <output_dir>/<name>.log. A non-zero exit status fails the task.

    Args:
        command: Shell command string, or an argument list run without a shell
        name: Log file name (default: 'command')
        timeout: Seconds before the command is killed and the task fails
    """

    def __init__(self, command: Union[str, Sequence[str]], name: str = 'command',
                 timeout: Optional[float] = None):
        self.command = command if isinstance(command, str) else list(command)
        self.name = name
        self.timeout = timeout

    def run(self, context):
        log_path = context.output_dir / f"{self.name}.log"
        with open(log_path, 'ab') as log:
            subprocess.run(
                self.command,
                shell=isinstance(self.command, str),
                env=worker_environment(context),
                stdout=log,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=True,
            )

    def __repr__(self):
        return f"CommandTask({self.command!r})"


class SleepTask(Task):
    """Wait for a number of seconds."""

    def __init__(self, seconds: float):
        self.seconds = seconds

    def run(self, context):
        time.sleep(self.seconds)

    def __repr__(self):
        return f"SleepTask({self.seconds})"


class BenchmarkTask(Task):
    """
    Run operation() in a loop and record the latency of every call.

    The loop first runs for `warmup` seconds without recording, then records
    until `duration` seconds have passed or `max_operations` calls were
    made. Latencies are written to <output_dir>/<name>.latencies.csv with
    columns timestamp_ns (offset from the start of recording) and
    latency_ns, which `perftest analyze` aggregates across nodes.

    Subclasses implement operation().
    """

    def __init__(self, name: str, duration: float = 60.0, warmup: float = 0.0,
                 max_operations: Optional[int] = None):
        self.name = name
        self.duration = duration
        self.warmup = warmup
        self.max_operations = max_operations

    @abstractmethod
    def operation(self, context: WorkerContext) -> None:
        """One benchmarked operation."""
        pass

    def prepare(self, context: WorkerContext) -> None:
        """Called once before the warmup; override to set up clients."""
        pass

    def run(self, context):
        self.prepare(context)

        warmup_end = time.perf_counter() + self.warmup
        while time.perf_counter() < warmup_end:
            self.operation(context)

        timestamps: List[int] = []
        latencies: List[int] = []
        start = time.perf_counter_ns()
        end = start + int(self.duration * 1e9)
        while True:
            if self.max_operations is not None and len(latencies) >= self.max_operations:
                break
            before = time.perf_counter_ns()
            if before >= end:
                break
            self.operation(context)
            after = time.perf_counter_ns()
            timestamps.append(before - start)
            latencies.append(after - before)

        self.save(context, timestamps, latencies)

    def save(self, context: WorkerContext, timestamps: List[int], latencies: List[int]):
        data = np.column_stack([
            np.asarray(timestamps, dtype=np.int64),
            np.asarray(latencies, dtype=np.int64),
        ]) if latencies else np.empty((0, 2), dtype=np.int64)
        path = context.output_dir / f"{self.name}{LATENCY_SUFFIX}"
        np.savetxt(path, data, fmt='%d', delimiter=',', header=','.join(LATENCY_COLUMNS), comments='')
        return path

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, duration={self.duration})"


class CommandBenchmarkTask(BenchmarkTask):
    """Benchmark a command: every operation is one run of it."""

    def __init__(self, command: Union[str, Sequence[str]], name: str = 'command',
                 duration: float = 60.0, warmup: float = 0.0,
                 max_operations: Optional[int] = None):
        super().__init__(name=name, duration=duration, warmup=warmup, max_operations=max_operations)
        self.command = command if isinstance(command, str) else list(command)
        self._env = None

    def prepare(self, context):
        self._env = worker_environment(context)

    def operation(self, context):
        subprocess.run(
            self.command,
            shell=isinstance(self.command, str),
            env=self._env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
