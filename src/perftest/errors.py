"""
Error classes for perftest runs.

Every failure of a run belongs to one of these classes:
- ConfigurationError: the test definition or harness settings are invalid
- ProvisioningError: the cluster could not be created
- LaunchError: the workers could not be started
- TaskFailedError: a task failed on at least one targeted worker
- ArtifactRetrievalError: copying a node's output failed

None of them are retried. The runner releases whatever it acquired and
re-raises. Failures raised while releasing resources during that cleanup
are attached to the original error (see record_suppressed) instead of
replacing it.
"""

from dataclasses import dataclass
from typing import List, Optional


class HarnessError(Exception):
    """Base exception for perftest."""
    pass


class ConfigurationError(HarnessError):
    """Invalid test configuration, test reference or harness settings."""
    pass


class ProvisioningError(HarnessError):
    """The requested cluster could not be created."""
    pass


class LaunchError(HarnessError):
    """The worker processes could not be started."""
    pass


class ArtifactRetrievalError(HarnessError):
    """Copying a node's output directory failed."""
    pass


@dataclass
class WorkerFailure:
    """A task failure on one worker."""
    worker_id: int
    role: str
    host: str
    details: str


class TaskFailedError(HarnessError):
    """
    A dispatched task failed on one or more of its targeted workers.

    All targeted workers are allowed to finish before this is raised, so
    `failures` holds every failing worker, not only the first.
    """

    def __init__(self, task, failures: List[WorkerFailure]):
        self.task = task
        self.failures = list(failures)
        summary = ", ".join(
            f"worker {f.worker_id} ({f.role}@{f.host})" for f in self.failures
        )
        super().__init__(
            f"Task {task!r} failed on {len(self.failures)} worker(s): {summary}"
        )

    def details(self) -> str:
        """Full failure report including each worker's traceback."""
        parts = [str(self)]
        for failure in self.failures:
            parts.append(
                f"--- worker {failure.worker_id} ({failure.role}@{failure.host}) ---\n"
                f"{failure.details.rstrip()}"
            )
        return "\n".join(parts)


def record_suppressed(error: BaseException, cleanup_error: BaseException) -> None:
    """
    Attach a cleanup failure to the error that triggered the cleanup.

    The cleanup errors are kept in order on `error.suppressed`.
    """
    suppressed: Optional[list] = getattr(error, 'suppressed', None)
    if suppressed is None:
        suppressed = []
        error.suppressed = suppressed
    suppressed.append(cleanup_error)
