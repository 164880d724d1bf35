"""
Abstract worker sets and launchers, plus worker-to-node placement.

Placement: workers are numbered in role declaration order (all workers of
the first role, then the second, ...) and worker i runs on node i. A run
therefore needs at least as many nodes as workers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from ..errors import LaunchError
from ..infrastructure.base import Infrastructure, Node


@dataclass(frozen=True)
class WorkerAssignment:
    """A worker id and role bound to a node."""
    worker_id: int
    role: str
    node: Node


def assign_workers(nodes: Sequence[Node], roles: Mapping[str, int]) -> List[WorkerAssignment]:
    """
    Place one worker per node, in role declaration order.

    Raises:
        LaunchError: If there are fewer nodes than workers
    """
    wanted = sum(roles.values())
    if wanted > len(nodes):
        raise LaunchError(f"Too few nodes for test. Need {wanted}, have {len(nodes)}")

    assignments = []
    for role, count in roles.items():
        for _ in range(count):
            worker_id = len(assignments)
            assignments.append(WorkerAssignment(worker_id=worker_id, role=role, node=nodes[worker_id]))
    return assignments


def roles_to_hosts(assignments: Iterable[WorkerAssignment]) -> Dict[str, List[str]]:
    """Map each role to the hosts of its workers, in worker id order."""
    hosts: Dict[str, List[str]] = {}
    for assignment in assignments:
        hosts.setdefault(assignment.role, []).append(assignment.node.host)
    return hosts


class WorkerSet(ABC):
    """
    Handle over launched, role-tagged workers.

    execute() is a barrier: it returns only after every targeted worker has
    finished the task. close() stops all workers and may be called more
    than once.
    """

    def __init__(self, assignments: Sequence[WorkerAssignment]):
        self._assignments = list(assignments)
        self._closed = False

    @property
    def assignments(self) -> List[WorkerAssignment]:
        return list(self._assignments)

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def execute(self, task: Any, roles: Iterable[str]) -> None:
        """
        Run `task` on every worker whose role is in `roles` and wait for all.

        Raises:
            TaskFailedError: If the task failed on any targeted worker
        """
        pass

    @abstractmethod
    def _release(self) -> None:
        """Stop all workers. Called at most once."""
        pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class WorkerLauncher(ABC):
    """Starts workers on an infrastructure."""

    @abstractmethod
    def launch(self, infra: Infrastructure, roles: Mapping[str, int]) -> WorkerSet:
        """
        Start `roles[name]` workers for every role.

        Raises:
            LaunchError: If any worker fails to start. Workers already
                started are stopped first.
        """
        pass
