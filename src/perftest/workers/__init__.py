"""Worker processes: launching, role-scoped dispatch and the worker side."""

from .base import WorkerAssignment, WorkerLauncher, WorkerSet, assign_workers, roles_to_hosts
from .context import WorkerContext, WorkerInfo
from .process import ProcessWorkerLauncher, ProcessWorkerSet

__all__ = [
    'WorkerAssignment',
    'WorkerLauncher',
    'WorkerSet',
    'assign_workers',
    'roles_to_hosts',
    'WorkerContext',
    'WorkerInfo',
    'ProcessWorkerLauncher',
    'ProcessWorkerSet',
]
