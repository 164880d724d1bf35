"""
perftest - Distributed performance-test harness.

This package provides tools for:
- Declaring tests as roles plus setup, workload and teardown steps
- Provisioning clusters of local or SSH nodes
- Launching role-tagged worker processes and dispatching tasks to them
- Collecting per-node results and analyzing benchmark latencies
"""

__version__ = "1.0.0"

from .config import PerformanceTest, TestConfig, TestStep
from .errors import (
    ArtifactRetrievalError,
    ConfigurationError,
    HarnessError,
    LaunchError,
    ProvisioningError,
    TaskFailedError,
)
from .run.runner import TestRunner
from .tasks import BenchmarkTask, CommandTask, Task

__all__ = [
    'PerformanceTest',
    'TestConfig',
    'TestStep',
    'ArtifactRetrievalError',
    'ConfigurationError',
    'HarnessError',
    'LaunchError',
    'ProvisioningError',
    'TaskFailedError',
    'TestRunner',
    'BenchmarkTask',
    'CommandTask',
    'Task',
]
