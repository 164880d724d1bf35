"""
Declarative test configuration.

A performance test is a PerformanceTest subclass whose configure() method
fills in a TestConfig: how many workers of each role to launch and which
tasks to run against which roles in the setup, workload and teardown
phases.

Example:
    class PutBenchmark(PerformanceTest):
        def configure(self, config):
            config.role('server', 1)
            config.role('client', 2)
            config.setup(StartServer(), 'server')
            config.workload(PutTask(duration=60), 'client')
            config.teardown(StopServer(), 'server')
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Tuple

from .errors import ConfigurationError

PHASES = ('setup', 'workload', 'teardown')


class PerformanceTest(ABC):
    """
    Abstract base class for all performance tests.

    Subclasses must implement configure(). The harness calls it exactly once
    per run with a fresh, empty TestConfig.
    """

    @abstractmethod
    def configure(self, config: 'TestConfig') -> None:
        """
        Populate the test configuration.

        Args:
            config: Empty configuration to fill with roles and phase steps
        """
        pass

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class TestStep:
    """A task together with the roles whose workers run it."""
    __test__ = False

    task: Any
    roles: FrozenSet[str]


class TestConfig:
    """
    Roles and phase steps of one test run.

    The config is written by PerformanceTest.configure() and then frozen by
    the runner; any mutation after freeze() raises ConfigurationError.
    """

    # Keep pytest from collecting this class from test modules.
    __test__ = False

    def __init__(self):
        self._roles: Dict[str, int] = {}
        self._steps: Dict[str, List[TestStep]] = {phase: [] for phase in PHASES}
        self._frozen = False

    # --- Writing ---

    def role(self, name: str, count: int) -> 'TestConfig':
        """Declare `count` workers tagged with role `name`."""
        self._check_writable()
        if name in self._roles:
            raise ConfigurationError(f"Role '{name}' declared twice")
        self._roles[name] = count
        return self

    def setup(self, task: Any, *roles: str) -> 'TestConfig':
        """Append a step to the setup phase."""
        return self._add_step('setup', task, roles)

    def workload(self, task: Any, *roles: str) -> 'TestConfig':
        """Append a step to the workload phase."""
        return self._add_step('workload', task, roles)

    def teardown(self, task: Any, *roles: str) -> 'TestConfig':
        """Append a step to the teardown phase."""
        return self._add_step('teardown', task, roles)

    def _add_step(self, phase: str, task: Any, roles: Tuple[str, ...]) -> 'TestConfig':
        self._check_writable()
        self._steps[phase].append(TestStep(task=task, roles=frozenset(roles)))
        return self

    def _check_writable(self):
        if self._frozen:
            raise ConfigurationError("Test configuration is frozen once the run has started")

    # --- Reading ---

    @property
    def roles(self) -> Dict[str, int]:
        return dict(self._roles)

    @property
    def setup_steps(self) -> List[TestStep]:
        return list(self._steps['setup'])

    @property
    def workload_steps(self) -> List[TestStep]:
        return list(self._steps['workload'])

    @property
    def teardown_steps(self) -> List[TestStep]:
        return list(self._steps['teardown'])

    @property
    def total_workers(self) -> int:
        return sum(self._roles.values())

    def phases(self) -> List[Tuple[str, List[TestStep]]]:
        """Phases with their steps, always in setup, workload, teardown order."""
        return [(phase, list(self._steps[phase])) for phase in PHASES]

    # --- Lifecycle ---

    def validate(self) -> None:
        """
        Check the configuration before any worker is launched.

        Raises:
            ConfigurationError: No roles, a non-positive or non-integer role
                count, a step with no task or no roles, or a step targeting
                a role that was never declared.
        """
        if not self._roles:
            raise ConfigurationError("Test declares no roles")

        for name, count in self._roles.items():
            if not isinstance(name, str) or not name:
                raise ConfigurationError(f"Invalid role name: {name!r}")
            if isinstance(count, bool) or not isinstance(count, int) or count < 1:
                raise ConfigurationError(
                    f"Role '{name}' needs a positive integer worker count, got {count!r}"
                )

        for phase, steps in self.phases():
            for position, step in enumerate(steps):
                where = f"{phase} step {position}"
                if step.task is None:
                    raise ConfigurationError(f"{where} has no task")
                if not step.roles:
                    raise ConfigurationError(f"{where} targets no roles")
                unknown = sorted(step.roles - set(self._roles))
                if unknown:
                    raise ConfigurationError(
                        f"{where} targets undeclared role(s): {', '.join(unknown)}"
                    )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen
