"""
Loading test definitions by reference.

A reference is either
  - 'package.module:Name' where Name is a PerformanceTest subclass (created
    with no arguments) or instance, or
  - the path of a YAML test definition:

    name: echo-test
    roles:
      server: 1
      client: 2
    setup:
      - task: perftest.tasks:CommandTask
        args: {command: "echo starting"}
        roles: [server]
    workload:
      - task: perftest.tasks:CommandBenchmarkTask
        args: {command: "true", name: echo, duration: 10}
        roles: [client]
    teardown: []
"""

import importlib
import inspect
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .config import PHASES, PerformanceTest, TestConfig
from .errors import ConfigurationError

YAML_SUFFIXES = ('.yaml', '.yml')


def import_object(reference: str) -> Any:
    """Import 'package.module:attribute' (attribute may be dotted)."""
    module_name, sep, attribute = reference.partition(':')
    if not sep or not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:name', got '{reference}'")

    try:
        obj = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module '{module_name}': {e}") from e

    for part in attribute.split('.'):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise ConfigurationError(f"'{module_name}' has no attribute '{attribute}'") from e
    return obj


def load_test(reference: Union[str, Path]) -> PerformanceTest:
    """
    Resolve a test reference to a PerformanceTest instance.

    Raises:
        ConfigurationError: If the reference cannot be resolved
    """
    reference = str(reference)
    if reference.endswith(YAML_SUFFIXES):
        return YamlPerformanceTest.from_yaml(reference)

    obj = import_object(reference)
    if inspect.isclass(obj) and issubclass(obj, PerformanceTest):
        return obj()
    if isinstance(obj, PerformanceTest):
        return obj
    raise ConfigurationError(f"'{reference}' is not a PerformanceTest")


class YamlPerformanceTest(PerformanceTest):
    """A PerformanceTest described by a YAML document."""

    def __init__(self, data: Dict[str, Any], source: str = '<yaml>'):
        self._data = data
        self.source = source
        self._validate()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'YamlPerformanceTest':
        """Load a test definition from YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Test definition not found: {path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        return cls(data, source=str(path))

    def _validate(self):
        if not isinstance(self._data, dict):
            raise ConfigurationError(f"{self.source}: test definition must be a mapping")
        if not isinstance(self._data.get('roles'), dict):
            raise ConfigurationError(f"{self.source}: missing required 'roles' mapping")
        for phase in PHASES:
            steps = self._data.get(phase) or []
            if not isinstance(steps, list):
                raise ConfigurationError(f"{self.source}: '{phase}' must be a list of steps")
            for position, step in enumerate(steps):
                if not isinstance(step, dict) or 'task' not in step:
                    raise ConfigurationError(
                        f"{self.source}: {phase} step {position} needs a 'task' reference"
                    )

    @property
    def name(self) -> str:
        return self._data.get('name') or Path(self.source).stem

    def configure(self, config: TestConfig) -> None:
        for role, count in self._data['roles'].items():
            config.role(str(role), count)

        adders = {'setup': config.setup, 'workload': config.workload, 'teardown': config.teardown}
        for phase in PHASES:
            for step in self._data.get(phase) or []:
                adders[phase](_build_task(step), *_step_roles(step))


def _build_task(step: Dict[str, Any]) -> Any:
    factory = import_object(step['task'])
    args = step.get('args') or {}
    if not isinstance(args, dict):
        raise ConfigurationError(f"'args' of {step['task']} must be a mapping")
    try:
        return factory(**args)
    except TypeError as e:
        raise ConfigurationError(f"Cannot create {step['task']} with {args}: {e}") from e


def _step_roles(step: Dict[str, Any]) -> List[str]:
    roles = step.get('roles') or []
    if isinstance(roles, str):
        roles = [roles]
    return [str(role) for role in roles]
