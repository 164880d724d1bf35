"""
Harness settings.

HarnessSettings loads a YAML file describing where tests run, as opposed to
what they run (that is the PerformanceTest's job):

    infrastructure:
      type: ssh                 # 'local' (default) or 'ssh'
      hosts: [perf-01, perf-02, perf-03]
      user: bench
      key: ~/.ssh/id_ed25519
      remote_dir: /tmp/perftest
      python: python3
    output:
      dir: output
      logs_dir: logs
    workers:
      start_timeout: 60
      stop_timeout: 30
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .runner import TestRunner
from ..errors import ConfigurationError
from ..infrastructure.base import InfraManager
from ..infrastructure.local import LocalInfraManager
from ..infrastructure.ssh import SshInfraManager
from ..workers.process import ProcessWorkerLauncher

INFRASTRUCTURE_TYPES = ('local', 'ssh')


class HarnessSettings:
    """
    Loads and validates harness settings.

    Example:
        settings = HarnessSettings.from_yaml('harness.yaml')
        runner = settings.build_runner()
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}
        self._validate()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'HarnessSettings':
        """Load settings from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Harness settings not found: {path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"Harness settings must be a mapping: {path}")
        return cls(data)

    def _validate(self):
        """Validate section types, the infrastructure type and worker timeouts."""
        for section in ('infrastructure', 'output', 'workers'):
            value = self._data.get(section, {})
            if not isinstance(value, dict):
                raise ConfigurationError(f"Settings section '{section}' must be a mapping")

        if self.infrastructure_type not in INFRASTRUCTURE_TYPES:
            raise ConfigurationError(
                f"Unknown infrastructure type '{self.infrastructure_type}', "
                f"expected one of: {', '.join(INFRASTRUCTURE_TYPES)}"
            )
        if self.infrastructure_type == 'ssh' and not self.hosts:
            raise ConfigurationError("SSH infrastructure needs at least one entry in 'hosts'")

        workers = self._data.get('workers', {})
        for key in ('start_timeout', 'stop_timeout'):
            if key not in workers:
                continue
            value = workers[key]
            try:
                seconds = float(value)
            except (TypeError, ValueError):
                seconds = None
            if isinstance(value, bool) or seconds is None or not seconds > 0:
                raise ConfigurationError(
                    f"workers.{key} must be a positive number of seconds, got {value!r}"
                )

    # --- Infrastructure ---

    @property
    def _infra(self) -> Dict[str, Any]:
        return self._data.get('infrastructure', {})

    @property
    def infrastructure_type(self) -> str:
        return self._infra.get('type', 'local')

    @property
    def hosts(self) -> List[str]:
        return [str(host) for host in self._infra.get('hosts', [])]

    @property
    def ssh_user(self) -> Optional[str]:
        return self._infra.get('user')

    @property
    def ssh_key(self) -> Optional[Path]:
        key = self._infra.get('key')
        return Path(key).expanduser() if key else None

    @property
    def ssh_options(self) -> Optional[List[str]]:
        options = self._infra.get('ssh_options')
        return [str(o) for o in options] if options is not None else None

    @property
    def remote_dir(self) -> str:
        return self._infra.get('remote_dir', '/tmp/perftest')

    @property
    def remote_python(self) -> str:
        return self._infra.get('python', 'python3')

    @property
    def local_base_dir(self) -> Optional[Path]:
        base_dir = self._infra.get('base_dir')
        return Path(base_dir) if base_dir else None

    # --- Output ---

    @property
    def output_dir(self) -> Path:
        return Path(self._data.get('output', {}).get('dir', 'output'))

    @property
    def logs_dir(self) -> Path:
        return Path(self._data.get('output', {}).get('logs_dir', 'logs'))

    # --- Workers ---

    @property
    def worker_start_timeout(self) -> float:
        return float(self._data.get('workers', {}).get('start_timeout', 60))

    @property
    def worker_stop_timeout(self) -> float:
        return float(self._data.get('workers', {}).get('stop_timeout', 30))

    # --- Factories ---

    def build_infra_manager(self) -> InfraManager:
        if self.infrastructure_type == 'ssh':
            return SshInfraManager(
                hosts=self.hosts,
                user=self.ssh_user,
                key=self.ssh_key,
                ssh_options=self.ssh_options,
                remote_dir=self.remote_dir,
                python=self.remote_python,
            )
        return LocalInfraManager(base_dir=self.local_base_dir)

    def build_worker_launcher(self) -> ProcessWorkerLauncher:
        return ProcessWorkerLauncher(
            logs_dir=self.logs_dir,
            start_timeout=self.worker_start_timeout,
            stop_timeout=self.worker_stop_timeout,
        )

    def build_runner(self, output_dir: Optional[Union[str, Path]] = None) -> TestRunner:
        """Runner wired from these settings; output_dir overrides output.dir."""
        return TestRunner(
            infra_manager=self.build_infra_manager(),
            worker_launcher=self.build_worker_launcher(),
            output_dir=output_dir if output_dir is not None else self.output_dir,
        )
