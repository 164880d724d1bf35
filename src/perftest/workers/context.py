"""What a worker knows about itself and the run it belongs to."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from ..infrastructure.base import NODE_OUTPUT_DIR


@dataclass(frozen=True)
class WorkerInfo:
    """Identity of one worker, sent to the worker process at startup."""
    worker_id: int
    role: str
    host: str
    roles_to_hosts: Dict[str, List[str]] = field(default_factory=dict)


class WorkerContext:
    """
    Passed to every task a worker runs.

    Attributes set by one task are visible to later tasks on the same
    worker, so a setup task can leave a client or server handle behind for
    the workload and teardown tasks.
    """

    def __init__(self, info: WorkerInfo, output_dir: Union[str, Path] = NODE_OUTPUT_DIR):
        self.info = info
        # Fixed at creation: a task calling os.chdir does not move it.
        self._output_dir = Path(output_dir).absolute()
        self._attributes: Dict[str, Any] = {}

    @property
    def worker_id(self) -> int:
        return self.info.worker_id

    @property
    def role(self) -> str:
        return self.info.role

    @property
    def host(self) -> str:
        return self.info.host

    @property
    def output_dir(self) -> Path:
        """Directory copied back to the controller after a successful run."""
        self._output_dir.mkdir(parents=True, exist_ok=True)
        return self._output_dir

    def hosts_for_role(self, role: str) -> List[str]:
        """Hosts running workers of `role`, in worker id order."""
        return list(self.info.roles_to_hosts.get(role, []))

    def get_attribute(self, key: str, default: Any = None) -> Any:
        return self._attributes.get(key, default)

    def set_attribute(self, key: str, value: Any) -> None:
        self._attributes[key] = value
