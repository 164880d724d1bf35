"""
Summary of a completed run, written next to the node artifacts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

SUMMARY_FILE = 'run_summary.yaml'


@dataclass
class PhaseTiming:
    """How long one phase took."""
    name: str
    steps: int
    duration_seconds: float = 0.0


@dataclass
class RunSummary:
    """Outcome of a successful test run."""
    test_name: str
    node_count: int
    roles: Dict[str, int]
    output_dir: Path
    phases: List[PhaseTiming] = field(default_factory=list)
    node_dirs: List[Path] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'test_name': self.test_name,
            'node_count': self.node_count,
            'roles': dict(self.roles),
            'output_dir': str(self.output_dir),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'phases': [
                {'name': p.name, 'steps': p.steps, 'duration_seconds': round(p.duration_seconds, 3)}
                for p in self.phases
            ],
            'node_dirs': [str(path) for path in self.node_dirs],
        }

    def write(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the summary as YAML (default: <output_dir>/run_summary.yaml)."""
        path = Path(path) if path is not None else Path(self.output_dir) / SUMMARY_FILE
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path


def load_summary(output_dir: Union[str, Path]) -> Dict[str, Any]:
    """Read the run_summary.yaml of an output directory."""
    path = Path(output_dir) / SUMMARY_FILE
    if not path.exists():
        raise FileNotFoundError(f"Run summary not found: {path}")
    with open(path, 'r') as f:
        return yaml.safe_load(f)
