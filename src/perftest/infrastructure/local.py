"""
Local infrastructure: every node is a private directory on this machine.

Useful for developing tests and for running small benchmarks on one host.
Processes started on a node run with the node directory as their working
directory and inherit this interpreter's import path.
"""

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from .base import InfraManager, Infrastructure, Node, NODE_OUTPUT_DIR
from ..errors import ArtifactRetrievalError, ProvisioningError

logger = logging.getLogger(__name__)


class LocalInfrastructure(Infrastructure):
    """Nodes backed by subdirectories of one temporary root directory."""

    def __init__(self, root: Path, nodes: List[Node]):
        super().__init__(nodes)
        self.root = Path(root)

    def spawn(self, node, argv, stdin=None, stdout=None, stderr=None) -> subprocess.Popen:
        env = os.environ.copy()
        env['PYTHONPATH'] = os.pathsep.join(p for p in sys.path if p)
        return subprocess.Popen(
            argv,
            cwd=node.work_dir,
            env=env,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
        )

    def python_command(self) -> List[str]:
        return [sys.executable]

    def copy_from_node(self, node, remote_path, destination) -> Path:
        source = Path(remote_path)
        if not source.is_absolute():
            source = Path(node.work_dir) / source
        destination = Path(destination)

        try:
            if source.exists():
                shutil.copytree(source, destination, dirs_exist_ok=True)
            else:
                destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArtifactRetrievalError(
                f"Failed to copy {source} from {node.name} to {destination}: {e}"
            ) from e

        return destination

    def _release(self):
        logger.info("Removing local cluster at %s", self.root)
        shutil.rmtree(self.root, ignore_errors=True)


class LocalInfraManager(InfraManager):
    """
    Provisions clusters of local directories.

    Args:
        base_dir: Parent directory for cluster roots (default: system temp dir)
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def create(self, node_count: int) -> LocalInfrastructure:
        if node_count < 1:
            raise ProvisioningError(f"Need at least one node, got {node_count}")

        try:
            if self.base_dir is not None:
                self.base_dir.mkdir(parents=True, exist_ok=True)
            root = Path(tempfile.mkdtemp(prefix='perftest-', dir=self.base_dir))
        except OSError as e:
            raise ProvisioningError(f"Failed to create local cluster root: {e}") from e

        nodes = []
        try:
            for index in range(node_count):
                work_dir = root / f"node-{index}"
                (work_dir / NODE_OUTPUT_DIR).mkdir(parents=True)
                nodes.append(Node(name=f"local-{index}", host='localhost', work_dir=str(work_dir)))
        except OSError as e:
            shutil.rmtree(root, ignore_errors=True)
            raise ProvisioningError(f"Failed to create local node directories: {e}") from e

        logger.info("Created local cluster of %d node(s) at %s", node_count, root)
        return LocalInfrastructure(root, nodes)
