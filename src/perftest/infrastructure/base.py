"""
Abstract cluster infrastructure.

An InfraManager provisions an Infrastructure of exactly N nodes. The
Infrastructure knows how to start a process on one of its nodes and how to
copy a node's output back to the controller. Closing it releases the nodes;
close() may be called any number of times.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional, Sequence, Tuple, Union

# Directory, relative to a node's working directory, that workers write
# their results to and that is copied back after a successful run.
NODE_OUTPUT_DIR = 'output'


@dataclass(frozen=True)
class Node:
    """One provisioned machine of a cluster."""
    name: str
    host: str
    work_dir: str

    @property
    def output_path(self) -> str:
        return f"{self.work_dir.rstrip('/')}/{NODE_OUTPUT_DIR}"


class Infrastructure(ABC):
    """
    Handle over a set of provisioned nodes.

    Subclasses implement node process spawning, artifact copying and node
    release. Usable as a context manager.
    """

    def __init__(self, nodes: Sequence[Node]):
        self._nodes: Tuple[Node, ...] = tuple(nodes)
        self._closed = False

    @property
    def nodes(self) -> Tuple[Node, ...]:
        """Nodes in a stable order; index i here is node-i in the artifacts."""
        return self._nodes

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def spawn(
        self,
        node: Node,
        argv: List[str],
        stdin: Optional[Union[int, IO]] = None,
        stdout: Optional[Union[int, IO]] = None,
        stderr: Optional[Union[int, IO]] = None,
    ) -> subprocess.Popen:
        """
        Start a process on a node, with the node's working directory as cwd.

        Args:
            node: Node to run on
            argv: Command line of the process
            stdin, stdout, stderr: Passed through to subprocess.Popen

        Returns:
            The local Popen handle for the process (or the ssh client for it)
        """
        pass

    @abstractmethod
    def python_command(self) -> List[str]:
        """Interpreter command to start Python processes with on a node."""
        pass

    @abstractmethod
    def copy_from_node(self, node: Node, remote_path: str, destination: Union[str, Path]) -> Path:
        """
        Copy a directory from a node into a local directory.

        Args:
            node: Node to copy from
            remote_path: Directory path on the node, relative to its work_dir
                unless absolute
            destination: Local directory to copy the contents into

        Returns:
            The destination path

        Raises:
            ArtifactRetrievalError: If the copy fails
        """
        pass

    @abstractmethod
    def _release(self) -> None:
        """Release the nodes. Called at most once."""
        pass

    def close(self) -> None:
        """Release all nodes. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"{type(self).__name__}(nodes={len(self._nodes)})"


class InfraManager(ABC):
    """Provisions clusters."""

    @abstractmethod
    def create(self, node_count: int) -> Infrastructure:
        """
        Provision exactly `node_count` ready nodes.

        Raises:
            ProvisioningError: If the cluster cannot be created. Nothing is
                left provisioned in that case.
        """
        pass
