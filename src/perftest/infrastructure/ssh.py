"""
SSH infrastructure: nodes are hosts from a fixed list, reached with ssh.

Each run gets its own directory under `remote_dir` on every host:
    {remote_dir}/{run_id}/node-{index}/output

Worker processes are started through `ssh host 'cd work_dir && exec ...'`
and artifacts are pulled back with rsync over the same ssh options.
"""

import logging
import shlex
import subprocess
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .base import InfraManager, Infrastructure, Node
from ..errors import ArtifactRetrievalError, ProvisioningError

logger = logging.getLogger(__name__)

DEFAULT_SSH_OPTIONS = [
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=accept-new",
    "-o",
    "ConnectTimeout=30",
    "-o",
    "ServerAliveInterval=60",
    "-o",
    "ServerAliveCountMax=3",
]

COMMAND_TIMEOUT = 60  # seconds, for mkdir/rm/echo style commands
COPY_TIMEOUT = 600  # seconds, per node


class SshClient:
    """Builds and runs ssh/rsync commands against a set of hosts."""

    def __init__(
        self,
        user: Optional[str] = None,
        key: Optional[Union[str, Path]] = None,
        ssh_options: Optional[Sequence[str]] = None,
    ):
        self.user = user
        self.key = Path(key).expanduser() if key else None
        self.ssh_options = list(DEFAULT_SSH_OPTIONS if ssh_options is None else ssh_options)

    def target(self, host: str) -> str:
        return f"{self.user}@{host}" if self.user else host

    def _ssh_args(self) -> List[str]:
        args = list(self.ssh_options)
        if self.key:
            args.extend(["-i", str(self.key)])
        return args

    def ssh_cmd(self, host: str, command: str) -> List[str]:
        """Build SSH command list."""
        return ["ssh"] + self._ssh_args() + [self.target(host), command]

    def rsync_cmd(self, host: str, remote_path: str, local_path: Path) -> List[str]:
        """Build rsync command list copying a remote directory's contents."""
        shell = " ".join(["ssh"] + [shlex.quote(a) for a in self._ssh_args()])
        return [
            "rsync",
            "-az",
            "-e",
            shell,
            f"{self.target(host)}:{remote_path.rstrip('/')}/",
            str(local_path) + "/",
        ]

    def run(self, host: str, command: str, timeout: int = COMMAND_TIMEOUT) -> subprocess.CompletedProcess:
        """Run command on host via SSH."""
        return subprocess.run(
            self.ssh_cmd(host, command), capture_output=True, text=True, timeout=timeout
        )

    def is_reachable(self, host: str, timeout: int = 15) -> bool:
        try:
            result = self.run(host, "echo OK", timeout=timeout)
        except (subprocess.SubprocessError, OSError):
            return False
        return "OK" in result.stdout


class SshInfrastructure(Infrastructure):
    """Nodes on remote hosts sharing one run directory name."""

    def __init__(self, client: SshClient, run_dir: str, nodes: List[Node], python: str = "python3"):
        super().__init__(nodes)
        self.client = client
        self.run_dir = run_dir
        self.python = python

    def spawn(self, node, argv, stdin=None, stdout=None, stderr=None) -> subprocess.Popen:
        remote = f"cd {shlex.quote(node.work_dir)} && exec {' '.join(shlex.quote(a) for a in argv)}"
        return subprocess.Popen(
            self.client.ssh_cmd(node.host, remote),
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
        )

    def python_command(self) -> List[str]:
        return shlex.split(self.python)

    def copy_from_node(self, node, remote_path, destination) -> Path:
        if not remote_path.startswith('/'):
            remote_path = f"{node.work_dir.rstrip('/')}/{remote_path}"
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)

        cmd = self.client.rsync_cmd(node.host, remote_path, destination)
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=COPY_TIMEOUT)
        except subprocess.CalledProcessError as e:
            raise ArtifactRetrievalError(
                f"rsync from {node.name} ({node.host}:{remote_path}) failed "
                f"with exit {e.returncode}: {(e.stderr or '').strip()[:200]}"
            ) from e
        except (subprocess.TimeoutExpired, OSError) as e:
            raise ArtifactRetrievalError(
                f"rsync from {node.name} ({node.host}:{remote_path}) failed: {e}"
            ) from e

        return destination

    def _release(self):
        hosts = sorted({node.host for node in self.nodes})
        logger.info("Removing %s on %d host(s)", self.run_dir, len(hosts))
        failures = _remove_on_hosts(self.client, hosts, self.run_dir)
        if failures:
            raise ProvisioningError(
                "Failed to release hosts: "
                + "; ".join(f"{host}: {error}" for host, error in failures.items())
            )


class SshInfraManager(InfraManager):
    """
    Provisions clusters from a fixed list of SSH hosts.

    A cluster of N nodes uses the first N hosts. Hosts are prepared in
    parallel; if any host fails, the hosts already prepared are cleaned and
    ProvisioningError is raised.

    Args:
        hosts: Host names, in the order nodes are allocated
        user: SSH user (default: ssh's own default)
        key: Private key file
        ssh_options: Extra ssh arguments (default: DEFAULT_SSH_OPTIONS)
        remote_dir: Parent directory for run directories on each host
        python: Interpreter command on the hosts
    """

    def __init__(
        self,
        hosts: Sequence[str],
        user: Optional[str] = None,
        key: Optional[Union[str, Path]] = None,
        ssh_options: Optional[Sequence[str]] = None,
        remote_dir: str = "/tmp/perftest",
        python: str = "python3",
    ):
        self.hosts = list(hosts)
        self.client = SshClient(user=user, key=key, ssh_options=ssh_options)
        self.remote_dir = remote_dir.rstrip('/')
        self.python = python

    def check_connectivity(self) -> Dict[str, bool]:
        """Return reachability of every configured host (queried in parallel)."""
        if not self.hosts:
            return {}
        with ThreadPoolExecutor(max_workers=min(32, len(self.hosts))) as executor:
            reachable = list(executor.map(self.client.is_reachable, self.hosts))
        return dict(zip(self.hosts, reachable))

    def create(self, node_count: int) -> SshInfrastructure:
        if node_count < 1:
            raise ProvisioningError(f"Need at least one node, got {node_count}")
        if node_count > len(self.hosts):
            raise ProvisioningError(
                f"Too few hosts for cluster. Need {node_count}, have {len(self.hosts)}"
            )

        run_id = f"run-{datetime.now().strftime('%Y%m%d_%H%M%S')}-{uuid.uuid4().hex[:8]}"
        run_dir = f"{self.remote_dir}/{run_id}"
        nodes = [
            Node(name=f"{host}-{index}", host=host, work_dir=f"{run_dir}/node-{index}")
            for index, host in enumerate(self.hosts[:node_count])
        ]

        logger.info("Preparing %d host(s) under %s", node_count, run_dir)
        with ThreadPoolExecutor(max_workers=min(32, node_count)) as executor:
            errors = list(executor.map(self._prepare_node, nodes))

        failed = {node.host: error for node, error in zip(nodes, errors) if error}
        if failed:
            prepared = sorted({node.host for node, error in zip(nodes, errors) if not error})
            cleanup_failures = _remove_on_hosts(self.client, prepared, run_dir)
            for host, error in cleanup_failures.items():
                logger.warning("Could not clean %s on %s: %s", run_dir, host, error)
            raise ProvisioningError(
                "Failed to prepare hosts: "
                + "; ".join(f"{host}: {error}" for host, error in failed.items())
            )

        return SshInfrastructure(self.client, run_dir, nodes, python=self.python)

    def _prepare_node(self, node: Node) -> Optional[str]:
        """Create the node's output directory. Returns an error message or None."""
        try:
            result = self.client.run(node.host, f"mkdir -p {shlex.quote(node.output_path)}")
        except (subprocess.SubprocessError, OSError) as e:
            return str(e)
        if result.returncode != 0:
            return f"exit {result.returncode}: {result.stderr.strip()[:200]}"
        return None


def _remove_on_hosts(client: SshClient, hosts: Sequence[str], path: str) -> Dict[str, str]:
    """rm -rf a path on several hosts in parallel. Returns host -> error message."""
    if not hosts:
        return {}

    def remove(host):
        try:
            result = client.run(host, f"rm -rf {shlex.quote(path)}")
        except (subprocess.SubprocessError, OSError) as e:
            return str(e)
        if result.returncode != 0:
            return f"exit {result.returncode}: {result.stderr.strip()[:200]}"
        return None

    with ThreadPoolExecutor(max_workers=min(32, len(hosts))) as executor:
        errors = list(executor.map(remove, hosts))
    return {host: error for host, error in zip(hosts, errors) if error}
