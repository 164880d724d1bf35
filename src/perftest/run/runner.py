"""
Test runner - the entry point for executing a PerformanceTest.

One run:
  1. Provisions a cluster of N nodes (InfraManager)
  2. Builds and validates the test's TestConfig
  3. Launches the role-tagged workers (WorkerLauncher)
  4. Runs the setup, workload and teardown phases, in that order
  5. Copies every node's output directory to <output_dir>/node-<index>
  6. Stops the workers, then releases the cluster

Step 6 happens on every exit path. Artifacts are only copied when all
three phases succeeded.

Usage:
    runner = TestRunner(LocalInfraManager(), ProcessWorkerLauncher())
    summary = runner.run_test(MyTest(), nodes=3)
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Union

from .summary import PhaseTiming, RunSummary
from ..config import PerformanceTest, TestConfig, TestStep
from ..errors import ArtifactRetrievalError, record_suppressed
from ..infrastructure.base import InfraManager, Infrastructure, NODE_OUTPUT_DIR
from ..utils.timing import format_duration, timed
from ..workers.base import WorkerLauncher, WorkerSet

logger = logging.getLogger(__name__)


class TestRunner:
    """
    Runs performance tests on a provisioned cluster.

    Args:
        infra_manager: Provisions the cluster for each run
        worker_launcher: Starts the workers on the cluster
        output_dir: Local directory receiving node-<index> artifact directories
    """

    __test__ = False

    def __init__(
        self,
        infra_manager: InfraManager,
        worker_launcher: WorkerLauncher,
        output_dir: Union[str, Path] = 'output',
    ):
        self.infra_manager = infra_manager
        self.worker_launcher = worker_launcher
        self.output_dir = Path(output_dir)

    def run_test(self, test: PerformanceTest, nodes: int) -> RunSummary:
        """
        Execute one complete run of `test` on `nodes` nodes.

        Returns:
            Summary of the run, also written to <output_dir>/run_summary.yaml

        Raises:
            HarnessError: Any provisioning, configuration, launch, task or
                artifact failure. Workers and cluster are released first.
        """
        test_name = getattr(test, 'name', type(test).__name__)
        started_at = datetime.now()

        logger.info("Provisioning %d node(s) for %s...", nodes, test_name)
        infra = self.infra_manager.create(nodes)
        with released(infra, 'cluster'):
            config = TestConfig()
            test.configure(config)
            config.validate()
            config.freeze()

            summary = RunSummary(
                test_name=test_name,
                node_count=len(infra.nodes),
                roles=config.roles,
                output_dir=self.output_dir,
                started_at=started_at,
            )

            logger.info("Launching workers...")
            workers = self.worker_launcher.launch(infra, config.roles)
            with released(workers, 'workers'):
                for phase, steps in config.phases():
                    logger.info("Starting %s tasks (%d step(s))...", phase, len(steps))
                    with timed() as stopwatch:
                        run_tasks(steps, workers)
                    summary.phases.append(PhaseTiming(phase, len(steps), stopwatch.elapsed))
                    logger.info("Finished %s tasks in %s", phase, format_duration(stopwatch.elapsed))

                logger.info("Copying results...")
                summary.node_dirs = copy_results(infra, self.output_dir)

        summary.finished_at = datetime.now()
        summary.write()
        logger.info("Run of %s finished in %s, results in %s",
                    test_name, format_duration(summary.duration_seconds), self.output_dir)
        return summary


def run_tasks(steps: Iterable[TestStep], workers: WorkerSet) -> None:
    """Run steps one after another; each waits for all its workers."""
    for step in steps:
        workers.execute(step.task, step.roles)


def copy_results(infra: Infrastructure, output_dir: Union[str, Path]) -> List[Path]:
    """
    Copy every node's output directory to <output_dir>/node-<index>.

    The copies are staged in a sibling directory that replaces output_dir
    only once all nodes copied, so a failed copy leaves no partial results
    and directories from earlier runs never mix with this run's.

    Returns:
        The node directories, in node order

    Raises:
        ArtifactRetrievalError: If copying from any node failed
    """
    output_dir = Path(output_dir)
    if output_dir.exists() and not output_dir.is_dir():
        raise ArtifactRetrievalError(f"Output path exists and is not a directory: {output_dir}")
    try:
        output_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f".{output_dir.name}-", dir=output_dir.parent))
        os.chmod(staging, 0o755)
    except OSError as e:
        raise ArtifactRetrievalError(f"Cannot stage results next to {output_dir}: {e}") from e

    try:
        for index, node in enumerate(infra.nodes):
            destination = staging / f"node-{index}"
            logger.debug("Copying %s:%s to %s", node.name, NODE_OUTPUT_DIR, destination)
            try:
                infra.copy_from_node(node, NODE_OUTPUT_DIR, destination)
            except OSError as e:
                raise ArtifactRetrievalError(f"Failed to copy results from {node.name}: {e}") from e

        _replace_directory(staging, output_dir)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    return [output_dir / f"node-{index}" for index in range(len(infra.nodes))]


def _replace_directory(source: Path, target: Path) -> None:
    """
    Move `source` to `target`.

    An existing target is renamed aside first and deleted only after the
    move succeeded; if the move fails it is put back.
    """
    previous = None
    try:
        if target.exists():
            previous = target.with_name(f"{source.name}.previous")
            target.rename(previous)
        source.rename(target)
    except OSError as e:
        if previous is not None and not target.exists():
            try:
                previous.rename(target)
            except OSError as restore_error:
                logger.error("Could not restore %s from %s: %s", target, previous, restore_error)
        raise ArtifactRetrievalError(f"Failed to move results into {target}: {e}") from e

    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


@contextmanager
def released(resource, name: str) -> Iterator:
    """
    Close `resource` when the block exits, however it exits.

    If the block raised and closing fails too, the close failure is logged
    and recorded on the original exception, which keeps propagating.
    """
    try:
        yield resource
    except BaseException as error:
        logger.info("Releasing %s after failure: %s", name, error)
        try:
            resource.close()
        except Exception as cleanup_error:
            logger.error("Failed to release %s: %s", name, cleanup_error)
            record_suppressed(error, cleanup_error)
        raise
    else:
        logger.info("Releasing %s", name)
        resource.close()
