"""
Worker process entry point.

Started on a node by the launcher as:
    python -m perftest.workers.worker

The process talks to the controller over stdin/stdout (see channel.py).
Everything the worker or its tasks print goes to stderr, which the
launcher captures into the worker's log file.
"""

import logging
import os
import pickle
import sys
import traceback
from typing import IO, Any

from .channel import receive_message, send_message
from .context import WorkerContext

logger = logging.getLogger(__name__)


def run_task(task: Any, context: WorkerContext) -> None:
    """Run a task object (with a run(context) method) or a plain callable."""
    run = getattr(task, 'run', None)
    if callable(run):
        run(context)
    elif callable(task):
        task(context)
    else:
        raise TypeError(f"{task!r} is neither a Task nor callable")


def serve(reader: IO[bytes], writer: IO[bytes]) -> int:
    """
    Handle controller messages until 'stop' or end of input.

    Returns:
        Process exit code (0 after 'stop', 1 if the controller went away)
    """
    kind, info = receive_message(reader)
    if kind != 'init':
        logger.error("Expected 'init' message, got %r", kind)
        return 2

    context = WorkerContext(info)
    logger.info("Worker %d (%s) ready on %s", info.worker_id, info.role, info.host)
    send_message(writer, 'ready')

    while True:
        try:
            kind, payload = receive_message(reader)
        except EOFError:
            logger.warning("Controller closed the channel")
            return 1

        if kind == 'stop':
            logger.info("Stopping worker %d", info.worker_id)
            return 0

        if kind != 'run':
            send_message(writer, 'failed', f"Unknown message kind: {kind!r}")
            continue

        try:
            task = pickle.loads(payload)
            logger.info("Running %r", task)
            run_task(task, context)
        except Exception:
            details = traceback.format_exc()
            logger.error("Task failed:\n%s", details)
            send_message(writer, 'failed', details)
        else:
            send_message(writer, 'done')


def main() -> int:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    reader = sys.stdin.buffer
    # Keep the real stdout for the channel and point fd 1 at stderr so that
    # task output, including from child processes, cannot corrupt it.
    writer = os.fdopen(os.dup(sys.stdout.fileno()), 'wb')
    sys.stdout.flush()
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())

    try:
        return serve(reader, writer)
    finally:
        writer.close()


if __name__ == '__main__':
    sys.exit(main())
