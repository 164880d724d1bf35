"""Test runner, harness settings and run summaries."""

from .runner import TestRunner, copy_results, released, run_tasks
from .settings import HarnessSettings
from .summary import PhaseTiming, RunSummary, load_summary

__all__ = [
    'TestRunner',
    'copy_results',
    'released',
    'run_tasks',
    'HarnessSettings',
    'PhaseTiming',
    'RunSummary',
    'load_summary',
]
