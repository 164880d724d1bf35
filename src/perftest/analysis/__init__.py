"""Benchmark latency analysis across node artifacts."""

from .results import analyze_output, compare_runs, find_node_dirs, load_latencies, summarize

__all__ = ['analyze_output', 'compare_runs', 'find_node_dirs', 'load_latencies', 'summarize']
