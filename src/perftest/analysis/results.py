"""
Benchmark result analysis.

Reads the *.latencies.csv files that BenchmarkTask writes on each node from
a run's output directory (output/node-<index>/...) and reduces them to one
row per benchmark: operation count, throughput and latency percentiles.
Two runs can be compared benchmark by benchmark.
"""

import logging
import re
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np
import pandas as pd

from ..tasks import LATENCY_COLUMNS, LATENCY_SUFFIX

logger = logging.getLogger(__name__)

NODE_DIR_PATTERN = re.compile(r"^node-(?P<index>\d+)$")

SUMMARY_COLUMNS = [
    'benchmark', 'nodes', 'operations', 'duration_seconds', 'throughput_ops_s',
    'mean_ms', 'p50_ms', 'p90_ms', 'p99_ms', 'max_ms',
]


def find_node_dirs(output_dir: Union[str, Path]) -> List[Tuple[int, Path]]:
    """Return (index, path) of every node-<index> directory, by index."""
    output_dir = Path(output_dir)
    if not output_dir.is_dir():
        raise FileNotFoundError(f"Output directory not found: {output_dir}")

    node_dirs = []
    for path in output_dir.iterdir():
        match = NODE_DIR_PATTERN.match(path.name)
        if match and path.is_dir():
            node_dirs.append((int(match.group('index')), path))
    return sorted(node_dirs)


def load_latencies(output_dir: Union[str, Path]) -> pd.DataFrame:
    """
    Load every latency file of a run.

    Returns:
        DataFrame with columns node, benchmark, timestamp_ns, latency_ns
    """
    frames = []
    for index, node_dir in find_node_dirs(output_dir):
        for path in sorted(node_dir.rglob(f"*{LATENCY_SUFFIX}")):
            try:
                df = pd.read_csv(path)
            except (pd.errors.ParserError, pd.errors.EmptyDataError, OSError) as e:
                logger.warning("Skipping unreadable latency file %s: %s", path, e)
                continue

            missing = [col for col in LATENCY_COLUMNS if col not in df.columns]
            if missing:
                logger.warning("Skipping %s: missing column(s) %s", path, ', '.join(missing))
                continue

            df = df[list(LATENCY_COLUMNS)].astype('int64')
            df.insert(0, 'benchmark', path.name[:-len(LATENCY_SUFFIX)])
            df.insert(0, 'node', index)
            frames.append(df)

    if not frames:
        return pd.DataFrame(columns=['node', 'benchmark', *LATENCY_COLUMNS])
    return pd.concat(frames, ignore_index=True)


def summarize(latencies: pd.DataFrame) -> pd.DataFrame:
    """
    Reduce raw latencies to one row per benchmark.

    Throughput is the sum over nodes of each node's operations divided by
    that node's recording span, so concurrent clients add up.
    """
    rows = []
    for benchmark, group in latencies.groupby('benchmark', sort=True):
        if group.empty:
            continue
        latency_ms = group['latency_ns'].to_numpy(dtype=float) / 1e6
        ends = (group['timestamp_ns'] + group['latency_ns']) / 1e9
        spans = ends.groupby(group['node']).max()
        counts = group.groupby('node').size()
        throughput = (counts / spans.where(spans > 0)).sum()
        p50, p90, p99 = np.percentile(latency_ms, [50, 90, 99])

        rows.append({
            'benchmark': benchmark,
            'nodes': int(group['node'].nunique()),
            'operations': int(len(group)),
            'duration_seconds': float(spans.max()),
            'throughput_ops_s': float(throughput),
            'mean_ms': float(np.mean(latency_ms)),
            'p50_ms': float(p50),
            'p90_ms': float(p90),
            'p99_ms': float(p99),
            'max_ms': float(np.max(latency_ms)),
        })

    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def analyze_output(output_dir: Union[str, Path]) -> pd.DataFrame:
    """Summary of every benchmark recorded in a run's output directory."""
    return summarize(load_latencies(output_dir))


def compare_runs(baseline_dir: Union[str, Path], candidate_dir: Union[str, Path]) -> pd.DataFrame:
    """
    Compare two runs benchmark by benchmark.

    Change columns are percentages relative to the baseline; positive
    throughput change and negative latency change are improvements.
    Benchmarks present in only one run are dropped.
    """
    baseline = analyze_output(baseline_dir)
    candidate = analyze_output(candidate_dir)
    merged = baseline.merge(candidate, on='benchmark', suffixes=('_baseline', '_candidate'))

    result = pd.DataFrame({'benchmark': merged['benchmark']})
    for metric in ('throughput_ops_s', 'mean_ms', 'p99_ms'):
        base = merged[f'{metric}_baseline']
        cand = merged[f'{metric}_candidate']
        result[f'{metric}_baseline'] = base
        result[f'{metric}_candidate'] = cand
        result[f'{metric}_change_pct'] = (cand - base) / base.where(base != 0) * 100.0
    return result
