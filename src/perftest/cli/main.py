"""
Command-line interface for perftest.

Running a test:
    perftest run mypackage.tests:PutBenchmark --nodes 3
    perftest run tests/put_benchmark.yaml --nodes 3 --config harness.yaml

Looking at results:
    perftest analyze output/
    perftest analyze output/ --csv summary.csv
    perftest compare baseline-output/ output/

Checking an SSH cluster:
    perftest hosts --config harness.yaml
"""

import logging
from pathlib import Path

import click

from ..errors import HarnessError, TaskFailedError


@click.group()
@click.version_option()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """perftest - distributed performance-test harness."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def _load_settings(config):
    from ..run.settings import HarnessSettings

    if config is None:
        return HarnessSettings()
    return HarnessSettings.from_yaml(config)


# ============================================================================
# Running
# ============================================================================

@cli.command('run')
@click.argument('test')
@click.option('--nodes', '-n', required=True, type=click.IntRange(min=1),
              help='Number of nodes to provision')
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Harness settings YAML (default: local infrastructure)')
@click.option('--output', '-o', 'output_dir', type=click.Path(),
              help='Output directory (overrides the settings)')
def run_command(test, nodes, config, output_dir):
    """Run TEST ('module:ClassName' or a YAML test definition)."""
    from ..definition import load_test
    from ..utils.timing import format_duration

    try:
        settings = _load_settings(config)
        performance_test = load_test(test)
        runner = settings.build_runner(output_dir=output_dir)

        click.echo(f"Running {performance_test.name} on {nodes} node(s)")
        summary = runner.run_test(performance_test, nodes)
    except TaskFailedError as e:
        raise click.ClickException(e.details())
    except HarnessError as e:
        raise click.ClickException(str(e))

    for phase in summary.phases:
        click.echo(f"  {phase.name:<9} {phase.steps} step(s)  {format_duration(phase.duration_seconds)}")
    click.echo(f"✓ Results for {len(summary.node_dirs)} node(s) in {summary.output_dir}")


# ============================================================================
# Results
# ============================================================================

@cli.command('analyze')
@click.argument('output_dir', type=click.Path(exists=True, file_okay=False))
@click.option('--csv', 'csv_file', type=click.Path(), help='Also write the summary as CSV')
def analyze_command(output_dir, csv_file):
    """Summarize benchmark latencies recorded in OUTPUT_DIR."""
    from ..analysis.results import analyze_output

    summary = analyze_output(output_dir)
    if summary.empty:
        click.echo(f"No benchmark results found in {output_dir}")
        return

    click.echo(summary.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    if csv_file:
        Path(csv_file).parent.mkdir(parents=True, exist_ok=True)
        summary.to_csv(csv_file, index=False)
        click.echo(f"✓ Saved summary to {csv_file}")


@cli.command('compare')
@click.argument('baseline_dir', type=click.Path(exists=True, file_okay=False))
@click.argument('candidate_dir', type=click.Path(exists=True, file_okay=False))
def compare_command(baseline_dir, candidate_dir):
    """Compare the benchmarks of two runs."""
    from ..analysis.results import compare_runs

    comparison = compare_runs(baseline_dir, candidate_dir)
    if comparison.empty:
        click.echo("No benchmarks in common")
        return

    for row in comparison.itertuples(index=False):
        click.echo(f"{row.benchmark}:")
        click.echo(
            f"  throughput  {row.throughput_ops_s_baseline:.1f} -> {row.throughput_ops_s_candidate:.1f} ops/s"
            f"  ({row.throughput_ops_s_change_pct:+.1f}%)"
        )
        click.echo(
            f"  mean        {row.mean_ms_baseline:.3f} -> {row.mean_ms_candidate:.3f} ms"
            f"  ({row.mean_ms_change_pct:+.1f}%)"
        )
        click.echo(
            f"  p99         {row.p99_ms_baseline:.3f} -> {row.p99_ms_candidate:.3f} ms"
            f"  ({row.p99_ms_change_pct:+.1f}%)"
        )


# ============================================================================
# Cluster
# ============================================================================

@cli.command('hosts')
@click.option('--config', '-c', required=True, type=click.Path(exists=True),
              help='Harness settings YAML with SSH infrastructure')
def hosts_command(config):
    """Check that every configured SSH host is reachable."""
    try:
        settings = _load_settings(config)
    except HarnessError as e:
        raise click.ClickException(str(e))

    if settings.infrastructure_type != 'ssh':
        raise click.ClickException("Settings do not describe SSH infrastructure")

    status = settings.build_infra_manager().check_connectivity()
    for host, reachable in status.items():
        click.echo(f"  {host:<30} {'OK' if reachable else 'UNREACHABLE'}")

    down = [host for host, reachable in status.items() if not reachable]
    if down:
        raise click.ClickException(f"{len(down)}/{len(status)} host(s) unreachable")
    click.echo(f"✓ All {len(status)} host(s) reachable")


if __name__ == '__main__':
    cli()
