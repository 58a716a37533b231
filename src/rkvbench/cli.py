"""Command-line interface for rkvbench.

Subcommands:
    rkv-bench run [DESTINATION]      Run the benchmark suite and publish reports
    rkv-bench config [DESTINATION]   Print the resolved configuration

Every setting can come from an ``RKV_BENCH_*`` environment variable, a
YAML profile, or a command-line option (highest precedence).
"""

from __future__ import annotations

import json
import os
import shlex
import signal
from pathlib import Path
from typing import Any, Callable

import click

from rkvbench import __version__
from rkvbench.errors import ConfigurationError
from rkvbench.logging import setup_logging


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """rkv-bench: run the rkv benchmark suite and publish its reports."""


def _config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by ``run`` and ``config``."""
    options = [
        click.argument("destination", required=False),
        click.option(
            "--key-count", type=str, default=None, help="Number of keys in the workload."
        ),
        click.option(
            "--key-length", type=str, default=None, help="Byte length of each synthetic key."
        ),
        click.option(
            "--data-dir",
            type=str,
            default=None,
            help="Directory the store writes to (default: /tmp/bench-reports).",
        ),
        click.option(
            "--staging-dir",
            type=str,
            default=None,
            help="Directory whose contents are published (default: --data-dir).",
        ),
        click.option(
            "--command",
            "command",
            type=str,
            default=None,
            help="Benchmark command; may use {key_count}, {key_length}, {data_dir}, {staging_dir}.",
        ),
        click.option(
            "--timeout", type=str, default=None, help="Benchmark timeout in seconds."
        ),
        click.option("--run-id", type=str, default=None, help="Run identifier."),
        click.option(
            "--append-run-id/--no-append-run-id",
            default=None,
            help="Publish under <destination>/<run-id>.",
        ),
        click.option(
            "--profile",
            "profile_path",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            default=None,
            help="YAML profile with default settings.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _overrides(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _raise_keyboard_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


@main.command()
@_config_options
@click.option(
    "--cwd",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Working directory for the benchmark (e.g. the rkv checkout).",
)
@click.option("--dry-run", is_flag=True, help="Show what would be done without running it.")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON.")
@click.option("-v", "--verbose", is_flag=True, help="Show detailed output.")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write a DEBUG log to this file.",
)
def run(  # noqa: PLR0913
    destination: str | None,
    key_count: str | None,
    key_length: str | None,
    data_dir: str | None,
    staging_dir: str | None,
    command: str | None,
    timeout: str | None,
    run_id: str | None,
    append_run_id: bool | None,
    profile_path: Path | None,
    cwd: Path | None,
    dry_run: bool,
    as_json: bool,
    verbose: bool,
    quiet: bool,
    log_file: Path | None,
) -> None:
    """Run the benchmark suite and publish its reports to DESTINATION.

    DESTINATION is a URI such as s3://bucket/reports/run1.  It may also be
    given as RKV_BENCH_DESTINATION_URI; without one, reports stay local.

    \b
    Exit codes:
        0    success
        2    configuration error
        3    staging directory error
        4    benchmark failed
        5    benchmark produced no artifacts
        6    publish failed
        130  interrupted

    \b
    Examples:
        rkv-bench run s3://rkv-bench/reports --append-run-id
        RKV_BENCH_KEY_COUNT=1000 rkv-bench run --command "./bench.sh {data_dir}"
    """
    from rkvbench.config import load_profile, resolve_config
    from rkvbench.executor import CommandBenchmark
    from rkvbench.pipeline import run_pipeline

    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)

    environ = dict(os.environ)
    overrides = _overrides(
        key_count=key_count,
        key_length=key_length,
        data_dir=data_dir,
        staging_dir=staging_dir,
        command=command,
        timeout=timeout,
        run_id=run_id,
        append_run_id=append_run_id,
    )

    if dry_run:
        try:
            profile = load_profile(profile_path) if profile_path else None
            config = resolve_config(environ, destination, overrides=overrides, profile=profile)
        except ConfigurationError as exc:
            click.echo(f"error: configuration failed: {exc}", err=True)
            raise SystemExit(exc.exit_code) from exc
        click.echo("(dry-run mode, nothing will be executed)")
        click.echo(f"Staging directory: {config.staging_path}")
        click.echo(f"Benchmark command: {shlex.join(config.expand_command())}")
        if config.publish_enabled:
            click.echo(f"Publish to:        {config.publish_uri}")
        else:
            click.echo("Publish to:        (skipped, no destination)")
        return

    previous = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        outcome = run_pipeline(
            environ,
            destination,
            overrides=overrides,
            profile_path=profile_path,
            suite=CommandBenchmark(environ, cwd=cwd),
        )
    finally:
        signal.signal(signal.SIGTERM, previous)

    if as_json:
        click.echo(json.dumps(outcome.to_dict(), indent=2))

    if outcome.failure is not None:
        click.echo(f"error: {outcome.failure.describe()}", err=True)
        raise SystemExit(outcome.exit_code)

    if not as_json:
        artifacts = outcome.artifacts.files if outcome.artifacts else []
        click.echo(f"Run {outcome.config.run_id if outcome.config else ''}: done")
        click.echo(f"  Artifacts: {len(artifacts)}")
        if outcome.publish_result is not None:
            click.echo(
                f"  Published: {len(outcome.publish_result.transferred)} file(s) "
                f"to {outcome.publish_result.destination_uri}"
            )
        else:
            click.echo("  Published: skipped (no destination)")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@main.command("config")
@_config_options
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["yaml", "json"]),
    default="yaml",
    show_default=True,
    help="Output format.",
)
def config_cmd(
    destination: str | None,
    key_count: str | None,
    key_length: str | None,
    data_dir: str | None,
    staging_dir: str | None,
    command: str | None,
    timeout: str | None,
    run_id: str | None,
    append_run_id: bool | None,
    profile_path: Path | None,
    fmt: str,
) -> None:
    """Print the configuration a run would use, without running anything."""
    from rkvbench.config import load_profile, resolve_config

    overrides = _overrides(
        key_count=key_count,
        key_length=key_length,
        data_dir=data_dir,
        staging_dir=staging_dir,
        command=command,
        timeout=timeout,
        run_id=run_id,
        append_run_id=append_run_id,
    )
    try:
        profile = load_profile(profile_path) if profile_path else None
        config = resolve_config(
            dict(os.environ), destination, overrides=overrides, profile=profile
        )
    except ConfigurationError as exc:
        click.echo(f"error: configuration failed: {exc}", err=True)
        raise SystemExit(exc.exit_code) from exc

    data = config.to_dict()
    if fmt == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        import yaml

        click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())


