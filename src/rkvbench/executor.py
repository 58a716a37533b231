"""Benchmark execution.

The benchmark suite is an opaque child process.  The workload is passed
through its argument list (``{key_count}``-style placeholders) and through
``RKV_BENCH_*`` environment variables; only the exit status and stderr
text come back.  A failed run is never retried.
"""

from __future__ import annotations

import os
import shlex
import signal as _signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

from rkvbench.config import RunConfig
from rkvbench.errors import ExecutionError
from rkvbench.logging import get_logger

log = get_logger("executor")

# Seconds to wait after SIGTERM before escalating to SIGKILL.
DEFAULT_GRACE_PERIOD = 10.0


# ---------------------------------------------------------------------------
# ExecutionResult
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Result of one benchmark process."""

    exit_code: int
    stderr: str = ""
    wall_time_s: float = 0.0
    timed_out: bool = False
    command: list[str] = field(default_factory=list)


class BenchmarkSuite(Protocol):
    """Runs the benchmark suite for a configuration."""

    def run(self, config: RunConfig) -> ExecutionResult: ...


# ---------------------------------------------------------------------------
# Child-process implementation
# ---------------------------------------------------------------------------


class CommandBenchmark:
    """Run ``config.command`` as a child process in its own session.

    stdout is inherited so benchmark progress stays visible; stderr is
    captured for error reporting.

    Args:
        base_env: Environment the child starts from.  The workload
            variables are layered on top.  Callers pass a snapshot of
            ``os.environ`` taken at entry.
        cwd: Working directory (e.g. the rkv checkout for ``cargo bench``).
        grace_period: Seconds between SIGTERM and SIGKILL when stopping
            the child.
    """

    def __init__(
        self,
        base_env: Mapping[str, str] | None = None,
        *,
        cwd: Path | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
    ) -> None:
        self.base_env = dict(base_env or {})
        self.cwd = cwd
        self.grace_period = grace_period

    def run(self, config: RunConfig) -> ExecutionResult:
        argv = config.expand_command()
        env = dict(self.base_env)
        env.update(config.workload_env())

        log.info("Running benchmark: %s", shlex.join(argv))
        wall_start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(self.cwd) if self.cwd else None,
                env=env,
                stdout=None,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            raise ExecutionError(f"cannot start {argv[0]}: {exc}") from exc

        timed_out = False
        try:
            _, stderr = proc.communicate(timeout=config.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            log.warning("Benchmark exceeded %ss, stopping it", config.timeout)
            _terminate_process_group(proc, self.grace_period)
            _, stderr = proc.communicate()
        except KeyboardInterrupt:
            log.warning("Interrupted, stopping benchmark (pid %d)", proc.pid)
            _terminate_process_group(proc, self.grace_period)
            raise

        return ExecutionResult(
            exit_code=proc.returncode,
            stderr=stderr or "",
            wall_time_s=round(time.monotonic() - wall_start, 6),
            timed_out=timed_out,
            command=argv,
        )


def _terminate_process_group(proc: subprocess.Popen[str], grace_period: float) -> None:
    """SIGTERM the child's process group, then SIGKILL if it lingers."""
    try:
        pgid = os.getpgid(proc.pid)
    except ProcessLookupError:
        return
    try:
        os.killpg(pgid, _signal.SIGTERM)
        try:
            proc.wait(timeout=grace_period)
        except subprocess.TimeoutExpired:
            os.killpg(pgid, _signal.SIGKILL)
            proc.wait()
    except (ProcessLookupError, PermissionError):
        pass


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------


def execute(config: RunConfig, suite: BenchmarkSuite) -> ExecutionResult:
    """Run the benchmark suite and fail on anything but a clean exit.

    Raises:
        ExecutionError: On a non-zero exit, a timeout, or when the suite
            could not be started.
    """
    result = suite.run(config)
    tail = stderr_tail(result.stderr)

    if result.timed_out:
        raise ExecutionError(
            f"benchmark timed out after {config.timeout}s",
            returncode=result.exit_code,
            stderr=result.stderr,
        )
    if result.exit_code != 0:
        if result.exit_code < 0:
            message = f"benchmark killed by {signal_name(-result.exit_code)}"
        else:
            message = f"benchmark exited with status {result.exit_code}"
        if tail:
            log.error("Benchmark stderr (tail):\n%s", tail)
            message = f"{message}: {tail.splitlines()[-1]}"
        raise ExecutionError(message, returncode=result.exit_code, stderr=result.stderr)

    log.info("Benchmark finished in %.1fs", result.wall_time_s)
    return result


def signal_name(signal_number: int) -> str:
    """Convert a signal number to its name, e.g. 11 -> ``"SIGSEGV"``."""
    try:
        return _signal.Signals(signal_number).name
    except ValueError:
        return f"SIG{signal_number}"


def stderr_tail(stderr: str, max_lines: int = 20) -> str:
    """Return the last *max_lines* lines of *stderr*, trailing whitespace removed."""
    lines = stderr.rstrip().splitlines()
    return "\n".join(lines[-max_lines:])
