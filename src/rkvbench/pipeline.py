"""The benchmark-run-and-publish pipeline.

States::

    configuring -> executing -> collecting -> publishing -> done
         \\             \\            \\             \\
          +-------------+------------+-------------+--> failed(stage, reason)

Each stage either returns normally or raises a :class:`PipelineError`;
the runner stops at the first failure and never goes back to an earlier
state.  A ``KeyboardInterrupt`` (SIGINT, or SIGTERM translated by the
CLI) ends the run in ``failed`` as well.  Publishing is skipped, with a
warning, when no destination is configured.

Usage::

    outcome = run_pipeline(dict(os.environ), "s3://bucket/reports/run1")
    sys.exit(outcome.exit_code)
"""

from __future__ import annotations

import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from rkvbench.collector import ArtifactTree, collect_artifacts, prepare_staging
from rkvbench.config import RunConfig, load_profile, resolve_config
from rkvbench.errors import EXIT_INTERRUPTED, EXIT_OK, PipelineError, PublishError
from rkvbench.executor import BenchmarkSuite, CommandBenchmark, ExecutionResult, execute
from rkvbench.logging import clear_run_context, set_run_context
from rkvbench.publisher import PublishResult, Uploader, publish, uploader_for_uri

log = logging.getLogger("rkvbench")


class PipelineState(str, enum.Enum):
    CONFIGURING = "configuring"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"


StateCallback = Callable[[PipelineState], None]


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass
class StageFailure:
    """The terminal ``failed(stage, reason)`` state."""

    stage: PipelineState
    error: BaseException

    @property
    def interrupted(self) -> bool:
        return isinstance(self.error, KeyboardInterrupt)

    @property
    def reason(self) -> str:
        if self.interrupted:
            return "interrupted"
        return str(self.error) or type(self.error).__name__

    @property
    def exit_code(self) -> int:
        if isinstance(self.error, PipelineError):
            return self.error.exit_code
        if self.interrupted:
            return EXIT_INTERRUPTED
        return 1

    def describe(self) -> str:
        """One line naming the failing stage and the cause."""
        name = self.error.stage if isinstance(self.error, PipelineError) else self.stage.value
        return f"{name} failed: {self.reason}"


@dataclass
class PipelineOutcome:
    """Everything a pipeline run produced, including how it ended."""

    state: PipelineState = PipelineState.CONFIGURING
    history: list[PipelineState] = field(default_factory=list)
    config: RunConfig | None = None
    execution: ExecutionResult | None = None
    started_at: float | None = None  # wall clock, just before the benchmark starts
    artifacts: ArtifactTree | None = None
    publish_result: PublishResult | None = None
    publish_skipped: bool = False
    failure: StageFailure | None = None

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def exit_code(self) -> int:
        if self.failure is not None:
            return self.failure.exit_code
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "exit_code": self.exit_code,
            "failure": self.failure.describe() if self.failure else None,
            "config": self.config.to_dict() if self.config else None,
            "wall_time_s": self.execution.wall_time_s if self.execution else None,
            "artifacts": self.artifacts.files if self.artifacts else [],
            "publish_skipped": self.publish_skipped,
            "publish": self.publish_result.to_dict() if self.publish_result else None,
        }


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class Pipeline:
    """Runs the post-configuration stages for one RunConfig.

    Args:
        config: The resolved configuration.
        suite: Benchmark collaborator; defaults to :class:`CommandBenchmark`
            started from a snapshot of ``os.environ`` taken here, so that
            ``PATH`` and ``HOME`` reach ``cargo``.
        uploader: Publish collaborator; defaults to the uploader matching
            the destination scheme.
        on_state: Called with each state as it is entered.
    """

    def __init__(
        self,
        config: RunConfig,
        suite: BenchmarkSuite | None = None,
        uploader: Uploader | None = None,
        *,
        on_state: StateCallback | None = None,
    ) -> None:
        self.config = config
        self.suite = suite or CommandBenchmark(dict(os.environ))
        self.uploader = uploader
        self.on_state = on_state

    def run(self, outcome: PipelineOutcome | None = None) -> PipelineOutcome:
        """Execute, collect and publish.  Never raises for stage failures.

        Errors that are not :class:`PipelineError`, e.g. from a substituted
        suite or uploader, also end the run in ``failed`` with exit code 1.
        """
        outcome = outcome or PipelineOutcome()
        outcome.config = self.config
        set_run_context(run_id=self.config.run_id)
        try:
            return self._run_stages(outcome)
        finally:
            clear_run_context()

    def _run_stages(self, outcome: PipelineOutcome) -> PipelineOutcome:
        stages: list[tuple[PipelineState, Callable[[PipelineOutcome], None]]] = [
            (PipelineState.EXECUTING, self._execute),
            (PipelineState.COLLECTING, self._collect),
        ]
        if self.config.publish_enabled:
            stages.append((PipelineState.PUBLISHING, self._publish))

        for state, stage in stages:
            _enter(outcome, state, self.on_state)
            try:
                stage(outcome)
            except PipelineError as exc:
                return _fail(outcome, state, exc, self.on_state)
            except KeyboardInterrupt as exc:
                return _fail(outcome, state, exc, self.on_state)
            except Exception as exc:  # noqa: BLE001
                log.error("Unexpected error while %s: %s", state.value, exc)
                return _fail(outcome, state, exc, self.on_state)

        if not self.config.publish_enabled:
            outcome.publish_skipped = True
            log.warning("No destination URI configured; skipping publish")

        _enter(outcome, PipelineState.DONE, self.on_state)
        log.info("Pipeline complete (run %s)", self.config.run_id)
        return outcome

    # -- stages ------------------------------------------------------------

    def _execute(self, outcome: PipelineOutcome) -> None:
        prepare_staging(self.config.staging_path)
        if self.config.data_dir != self.config.staging_path:
            prepare_staging(self.config.data_dir)
        outcome.started_at = time.time()
        outcome.execution = execute(self.config, self.suite)

    def _collect(self, outcome: PipelineOutcome) -> None:
        outcome.artifacts = collect_artifacts(
            self.config.staging_path, since=outcome.started_at
        )

    def _publish(self, outcome: PipelineOutcome) -> None:
        assert outcome.artifacts is not None
        uri = self.config.publish_uri
        uploader = self.uploader
        if uploader is None:
            try:
                uploader = uploader_for_uri(uri)
            except ValueError as exc:
                raise PublishError(str(exc)) from exc
        result = publish(outcome.artifacts, uri, uploader)
        outcome.publish_result = result
        if not result.ok:
            raise PublishError(result.reason, result)


def run_pipeline(
    environ: Mapping[str, str],
    destination: str | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    profile: Mapping[str, Any] | None = None,
    profile_path: Path | None = None,
    suite: BenchmarkSuite | None = None,
    uploader: Uploader | None = None,
    on_state: StateCallback | None = None,
) -> PipelineOutcome:
    """Configure from explicit inputs, then run every stage.

    Configuration errors are reported before any directory is created or
    any process is started.  When *suite* is omitted, the benchmark runs
    as a :class:`CommandBenchmark` inheriting *environ*.
    """
    outcome = PipelineOutcome()
    _enter(outcome, PipelineState.CONFIGURING, on_state)
    try:
        if profile_path is not None:
            profile = {**load_profile(profile_path), **(profile or {})}
        config = resolve_config(environ, destination, overrides=overrides, profile=profile)
    except PipelineError as exc:
        _fail(outcome, PipelineState.CONFIGURING, exc, on_state)
        clear_run_context()
        return outcome

    log.debug("Resolved configuration: %s", config.to_dict())
    if suite is None:
        suite = CommandBenchmark(environ)
    return Pipeline(config, suite, uploader, on_state=on_state).run(outcome)


def _enter(
    outcome: PipelineOutcome, state: PipelineState, on_state: StateCallback | None
) -> None:
    outcome.state = state
    outcome.history.append(state)
    set_run_context(stage=state.value)
    log.debug("Pipeline state: %s", state.value)
    if on_state is not None:
        on_state(state)


def _fail(
    outcome: PipelineOutcome,
    stage: PipelineState,
    error: BaseException,
    on_state: StateCallback | None,
) -> PipelineOutcome:
    outcome.failure = StageFailure(stage=stage, error=error)
    log.debug("Pipeline failed: %s", outcome.failure.describe())
    _enter(outcome, PipelineState.FAILED, on_state)
    return outcome
