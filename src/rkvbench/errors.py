"""Error hierarchy for the benchmark pipeline.

Every error is fatal to the current invocation.  Each class carries the
name of the stage that raised it and the process exit code the CLI uses,
so scripts wrapping ``rkv-bench`` can tell a bad configuration from a
failed benchmark or a failed upload.
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_CONFIGURATION = 2
EXIT_STAGING = 3
EXIT_EXECUTION = 4
EXIT_EMPTY_ARTIFACTS = 5
EXIT_PUBLISH = 6
EXIT_INTERRUPTED = 130


class PipelineError(Exception):
    """Base class for errors that abort a pipeline run."""

    stage = "pipeline"
    exit_code = 1


class ConfigurationError(PipelineError):
    """A configuration input is missing or invalid."""

    stage = "configuration"
    exit_code = EXIT_CONFIGURATION

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class StagingError(PipelineError):
    """The local staging directory cannot be used."""

    stage = "staging"
    exit_code = EXIT_STAGING


class ExecutionError(PipelineError):
    """The benchmark process failed, timed out, or could not be started.

    ``exit_code`` is the pipeline's exit status; the benchmark's own status
    is kept in ``returncode`` (``None`` when the process never ran).
    """

    stage = "execution"
    exit_code = EXIT_EXECUTION

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class EmptyArtifactError(PipelineError):
    """The benchmark succeeded but left nothing in the staging directory."""

    stage = "collection"
    exit_code = EXIT_EMPTY_ARTIFACTS


class PublishError(PipelineError):
    """Uploading the artifact tree failed, wholly or partially."""

    stage = "publish"
    exit_code = EXIT_PUBLISH

    def __init__(self, message: str, result: object | None = None) -> None:
        super().__init__(message)
        self.result = result
