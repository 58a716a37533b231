"""Run configuration: resolution, validation, and YAML profiles.

Handles:
- Reading workload parameters from an explicit environment mapping.
- Loading optional YAML profiles with the same keys as :class:`RunConfig`.
- Merging CLI overrides > positional destination > environment > profile
  > built-in defaults.
- Validating every field before any directory is created or process started.

Nothing here reads ``os.environ`` directly; the caller snapshots the
environment once at entry and passes it in.
"""

from __future__ import annotations

import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

from rkvbench.errors import ConfigurationError
from rkvbench.publisher import join_uri

# ---------------------------------------------------------------------------
# Recognized inputs
# ---------------------------------------------------------------------------

ENV_VARS: dict[str, str] = {
    "key_count": "RKV_BENCH_KEY_COUNT",
    "key_length": "RKV_BENCH_KEY_LENGTH",
    "data_dir": "RKV_BENCH_DATA_DIR",
    "destination_uri": "RKV_BENCH_DESTINATION_URI",
    "staging_dir": "RKV_BENCH_STAGING_DIR",
    "command": "RKV_BENCH_COMMAND",
    "timeout": "RKV_BENCH_TIMEOUT",
    "run_id": "RKV_BENCH_RUN_ID",
    "append_run_id": "RKV_BENCH_APPEND_RUN_ID",
}

DEFAULT_KEY_COUNT = 10_000_000
DEFAULT_KEY_LENGTH = 4  # keys are big-endian u32s in the rkv benches
DEFAULT_DATA_DIR = Path("/tmp/bench-reports")
DEFAULT_COMMAND: tuple[str, ...] = ("cargo", "bench", "--target-dir", "{data_dir}")

SUPPORTED_SCHEMES = ("s3", "gs", "file", "http", "https")

_PLACEHOLDERS = ("key_count", "key_length", "data_dir", "staging_dir")
_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"", "0", "false", "no", "off"}


# ---------------------------------------------------------------------------
# RunConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    """Resolved, immutable parameters of one benchmark invocation."""

    key_count: int
    key_length: int
    data_dir: Path
    destination_uri: str = ""
    staging_dir: Path | None = None  # None = same as data_dir
    command: tuple[str, ...] = DEFAULT_COMMAND
    timeout: int | None = None  # seconds; None = wait forever
    run_id: str = ""  # Auto-generated if empty
    append_run_id: bool = False

    def __post_init__(self) -> None:
        # Configs built directly (not via resolve_config) get the same checks.
        object.__setattr__(self, "key_count", _parse_positive_int("key_count", self.key_count))
        object.__setattr__(self, "key_length", _parse_positive_int("key_length", self.key_length))
        if self.timeout is not None:
            object.__setattr__(self, "timeout", _parse_positive_int("timeout", self.timeout))
        if isinstance(self.data_dir, str) and not self.data_dir.strip():
            raise ConfigurationError("data_dir", "value is empty")
        if not self.command:
            raise ConfigurationError("command", "value is empty")
        object.__setattr__(self, "data_dir", Path(self.data_dir))
        if self.staging_dir is None:
            object.__setattr__(self, "staging_dir", self.data_dir)
        else:
            object.__setattr__(self, "staging_dir", Path(self.staging_dir))
        object.__setattr__(self, "command", tuple(self.command))
        if not self.run_id:
            object.__setattr__(self, "run_id", f"run_{time.strftime('%Y%m%d_%H%M%S')}")

    @property
    def publish_enabled(self) -> bool:
        """Whether a destination was configured."""
        return bool(self.destination_uri)

    @property
    def publish_uri(self) -> str:
        """Where artifacts are uploaded, with the run id appended if requested."""
        if not self.destination_uri:
            return ""
        if self.append_run_id:
            return join_uri(self.destination_uri, self.run_id)
        return self.destination_uri

    @property
    def staging_path(self) -> Path:
        """The staging directory as a concrete Path."""
        assert self.staging_dir is not None
        return self.staging_dir

    def expand_command(self) -> list[str]:
        """Return the benchmark argv with workload placeholders filled in."""
        values = self._placeholder_values()
        return [arg.format(**values) for arg in self.command]

    def workload_env(self) -> dict[str, str]:
        """Environment variables describing the workload to the child process."""
        return {
            ENV_VARS["key_count"]: str(self.key_count),
            ENV_VARS["key_length"]: str(self.key_length),
            ENV_VARS["data_dir"]: str(self.data_dir),
            ENV_VARS["staging_dir"]: str(self.staging_path),
            ENV_VARS["run_id"]: self.run_id,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON/YAML-compatible dict."""
        return {
            "key_count": self.key_count,
            "key_length": self.key_length,
            "data_dir": str(self.data_dir),
            "staging_dir": str(self.staging_path),
            "destination_uri": self.destination_uri,
            "publish_uri": self.publish_uri,
            "command": list(self.command),
            "timeout": self.timeout,
            "run_id": self.run_id,
            "append_run_id": self.append_run_id,
        }

    def _placeholder_values(self) -> dict[str, str]:
        return {
            "key_count": str(self.key_count),
            "key_length": str(self.key_length),
            "data_dir": str(self.data_dir),
            "staging_dir": str(self.staging_path),
        }


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def load_profile(profile_path: Path) -> dict[str, Any]:
    """Load a run profile from a YAML file.

    Profile format::

        key_count: 1000000
        key_length: 16
        data_dir: /tmp/bench-reports
        destination_uri: s3://rkv-bench/reports
        command: ["cargo", "bench", "--target-dir", "{data_dir}"]
        timeout: 3600
        append_run_id: true

    Returns:
        The parsed YAML as a dict.

    Raises:
        ConfigurationError: If the file is missing, unparsable, not a
            mapping, or names an unknown key.
    """
    import yaml

    if not profile_path.exists():
        raise ConfigurationError("profile", f"profile not found: {profile_path}")

    try:
        data = yaml.safe_load(profile_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError("profile", f"invalid YAML in {profile_path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            "profile", f"profile must be a YAML mapping, got {type(data).__name__}"
        )

    unknown = sorted(str(k) for k in set(data) - set(ENV_VARS))
    if unknown:
        raise ConfigurationError("profile", f"unknown key(s): {', '.join(unknown)}")
    return data


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_config(
    environ: Mapping[str, str],
    destination: str | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    profile: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Build a validated :class:`RunConfig`.

    A field falls back to its default only when no source mentions it at
    all.  A value that is present but blank or malformed is an error.

    Args:
        environ: Environment variable mapping (usually a snapshot of
            ``os.environ`` taken at entry).
        destination: Positional destination URI, if one was given.
        overrides: CLI option values keyed by field name.  ``None``
            values mean "not given".
        profile: Parsed YAML profile, keyed by field name.

    Raises:
        ConfigurationError: Naming the first invalid field.
    """
    cli = {k: v for k, v in (overrides or {}).items() if v is not None}
    if destination is not None:
        cli.setdefault("destination_uri", destination)
    prof = dict(profile or {})

    def lookup(name: str) -> tuple[bool, Any]:
        if name in cli:
            return True, cli[name]
        env_name = ENV_VARS[name]
        if env_name in environ:
            return True, environ[env_name]
        if name in prof and prof[name] is not None:
            return True, prof[name]
        return False, None

    found, raw = lookup("key_count")
    key_count = _parse_positive_int("key_count", raw) if found else DEFAULT_KEY_COUNT

    found, raw = lookup("key_length")
    key_length = _parse_positive_int("key_length", raw) if found else DEFAULT_KEY_LENGTH

    found, raw = lookup("data_dir")
    data_dir = _parse_path("data_dir", raw) if found else DEFAULT_DATA_DIR

    found, raw = lookup("staging_dir")
    staging_dir = _parse_path("staging_dir", raw) if found else None

    found, raw = lookup("destination_uri")
    destination_uri = _parse_destination(raw) if found else ""

    found, raw = lookup("command")
    command = _parse_command(raw) if found else DEFAULT_COMMAND

    found, raw = lookup("timeout")
    timeout = _parse_positive_int("timeout", raw) if found and raw != "" else None

    found, raw = lookup("run_id")
    run_id = _parse_run_id(raw) if found else ""

    found, raw = lookup("append_run_id")
    append_run_id = _parse_bool("append_run_id", raw) if found else False

    return RunConfig(
        key_count=key_count,
        key_length=key_length,
        data_dir=data_dir,
        destination_uri=destination_uri,
        staging_dir=staging_dir,
        command=command,
        timeout=timeout,
        run_id=run_id,
        append_run_id=append_run_id,
    )


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def _parse_positive_int(name: str, raw: Any) -> int:
    if isinstance(raw, bool):
        raise ConfigurationError(name, f"must be a positive integer (got {raw!r})")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            raise ConfigurationError(name, "value is empty")
        try:
            value = int(text, 10)
        except ValueError:
            raise ConfigurationError(
                name, f"must be a positive integer (got {text!r})"
            ) from None
    if value <= 0:
        raise ConfigurationError(name, f"must be a positive integer (got {value})")
    return value


def _parse_path(name: str, raw: Any) -> Path:
    text = str(raw).strip()
    if not text:
        raise ConfigurationError(name, "value is empty")
    return Path(text).expanduser()


def _parse_destination(raw: Any) -> str:
    """Validate a ``<scheme>://<container>/<prefix>`` URI.  Empty is allowed."""
    uri = str(raw).strip()
    if not uri:
        return ""
    if "://" not in uri:
        raise ConfigurationError(
            "destination_uri", f"expected <scheme>://<container>/<prefix>, got {uri!r}"
        )
    parts = urlsplit(uri)
    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ConfigurationError(
            "destination_uri",
            f"unsupported scheme {parts.scheme!r} (expected one of {', '.join(SUPPORTED_SCHEMES)})",
        )
    if scheme == "file":
        if parts.netloc not in ("", "localhost") or not parts.path.startswith("/"):
            raise ConfigurationError(
                "destination_uri", f"file URIs need an absolute path, got {uri!r}"
            )
    elif not parts.netloc:
        raise ConfigurationError("destination_uri", f"missing bucket or host in {uri!r}")
    return uri


def _parse_command(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, (list, tuple)):
        argv = tuple(str(arg) for arg in raw)
    else:
        try:
            argv = tuple(shlex.split(str(raw)))
        except ValueError as exc:
            raise ConfigurationError("command", f"cannot parse command: {exc}") from exc
    if not argv:
        raise ConfigurationError("command", "value is empty")

    # Reject unknown placeholders now rather than after staging is prepared.
    dummy = {name: "" for name in _PLACEHOLDERS}
    for arg in argv:
        try:
            arg.format(**dummy)
        except KeyError as exc:
            raise ConfigurationError(
                "command",
                f"unknown placeholder {{{exc.args[0]}}} (known: {', '.join(_PLACEHOLDERS)})",
            ) from None
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise ConfigurationError("command", f"bad placeholder in {arg!r}: {exc}") from None
    return argv


def _parse_run_id(raw: Any) -> str:
    text = str(raw).strip()
    if not text:
        return ""
    if not _RUN_ID_RE.match(text):
        raise ConfigurationError(
            "run_id", f"may only contain letters, digits, '.', '_' and '-' (got {text!r})"
        )
    return text


def _parse_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(name, f"expected a boolean (got {raw!r})")
