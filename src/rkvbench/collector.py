"""Staging directory preparation and artifact collection.

The staging directory is created before the benchmark starts and only
observed afterwards.  Artifact contents are never read; the tree is
just a list of relative paths for the publisher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from rkvbench.errors import EmptyArtifactError, StagingError

log = logging.getLogger("rkvbench")

# Seconds of tolerance for filesystems whose timestamps lag the wall clock.
MTIME_SLACK = 2.0


@dataclass
class ArtifactTree:
    """Files found under the staging root after a benchmark run."""

    root: Path
    files: list[str] = field(default_factory=list)  # sorted, relative, POSIX
    total_bytes: int = 0

    def __len__(self) -> int:
        return len(self.files)


def prepare_staging(path: Path) -> Path:
    """Ensure *path* exists as a directory, creating parents as needed.

    Idempotent: an existing directory is left untouched, including its
    contents.

    Raises:
        StagingError: If *path* exists and is not a directory, or cannot
            be created.
    """
    if path.exists() and not path.is_dir():
        raise StagingError(f"staging path exists and is not a directory: {path}")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError as exc:
        raise StagingError(f"permission denied creating staging directory {path}") from exc
    except OSError as exc:
        raise StagingError(f"cannot create staging directory {path}: {exc}") from exc
    log.debug("Staging directory ready: %s", path)
    return path


def collect_artifacts(path: Path, *, since: float | None = None) -> ArtifactTree:
    """Walk the staging directory and list every regular file in it.

    The staging directory is reused between runs (``cargo bench`` keeps
    its target directory), so reports left by an earlier run are still
    there.  When *since* is given, only files modified at or after that
    wall-clock time, less :data:`MTIME_SLACK`, belong to this run; older
    files are skipped.

    Raises:
        StagingError: If the staging directory disappeared during the run.
        EmptyArtifactError: If it holds no regular files from this run.
    """
    if not path.is_dir():
        raise StagingError(f"staging directory vanished during the run: {path}")

    cutoff = since - MTIME_SLACK if since is not None else None
    tree = ArtifactTree(root=path)
    stale = 0
    try:
        for entry in sorted(path.rglob("*")):
            if not entry.is_file():
                continue
            st = entry.stat()
            if cutoff is not None and st.st_mtime < cutoff:
                stale += 1
                continue
            tree.files.append(entry.relative_to(path).as_posix())
            tree.total_bytes += st.st_size
    except OSError as exc:
        raise StagingError(f"cannot read staging directory {path}: {exc}") from exc

    if stale:
        log.debug("Skipped %d file(s) left in %s by an earlier run", stale, path)
    if not tree.files:
        detail = f" ({stale} older file(s) ignored)" if stale else ""
        raise EmptyArtifactError(
            f"benchmark produced no files in {path}{detail}; "
            "check that its output location matches the staging directory"
        )

    tree.files.sort()
    log.info("Collected %d artifact(s), %d bytes, in %s", len(tree), tree.total_bytes, path)
    return tree
