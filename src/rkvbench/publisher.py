"""Upload a staged artifact tree to an object store.

Every file under the staging root is copied to ``<destination>/<relative
path>``.  Transfers happen one at a time in sorted order; a failed file
does not stop the remaining ones, and nothing already uploaded is rolled
back.  Uploading the same tree to the same destination twice produces the
same set of remote objects, so a failed publish is retried by re-running
the whole pipeline.

Concrete uploaders:

- ``s3://``       ``aws s3 cp`` per file
- ``gs://``       ``gcloud storage cp`` per file
- ``file://``     local copy (useful for NFS mounts and tests)
- ``http(s)://``  HTTP PUT per file, e.g. to presigned or WebDAV endpoints
"""

from __future__ import annotations

import mimetypes
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import unquote, urlsplit

import requests

from rkvbench.logging import get_logger

if TYPE_CHECKING:
    from rkvbench.collector import ArtifactTree

log = get_logger("publisher")

# Failure kinds.
KIND_NETWORK = "network"
KIND_PERMISSION = "permission"
KIND_ERROR = "error"

_PERMISSION_MARKERS = (
    "accessdenied",
    "access denied",
    "forbidden",
    "403",
    "permission",
    "unauthorized",
    "invalidaccesskeyid",
    "signaturedoesnotmatch",
    "unable to locate credentials",
)
_NETWORK_MARKERS = (
    "could not connect",
    "endpointconnectionerror",
    "connection reset",
    "connection refused",
    "timed out",
    "name or service not known",
    "temporary failure in name resolution",
)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TransferResult:
    """Outcome of one file transfer."""

    source: Path
    destination: str
    ok: bool
    kind: str = ""  # "", "network", "permission", "error"
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "source": str(self.source),
            "destination": self.destination,
            "ok": self.ok,
            "kind": self.kind,
            "detail": self.detail,
        }


@dataclass
class PublishResult:
    """Outcome of the publish stage."""

    destination_uri: str
    transferred: list[TransferResult] = field(default_factory=list)
    failed: list[TransferResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def total(self) -> int:
        return len(self.transferred) + len(self.failed)

    @property
    def reason(self) -> str:
        """Human-readable failure reason, or an empty string on success."""
        if not self.failed:
            return ""
        first = self.failed[0]
        if self.transferred:
            kind = "partial-copy error"
        elif first.kind == KIND_NETWORK:
            kind = "network error"
        elif first.kind == KIND_PERMISSION:
            kind = "permission error"
        else:
            kind = "upload error"
        return (
            f"{kind}: {len(self.failed)} of {self.total} file(s) failed, "
            f"first {first.destination}: {first.detail}"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "destination_uri": self.destination_uri,
            "ok": self.ok,
            "reason": self.reason,
            "transferred": [t.to_dict() for t in self.transferred],
            "failed": [t.to_dict() for t in self.failed],
        }


# ---------------------------------------------------------------------------
# Uploader interface
# ---------------------------------------------------------------------------


class Uploader(Protocol):
    """Copies one local file to one remote location."""

    def upload(self, local_path: Path, destination_uri: str) -> TransferResult: ...


def join_uri(base: str, relative: str) -> str:
    """Append a relative POSIX path to a destination URI.

    >>> join_uri("s3://bucket/reports/run1/", "criterion/report/index.html")
    's3://bucket/reports/run1/criterion/report/index.html'
    """
    return f"{base.rstrip('/')}/{relative.lstrip('/')}"


def publish(tree: ArtifactTree, destination_uri: str, uploader: Uploader) -> PublishResult:
    """Upload every file in *tree* below *destination_uri*.

    Args:
        tree: The collected artifact tree.
        destination_uri: ``<scheme>://<container>/<prefix>`` target.
        uploader: Performs the individual transfers.

    Returns:
        A PublishResult listing transferred and failed files.  The caller
        decides whether a non-ok result is fatal.
    """
    result = PublishResult(destination_uri=destination_uri)
    log.info("Publishing %d file(s) to %s", len(tree.files), destination_uri)

    for relative in tree.files:
        source = tree.root / relative
        destination = join_uri(destination_uri, relative)
        transfer = uploader.upload(source, destination)
        if transfer.ok:
            log.debug("Uploaded %s -> %s", relative, destination)
            result.transferred.append(transfer)
        else:
            log.warning("Upload failed for %s: %s", relative, transfer.detail)
            result.failed.append(transfer)

    if result.ok:
        log.info("Published %d file(s)", len(result.transferred))
    return result


# ---------------------------------------------------------------------------
# Concrete uploaders
# ---------------------------------------------------------------------------


def classify_failure(text: str) -> str:
    """Guess a failure kind from a client's error output."""
    lowered = text.lower()
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return KIND_PERMISSION
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return KIND_NETWORK
    return KIND_ERROR


class CliUploader:
    """Upload by running a cloud vendor's copy command once per file."""

    def __init__(self, argv_prefix: list[str], *, timeout: int | None = None) -> None:
        self.argv_prefix = list(argv_prefix)
        self.timeout = timeout

    def upload(self, local_path: Path, destination_uri: str) -> TransferResult:
        cmd = [*self.argv_prefix, str(local_path), destination_uri]
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_ERROR,
                detail=f"{self.argv_prefix[0]} not found in PATH",
            )
        except PermissionError as exc:
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_PERMISSION,
                detail=f"cannot run {self.argv_prefix[0]}: {exc}",
            )
        except OSError as exc:
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_ERROR,
                detail=f"cannot run {self.argv_prefix[0]}: {exc}",
            )
        except subprocess.TimeoutExpired:
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_NETWORK,
                detail=f"upload timed out after {self.timeout}s",
            )

        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip().splitlines()
            message = detail[-1] if detail else f"exit status {proc.returncode}"
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=classify_failure(proc.stderr or ""),
                detail=message,
            )
        return TransferResult(local_path, destination_uri, ok=True)


class LocalUploader:
    """Copy files to a ``file://`` destination."""

    def upload(self, local_path: Path, destination_uri: str) -> TransferResult:
        target = Path(unquote(urlsplit(destination_uri).path))
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, target)
        except PermissionError as exc:
            return TransferResult(
                local_path, destination_uri, ok=False, kind=KIND_PERMISSION, detail=str(exc)
            )
        except OSError as exc:
            return TransferResult(
                local_path, destination_uri, ok=False, kind=KIND_ERROR, detail=str(exc)
            )
        return TransferResult(local_path, destination_uri, ok=True)


class HttpUploader:
    """PUT each file to an ``http(s)://`` destination."""

    def __init__(self, *, timeout: float = 60.0, session: Any = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def upload(self, local_path: Path, destination_uri: str) -> TransferResult:
        content_type = mimetypes.guess_type(local_path.name)[0] or "application/octet-stream"
        try:
            with open(local_path, "rb") as fh:
                resp = self.session.put(
                    destination_uri,
                    data=fh,
                    timeout=self.timeout,
                    headers={"Content-Type": content_type},
                )
        except (requests.ConnectionError, requests.Timeout) as exc:
            return TransferResult(
                local_path, destination_uri, ok=False, kind=KIND_NETWORK, detail=str(exc)
            )
        except requests.RequestException as exc:
            return TransferResult(
                local_path, destination_uri, ok=False, kind=KIND_ERROR, detail=str(exc)
            )
        except OSError as exc:
            return TransferResult(
                local_path, destination_uri, ok=False, kind=KIND_ERROR, detail=str(exc)
            )

        if resp.status_code in (401, 403):
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_PERMISSION,
                detail=f"HTTP {resp.status_code}",
            )
        if resp.status_code >= 400:
            return TransferResult(
                local_path,
                destination_uri,
                ok=False,
                kind=KIND_ERROR,
                detail=f"HTTP {resp.status_code}",
            )
        return TransferResult(local_path, destination_uri, ok=True)


def uploader_for_uri(destination_uri: str, *, timeout: int | None = None) -> Uploader:
    """Pick an uploader for the destination's scheme.

    Raises:
        ValueError: If the scheme has no uploader.
    """
    scheme = urlsplit(destination_uri).scheme.lower()
    if scheme == "s3":
        return CliUploader(["aws", "s3", "cp", "--only-show-errors"], timeout=timeout)
    if scheme == "gs":
        return CliUploader(["gcloud", "storage", "cp"], timeout=timeout)
    if scheme == "file":
        return LocalUploader()
    if scheme in ("http", "https"):
        return HttpUploader(timeout=float(timeout) if timeout else 60.0)
    raise ValueError(f"No uploader for scheme {scheme!r}")
