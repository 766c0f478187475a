"""SharedVolume — the one filesystem every clusterdeck process agrees on.

Every process (submission client, coordinator, each worker) is configured
with the same logical root, e.g. ``/data``.  Artifacts, datasets and task
outputs are referenced by absolute paths under that root, so a path written
by the client resolves to the same bytes inside every worker container.

Path identity is enforced two ways:

- :meth:`SharedVolume.resolve` rejects references outside the root.
- :meth:`SharedVolume.ensure` writes a ``.volume-id`` marker; processes
  compare ids, and a worker whose id differs from the coordinator's is
  refused registration (:class:`~clusterdeck.core.errors.VolumeMismatchError`).

Layout::

    <root>/
        .volume-id
        artifacts/      staged Job Artifacts
        datasets/       staged Dataset References
        runs/<sid>/     per-submission output directories

Concurrent writers to the same dataset path are last-write-wins.  Callers
that need an atomic multi-file output write into a scratch directory and
:meth:`SharedVolume.publish` it.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

from clusterdeck.core.errors import PathResolutionError, StagingError, VolumeMismatchError
from clusterdeck.core.logging import get_logger

logger = get_logger(__name__)

VOLUME_ID_FILE = ".volume-id"
ARTIFACTS_DIR = "artifacts"
DATASETS_DIR = "datasets"
RUNS_DIR = "runs"


class SharedVolume:
    """A shared data volume rooted at one logical path."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"SharedVolume({str(self.root)!r})"

    # -- layout ------------------------------------------------------------

    @property
    def artifacts_dir(self) -> Path:
        return self.root / ARTIFACTS_DIR

    @property
    def datasets_dir(self) -> Path:
        return self.root / DATASETS_DIR

    @property
    def runs_dir(self) -> Path:
        return self.root / RUNS_DIR

    def ensure(self) -> str:
        """Create the layout and identity marker if missing; return the volume id.

        Raises:
            StagingError: If the root cannot be created or written.
        """
        try:
            for directory in (self.root, self.artifacts_dir, self.datasets_dir, self.runs_dir):
                directory.mkdir(parents=True, exist_ok=True)
            marker = self.root / VOLUME_ID_FILE
            if not marker.exists():
                volume_id = uuid.uuid4().hex
                tmp = marker.with_name(f"{VOLUME_ID_FILE}.{volume_id}.tmp")
                tmp.write_text(volume_id, encoding="utf-8")
                # Two processes racing here both write; the first rename wins.
                if marker.exists():
                    tmp.unlink()
                else:
                    os.replace(tmp, marker)
                    logger.info("volume.initialized", root=str(self.root), volume_id=volume_id)
        except OSError as exc:
            raise StagingError(f"Shared volume root is not writable: {self.root}", cause=exc).with_context(
                path=str(self.root)
            ) from exc
        return self.read_volume_id() or ""

    def read_volume_id(self) -> str | None:
        """The volume id marker, or ``None`` when the root has not been initialised."""
        marker = self.root / VOLUME_ID_FILE
        try:
            return marker.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    @property
    def volume_id(self) -> str | None:
        return self.read_volume_id()

    def verify(self, expected: str | None) -> None:
        """Raise :class:`VolumeMismatchError` when this volume's id differs from *expected*."""
        actual = self.read_volume_id()
        if expected and actual and expected != actual:
            raise VolumeMismatchError(expected, actual).with_context(path=str(self.root))

    # -- references --------------------------------------------------------

    def resolve(self, reference: str | Path) -> Path:
        """Resolve a dataset/artifact reference inside the volume.

        Absolute references must already lie under the root; relative ones
        are taken relative to it.

        Raises:
            PathResolutionError: If the reference escapes the root.
        """
        ref = Path(reference)
        candidate = ref if ref.is_absolute() else self.root / ref
        normalized = Path(os.path.normpath(candidate))
        root = Path(os.path.normpath(self.root))
        if normalized != root and root not in normalized.parents:
            raise PathResolutionError(
                f"{reference} does not resolve inside shared root {self.root}"
            ).with_context(path=str(reference))
        return normalized

    def contains(self, reference: str | Path) -> bool:
        try:
            self.resolve(reference)
        except PathResolutionError:
            return False
        return True

    def run_dir(self, submission_id: str, *, create: bool = True) -> Path:
        """Per-submission output directory, unique for every submission id."""
        if not submission_id or "/" in submission_id or submission_id in {".", ".."}:
            raise PathResolutionError(f"Invalid submission id for a run directory: {submission_id!r}")
        path = self.runs_dir / submission_id
        if create:
            path.mkdir(parents=True, exist_ok=True)
        return path

    def scratch(self, final: str | Path) -> Path:
        """A scratch sibling of *final* to write into before :meth:`publish`."""
        target = self.resolve(final)
        return target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")

    def publish(self, scratch: str | Path, final: str | Path) -> Path:
        """Atomically move *scratch* into place as *final*.

        An existing *final* is replaced (last writer wins), also when one is
        a file and the other a directory.  Both paths must be on the shared
        volume so the move is a rename.
        """
        source = self.resolve(scratch)
        target = self.resolve(final)
        target.parent.mkdir(parents=True, exist_ok=True)
        target_is_dir = target.is_dir() and not target.is_symlink()
        # rename() cannot put a directory over a file.
        if target_is_dir or (source.is_dir() and (target.exists() or target.is_symlink())):
            retired = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.old")
            os.replace(target, retired)
            os.replace(source, target)
            if target_is_dir:
                shutil.rmtree(retired, ignore_errors=True)
            else:
                retired.unlink()
        else:
            os.replace(source, target)
        logger.debug("volume.published", path=str(target))
        return target


__all__ = [
    "SharedVolume",
    "VOLUME_ID_FILE",
    "ARTIFACTS_DIR",
    "DATASETS_DIR",
    "RUNS_DIR",
]
