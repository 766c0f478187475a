"""Deployment Stager — copy an artifact and its datasets onto the shared volume.

Each entry is copied into a scratch sibling on the volume and then swapped
into place, so a reader never observes a half-copied file.  Datasets are
last-write-wins: re-staging the same inputs leaves exactly the second
call's contents.  Artifacts are named by content, so restaging identical
bytes lands on the same path and a different artifact with the same file name lands
beside the first instead of replacing code a queued submission still
points at.

Placement::

    artifact                        → <root>/artifacts/<stem>-<sha256[:12]><suffix>
    dataset under source_root       → <root>/<path relative to source_root>
    dataset outside source_root     → <root>/datasets/<basename>

Transient I/O errors (``OSError``) are retried with exponential backoff and
then surfaced as :class:`~clusterdeck.core.errors.StagingError`.  A missing
source is not transient and fails immediately.

Usage::

    from clusterdeck.deploy.staging import stage

    staged = stage("dist/wordcount.pyz", ["in"], "/data", source_root=".")
    staged.artifact_path       # /data/artifacts/wordcount-3f2a9c1e07bd.pyz
    staged.datasets["in"]      # /data/in
"""

from __future__ import annotations

import hashlib
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from clusterdeck.core.errors import ClusterError, PathResolutionError, StagingError
from clusterdeck.core.logging import get_logger
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.retry import ExponentialBackoff, RetryStrategy, retry_call

logger = get_logger(__name__)


@dataclass
class StagedDeployment:
    """Where staged inputs landed on the shared volume."""

    root: Path
    artifact_path: Path
    datasets: dict[str, Path] = field(default_factory=dict)
    volume_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "artifact_path": str(self.artifact_path),
            "datasets": {src: str(dst) for src, dst in self.datasets.items()},
            "volume_id": self.volume_id,
        }


def _default_strategy() -> RetryStrategy:
    return ExponentialBackoff(max_retries=3, base_delay=0.2, max_delay=5.0, retryable_errors=(OSError,))


def dataset_destination(dataset: str | Path, volume: SharedVolume, source_root: str | Path | None = None) -> Path:
    """Where *dataset* is placed on *volume*."""
    source = Path(dataset).absolute()
    base = Path(source_root).absolute() if source_root is not None else Path.cwd()
    try:
        relative = source.relative_to(base)
    except ValueError:
        relative = None
    if relative is None or not relative.parts:
        return volume.datasets_dir / source.name
    return volume.resolve(relative)


def artifact_destination(artifact: str | Path, volume: SharedVolume) -> Path:
    """Content-addressed place of *artifact* under the volume's artifacts directory."""
    source = Path(artifact)
    digest = hashlib.sha256()
    with source.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 16), b""):
            digest.update(chunk)
    return volume.artifacts_dir / f"{source.stem}-{digest.hexdigest()[:12]}{source.suffix}"


def _copy_into_place(source: Path, target: Path, volume: SharedVolume) -> None:
    scratch = volume.scratch(target)
    try:
        if source.is_dir():
            shutil.copytree(source, scratch)
        else:
            scratch.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, scratch)
        volume.publish(scratch, target)
    finally:
        if scratch.is_dir():
            shutil.rmtree(scratch, ignore_errors=True)
        elif scratch.exists():
            os.unlink(scratch)


def stage(
    artifact_path: str | Path,
    dataset_paths: Sequence[str | Path],
    destination_root: str | Path,
    *,
    source_root: str | Path | None = None,
    strategy: RetryStrategy | None = None,
) -> StagedDeployment:
    """Copy an artifact and datasets onto the shared volume at *destination_root*.

    Raises:
        StagingError: Destination not writable, a source missing, or I/O
            kept failing after retries.
    """
    volume = SharedVolume(destination_root)
    volume_id = volume.ensure()
    strategy = strategy or _default_strategy()

    artifact = Path(artifact_path)
    if not artifact.is_file():
        raise StagingError(f"Staging source not found: {artifact}").with_context(path=str(artifact_path))
    try:
        artifact_target = artifact_destination(artifact, volume)
    except OSError as exc:
        raise StagingError(f"Cannot read artifact {artifact}: {exc}", cause=exc).with_context(
            path=str(artifact_path)
        ) from exc
    plan: list[tuple[str, Path, Path]] = [(str(artifact_path), artifact, artifact_target)]
    for dataset in dataset_paths:
        try:
            destination = dataset_destination(dataset, volume, source_root)
        except PathResolutionError as exc:
            raise StagingError(exc.message, cause=exc).with_context(path=str(dataset)) from exc
        plan.append((str(dataset), Path(dataset), destination))

    for label, source, _ in plan:
        if not source.exists():
            raise StagingError(f"Staging source not found: {source}").with_context(path=label)

    staged = StagedDeployment(root=volume.root, artifact_path=plan[0][2], volume_id=volume_id)
    for label, source, destination in plan:

        def _on_retry(attempt: int, error: Exception, delay: float, _label: str = label) -> None:
            logger.warning("staging.retry", source=_label, attempt=attempt, delay=round(delay, 2), error=str(error))

        try:
            retry_call(_copy_into_place, source, destination, volume, strategy=strategy, on_retry=_on_retry)
        except ClusterError:
            raise
        except OSError as exc:
            raise StagingError(f"Failed to stage {label} to {destination}: {exc}", cause=exc).with_context(
                path=str(destination)
            ) from exc

        if source is not artifact:
            staged.datasets[label] = destination
        logger.info("staging.copied", source=label, destination=str(destination))

    return staged


__all__ = ["StagedDeployment", "stage", "dataset_destination", "artifact_destination"]
