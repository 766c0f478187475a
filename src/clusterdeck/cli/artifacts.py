"""
CLI: ``clusterdeck build | inspect | stage`` — artifact and staging commands.

Usage::

    clusterdeck build lesson.job:main ./lesson -o dist/lesson.pyz
    clusterdeck inspect dist/lesson.pyz
    clusterdeck stage dist/lesson.pyz in/ --root /data
"""

from __future__ import annotations

from pathlib import Path

import typer

from clusterdeck.cli.utils import console, fail, output
from clusterdeck.core.errors import ClusterError
from clusterdeck.deploy.staging import stage as stage_files
from clusterdeck.execution.packaging import ArtifactBuilder


def build(
    entry_point: str = typer.Argument(..., help="package.module:function or package.module (uses main)"),
    sources: list[Path] = typer.Argument(..., help="Source files and directories to bundle"),
    out: Path = typer.Option(Path("dist/job.pyz"), "--out", "-o", help="Artifact path (.pyz)"),
    arg: list[str] = typer.Option([], "--arg", "-a", help="Default positional argument. Repeatable."),
    name: str | None = typer.Option(None, "--name", help="Artifact name (default: output stem)"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Print the manifest as JSON."),
) -> None:
    """Package driving logic into a self-contained artifact."""
    try:
        path, manifest = ArtifactBuilder().build(entry_point, sources, out, args=arg, name=name)
    except ClusterError as exc:
        raise fail(exc) from exc

    if as_json:
        output(manifest, as_json=True)
        return
    console.print(f"[bold green]Built[/bold green] {path}")
    console.print(f"  [cyan]entry_point[/cyan]: {manifest.entry_point}")
    console.print(f"  [cyan]modules[/cyan]: {', '.join(manifest.modules)}")


def inspect(
    artifact: Path = typer.Argument(..., help="Artifact to inspect"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the manifest of a built artifact."""
    try:
        manifest = ArtifactBuilder().inspect(artifact)
    except ClusterError as exc:
        raise fail(exc) from exc
    output(manifest, as_json=as_json, title=str(artifact))


def stage(
    artifact: Path = typer.Argument(..., help="Built artifact"),
    datasets: list[Path] = typer.Argument(None, help="Dataset files or directories"),
    root: Path = typer.Option(..., "--root", "-r", envvar="CLUSTERDECK_SHARED_ROOT", help="Shared volume mount"),
    source_root: Path | None = typer.Option(  # noqa: UP007
        None, "--source-root", help="Datasets under this dir keep their relative path (default: cwd)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Copy an artifact and datasets onto the shared volume."""
    try:
        staged = stage_files(artifact, datasets or [], root, source_root=source_root)
    except ClusterError as exc:
        raise fail(exc) from exc
    output(staged, as_json=as_json, title="Staged")
