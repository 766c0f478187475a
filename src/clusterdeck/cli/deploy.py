"""
CLI: ``clusterdeck deploy`` — deployment scaffolding.

Usage::

    clusterdeck deploy compose --workers 3 -o docker-compose.yml
    clusterdeck deploy compose --volume /srv/clusterdeck --database
"""

from __future__ import annotations

from pathlib import Path

import typer

from clusterdeck.cli.utils import console
from clusterdeck.deploy.compose import generate_cluster_compose, write_compose_file

app = typer.Typer(no_args_is_help=True)


@app.command("compose")
def compose(
    workers: int = typer.Option(2, "--workers", "-w", min=0, help="Number of worker services"),
    volume: str = typer.Option("clusterdeck-data", "--volume", help="Named volume or host path"),
    shared_root: str = typer.Option("/data", "--shared-root", help="Mount point in every container"),
    image: str = typer.Option("clusterdeck:latest", "--image"),
    database: bool = typer.Option(False, "--database", help="Add a PostgreSQL service"),
    port: int = typer.Option(7077, "--port", "-p"),
    cores: int = typer.Option(2, "--cores", min=1, help="Cores per worker"),
    memory_mb: int = typer.Option(2048, "--memory-mb", min=1, help="Memory per worker (MB)"),
    out: Path | None = typer.Option(None, "--out", "-o", help="Write to file instead of stdout"),  # noqa: UP007
) -> None:
    """Generate a docker-compose file for a coordinator and its workers."""
    content = generate_cluster_compose(
        workers,
        volume_source=volume,
        shared_root=shared_root,
        image=image,
        database=database,
        port=port,
        worker_cores=cores,
        worker_memory_mb=memory_mb,
    )
    if out is None:
        typer.echo(content)
        return
    path = write_compose_file(content, out)
    console.print(f"[bold green]Wrote[/bold green] {path}")
