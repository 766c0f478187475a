"""
CLI: ``clusterdeck coordinator`` — run the Cluster Coordinator server.
"""

from __future__ import annotations

from pathlib import Path

import typer

from clusterdeck.cli.utils import console, load_settings, setup_logging

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address"),  # noqa: UP007
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),  # noqa: UP007
    root: Path | None = typer.Option(None, "--root", "-r", help="Shared volume mount"),  # noqa: UP007
    liveness_timeout: float | None = typer.Option(None, "--liveness-timeout"),  # noqa: UP007
    scheduling_timeout: float | None = typer.Option(None, "--scheduling-timeout", help="0 waits forever"),  # noqa: UP007
    log_level: str | None = typer.Option(None, "--log-level"),  # noqa: UP007
) -> None:
    """Start the coordinator API and its scheduling loop.

    Example::

        clusterdeck coordinator start --port 7077 --root /data
    """
    import uvicorn

    from clusterdeck.api.app import create_app

    settings = load_settings(
        host=host,
        port=port,
        shared_root=root,
        liveness_timeout=liveness_timeout,
        scheduling_timeout=scheduling_timeout,
        log_level=log_level,
    )
    setup_logging(settings, "coordinator")

    console.print(
        f"[bold green]Starting clusterdeck coordinator[/bold green] on {settings.host}:{settings.port} "
        f"(shared root {settings.shared_root})"
    )
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
