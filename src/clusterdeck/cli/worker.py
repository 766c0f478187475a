"""
CLI: ``clusterdeck worker`` — run a worker that executes coordinator assignments.
"""

from __future__ import annotations

from pathlib import Path

import typer

from clusterdeck.cli.utils import console, fail, load_settings, setup_logging
from clusterdeck.core.errors import VolumeMismatchError

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    coordinator: str | None = typer.Option(None, "--coordinator", "-c", help="Coordinator URL"),  # noqa: UP007
    root: Path | None = typer.Option(None, "--root", "-r", help="Shared volume mount"),  # noqa: UP007
    cores: int | None = typer.Option(None, "--cores", min=1, help="Cores offered"),  # noqa: UP007
    memory_mb: int | None = typer.Option(None, "--memory-mb", min=1, help="Memory offered (MB)"),  # noqa: UP007
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),  # noqa: UP007
    heartbeat_interval: float | None = typer.Option(None, "--heartbeat-interval"),  # noqa: UP007
    log_level: str | None = typer.Option(None, "--log-level"),  # noqa: UP007
) -> None:
    """Register with the coordinator and run assigned tasks until SIGINT/SIGTERM.

    Example::

        clusterdeck worker start --cores 4 --memory-mb 8192
        clusterdeck worker start --coordinator http://master:7077 --root /data
    """
    from clusterdeck.execution.worker import WorkerAgent

    settings = load_settings(
        coordinator_url=coordinator,
        shared_root=root,
        worker_cores=cores,
        worker_memory_mb=memory_mb,
        heartbeat_interval=heartbeat_interval,
        log_level=log_level,
    )
    setup_logging(settings, "worker")

    agent = WorkerAgent.from_settings(settings, worker_id=worker_id)
    console.print(
        f"[bold green]Starting clusterdeck worker[/bold green] {agent.worker_id} "
        f"(cores={agent.capacity.cores}, memory={agent.capacity.memory_mb}MB, coordinator={settings.coordinator_url})"
    )
    try:
        agent.start()
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped by user[/yellow]")
    except VolumeMismatchError as exc:
        raise fail(exc) from exc
