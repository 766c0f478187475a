"""
Root Typer application for the clusterdeck CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from clusterdeck import __version__

app = Typer(
    name="clusterdeck",
    help="clusterdeck — build, stage and run jobs on a small compute cluster.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"clusterdeck {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """clusterdeck CLI — artifacts, staging, submissions, coordinator and workers."""


# ── Sub-command registration ─────────────────────────────────────────────

from clusterdeck.cli import artifacts, jobs  # noqa: E402
from clusterdeck.cli.coordinator import app as coordinator_app  # noqa: E402
from clusterdeck.cli.deploy import app as deploy_app  # noqa: E402
from clusterdeck.cli.worker import app as worker_app  # noqa: E402

app.command("build")(artifacts.build)
app.command("inspect")(artifacts.inspect)
app.command("stage")(artifacts.stage)
app.command("run")(jobs.run)
app.command("submit")(jobs.submit)
app.command("status")(jobs.status)
app.command("cancel")(jobs.cancel)

app.add_typer(coordinator_app, name="coordinator", help="Cluster coordinator server.")
app.add_typer(worker_app, name="worker", help="Worker process.")
app.add_typer(deploy_app, name="deploy", help="Deployment scaffolding.")
