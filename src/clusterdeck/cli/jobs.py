"""
CLI: ``clusterdeck run | submit | status | cancel`` — job submission commands.

``run`` drives the whole pipeline (build → stage → submit → wait) and exits
with the submission's outcome::

    0 SUCCEEDED   1 FAILED   2 LOST   3 CANCELLED   4 Timeout
    5 build / staging / submission error

Usage::

    clusterdeck run lesson.job:main ./lesson -d in/ --root /data -a /data/in -a /data/out
    clusterdeck submit /data/artifacts/lesson.pyz lesson.job:main --wait
    clusterdeck status sub-00001-1a2b3c4d
    clusterdeck cancel sub-00001-1a2b3c4d
"""

from __future__ import annotations

from pathlib import Path

import typer

from clusterdeck.cli.utils import console, err_console, fail, load_settings, output, setup_logging
from clusterdeck.core.errors import ClusterError
from clusterdeck.deploy.client import EXIT_PRE_SUBMISSION, RunReport, SubmissionClient
from clusterdeck.execution.models import Capacity, DeployMode, SubmissionRequest, SubmissionStatus
from clusterdeck.execution.transport import CoordinatorClient

_STATUS_STYLE = {
    SubmissionStatus.SUCCEEDED: "bold green",
    SubmissionStatus.FAILED: "bold red",
    SubmissionStatus.LOST: "bold magenta",
    SubmissionStatus.CANCELLED: "yellow",
}

_SUBMISSION_COLUMNS = ["submission_id", "name", "status", "worker_id", "cause", "updated_at"]
_WORKER_COLUMNS = ["worker_id", "state", "hostname", "capacity", "used", "silence_s"]


def _print_status(status: SubmissionStatus) -> None:
    style = _STATUS_STYLE.get(status, "cyan")
    console.print(f"[{style}]{status.value}[/{style}]")


def _print_log(line: str) -> None:
    console.print(line, markup=False, highlight=False)


def _quiet(_: object) -> None:
    return None


def _finish(report: RunReport, *, as_json: bool) -> None:
    if as_json:
        output(report, as_json=True)
    else:
        outcome = report.outcome
        style = "bold red" if report.timed_out else _STATUS_STYLE.get(report.status, "cyan")
        console.print(f"\n[{style}]{outcome}[/{style}]  {report.submission_id}  ({report.elapsed_s:.1f}s)")
        if report.cause or report.error:
            console.print(f"  [cyan]cause[/cyan]: {report.cause}  {report.error or ''}")
        if report.output_location:
            console.print(f"  [cyan]output[/cyan]: {report.output_location}")
    raise typer.Exit(code=report.exit_code)


def run(
    entry_point: str = typer.Argument(..., help="package.module:function or package.module"),
    sources: list[Path] = typer.Argument(..., help="Source files and directories to bundle"),
    data: list[Path] = typer.Option([], "--data", "-d", help="Dataset to stage. Repeatable."),
    arg: list[str] = typer.Option([], "--arg", "-a", help="Positional argument for the entry point. Repeatable."),
    deploy_mode: DeployMode = typer.Option(DeployMode.CLIENT, "--deploy-mode", "-m"),
    supervise: bool = typer.Option(False, "--supervise", help="Cluster mode only."),
    cores: int = typer.Option(1, "--cores", min=1),
    memory_mb: int = typer.Option(512, "--memory-mb", min=1),
    name: str | None = typer.Option(None, "--name"),  # noqa: UP007
    coordinator: str | None = typer.Option(None, "--coordinator", "-c", help="Coordinator URL"),  # noqa: UP007
    root: Path | None = typer.Option(None, "--root", "-r", help="Shared volume mount"),  # noqa: UP007
    source_root: Path | None = typer.Option(None, "--source-root"),  # noqa: UP007
    poll_timeout: float | None = typer.Option(None, "--poll-timeout", help="Seconds before reporting Timeout"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Print the final report as JSON."),
) -> None:
    """Build, stage and submit a job, then wait for its terminal status."""
    settings = load_settings(coordinator_url=coordinator, shared_root=root, poll_timeout=poll_timeout)
    setup_logging(settings, "client")

    client = SubmissionClient.from_settings(
        settings,
        on_status=_quiet if as_json else _print_status,
        on_log=_quiet if as_json else _print_log,
    )
    try:
        report = client.run(
            entry_point,
            sources,
            data,
            args=arg,
            deploy_mode=deploy_mode,
            supervise=supervise,
            resources=Capacity(cores=cores, memory_mb=memory_mb),
            name=name,
            source_root=source_root,
        )
    except ClusterError as exc:
        raise fail(exc, code=EXIT_PRE_SUBMISSION) from exc
    finally:
        client.coordinator.close()
    _finish(report, as_json=as_json)


def submit(
    artifact: Path = typer.Argument(..., help="Artifact already staged on the shared volume"),
    entry_point: str = typer.Argument(..., help="package.module:function or package.module"),
    args: list[str] = typer.Argument(None, help="Positional arguments for the entry point"),
    deploy_mode: DeployMode = typer.Option(DeployMode.CLUSTER, "--deploy-mode", "-m"),
    supervise: bool = typer.Option(False, "--supervise"),
    cores: int = typer.Option(1, "--cores", min=1),
    memory_mb: int = typer.Option(512, "--memory-mb", min=1),
    name: str | None = typer.Option(None, "--name"),  # noqa: UP007
    wait: bool = typer.Option(False, "--wait", "-w", help="Poll until terminal and exit with its code."),
    coordinator: str | None = typer.Option(None, "--coordinator", "-c"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Submit an already-staged artifact."""
    settings = load_settings(coordinator_url=coordinator)
    setup_logging(settings, "client")
    with CoordinatorClient.from_settings(settings) as api:
        try:
            submission_id = api.submit(
                SubmissionRequest(
                    artifact_path=str(artifact.absolute()),
                    entry_point=entry_point,
                    args=tuple(args or ()),
                    deploy_mode=deploy_mode,
                    supervise=supervise,
                    resources=Capacity(cores=cores, memory_mb=memory_mb),
                    name=name or artifact.stem,
                )
            )
        except ClusterError as exc:
            raise fail(exc, code=EXIT_PRE_SUBMISSION) from exc

        if not wait:
            if as_json:
                output({"submission_id": submission_id}, as_json=True)
            else:
                console.print(f"[bold green]Submitted[/bold green] {submission_id}")
            return

        client = SubmissionClient(
            api,
            settings.shared_root,
            poll_interval=settings.poll_interval,
            poll_timeout=settings.poll_timeout,
            on_status=_quiet if as_json else _print_status,
            on_log=_quiet if as_json else _print_log,
        )
        report = client.wait(submission_id, deploy_mode=deploy_mode)
    _finish(report, as_json=as_json)


def status(
    submission_id: str | None = typer.Argument(None, help="Submission to show; omit for a cluster overview"),  # noqa: UP007
    coordinator: str | None = typer.Option(None, "--coordinator", "-c"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show one submission, or every worker and submission."""
    settings = load_settings(coordinator_url=coordinator)
    with CoordinatorClient.from_settings(settings) as api:
        try:
            if submission_id:
                output(api.get(submission_id), as_json=as_json, title=submission_id)
                return
            snapshot = api.snapshot()
        except ClusterError as exc:
            raise fail(exc) from exc

    if as_json:
        output(snapshot, as_json=True)
        return
    counts = "  ".join(f"{k}={v}" for k, v in snapshot["counts"].items() if v)
    console.print(f"[bold]volume[/bold] {snapshot['volume_id']}  {counts}")
    output(snapshot["workers"], title="Workers", columns=_WORKER_COLUMNS)
    output(snapshot["submissions"], title="Submissions", columns=_SUBMISSION_COLUMNS)


def cancel(
    submission_id: str = typer.Argument(..., help="Submission to cancel"),
    coordinator: str | None = typer.Option(None, "--coordinator", "-c"),  # noqa: UP007
) -> None:
    """Cancel a submission (a running one is aborted by its worker)."""
    settings = load_settings(coordinator_url=coordinator)
    with CoordinatorClient.from_settings(settings) as api:
        try:
            record = api.cancel(submission_id)
        except ClusterError as exc:
            raise fail(exc) from exc

    if record["status"] == SubmissionStatus.CANCELLED.value:
        console.print(f"[yellow]CANCELLED[/yellow] {submission_id}")
    else:
        err_console.print(f"[yellow]Cancel requested[/yellow] {submission_id} ({record['status']})")
