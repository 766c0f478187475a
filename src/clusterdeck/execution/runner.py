"""TaskRunner — execute one assignment as a cancellable subprocess.

A worker hands every assignment to :meth:`TaskRunner.execute_task`, which
runs ``python <artifact> <args...>`` with the working directory set to the
submission's run directory on the shared volume.

The child's environment carries::

    CLUSTERDECK_SUBMISSION_ID   submission id
    CLUSTERDECK_SHARED_ROOT     logical root of the shared volume
    CLUSTERDECK_RUN_DIR         <root>/runs/<submission id>
    CLUSTERDECK_RESULT_FILE     where the artifact writes its output location
    CLUSTERDECK_ENTRY_POINT     the submitted entry point; the artifact runs it
                                instead of the one baked into its manifest
    CLUSTERDECK_DATABASE_URL    only when a database is configured

Exit codes of the generated artifact ``__main__`` map onto failure causes:

    0 → SUCCEEDED
    3 → FAILED / EntryPointNotResolvable
    4 → FAILED / ResourceExhausted      (also SIGKILL, the OOM killer's signal)
    * → FAILED / ExecutionFailure

Cancellation is cooperative on our side: the ``cancel_event`` is checked
between short waits on the child, and once set the child is terminated
(SIGTERM, then SIGKILL after ``terminate_grace`` seconds).
"""

from __future__ import annotations

import collections
import json
import os
import signal
import subprocess
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from clusterdeck.core.errors import PathResolutionError
from clusterdeck.core.logging import LogContext, get_logger
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.models import Assignment, FailureCause, TaskOutcome
from clusterdeck.execution.packaging import (
    ENTRY_POINT_ENV,
    EXIT_ENTRY_POINT,
    EXIT_OK,
    EXIT_RESOURCES,
    RESULT_FILE_ENV,
)

logger = get_logger(__name__)

LogSink = Callable[[str], None]

_TAIL_LINES = 20


class TaskRunner:
    """Runs artifacts from the shared volume in child processes."""

    def __init__(
        self,
        shared_root: str | Path,
        *,
        python: str = sys.executable,
        database_url: str | None = None,
        poll_interval: float = 0.2,
        terminate_grace: float = 5.0,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.volume = SharedVolume(shared_root)
        self.python = python
        self.database_url = database_url
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace
        self.extra_env = dict(extra_env or {})

    def execute_task(
        self,
        assignment: Assignment,
        cancel_event: threading.Event,
        log_sink: LogSink | None = None,
    ) -> TaskOutcome:
        """Run *assignment* to completion or cancellation and describe the outcome."""
        with LogContext(submission_id=assignment.submission_id):
            return self._execute(assignment, cancel_event, log_sink or (lambda line: None))

    # -- internals -----------------------------------------------------------

    def _execute(self, assignment: Assignment, cancel_event: threading.Event, sink: LogSink) -> TaskOutcome:
        try:
            artifact = self.volume.resolve(assignment.artifact_path)
        except PathResolutionError as exc:
            logger.warning("task.artifact_not_found", artifact=assignment.artifact_path, error=exc.message)
            return TaskOutcome.failure(FailureCause.ARTIFACT_NOT_FOUND, exc.message)
        if not artifact.is_file():
            logger.warning("task.artifact_not_found", artifact=str(artifact))
            return TaskOutcome.failure(
                FailureCause.ARTIFACT_NOT_FOUND, f"Artifact not found on shared volume: {artifact}"
            )

        if cancel_event.is_set():
            return TaskOutcome.failure(FailureCause.CANCELLED, "cancelled before start")

        run_dir = self.volume.run_dir(assignment.submission_id)
        result_file = run_dir / "result.json"
        result_file.unlink(missing_ok=True)

        command = [self.python, str(artifact), *assignment.args]
        logger.info("task.started", command=command, entry_point=assignment.entry_point, run_dir=str(run_dir))

        try:
            process = subprocess.Popen(
                command,
                cwd=run_dir,
                env=self._environment(assignment, run_dir, result_file),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            logger.error("task.spawn_failed", error=str(exc))
            return TaskOutcome.failure(FailureCause.EXECUTION_FAILURE, f"could not start task: {exc}")

        tail: collections.deque[str] = collections.deque(maxlen=_TAIL_LINES)
        reader = threading.Thread(
            target=self._pump,
            args=(process, sink, tail),
            name=f"task-output-{assignment.submission_id}",
            daemon=True,
        )
        reader.start()

        cancelled = False
        while process.poll() is None:
            if cancel_event.wait(self.poll_interval):
                cancelled = True
                self._terminate(process)
                break

        returncode = process.wait()
        reader.join(timeout=self.terminate_grace)

        if cancelled:
            logger.info("task.cancelled", returncode=returncode)
            return TaskOutcome.failure(FailureCause.CANCELLED, "cancelled by request")

        outcome = self._outcome(returncode, tail, result_file)
        logger.info(
            "task.finished",
            returncode=returncode,
            status=outcome.status.value,
            cause=outcome.cause.value if outcome.cause else None,
        )
        return outcome

    def _environment(self, assignment: Assignment, run_dir: Path, result_file: Path) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.extra_env)
        env["CLUSTERDECK_SUBMISSION_ID"] = assignment.submission_id
        env["CLUSTERDECK_SHARED_ROOT"] = str(self.volume.root)
        env["CLUSTERDECK_RUN_DIR"] = str(run_dir)
        env[RESULT_FILE_ENV] = str(result_file)
        env[ENTRY_POINT_ENV] = assignment.entry_point.strip()
        env["PYTHONUNBUFFERED"] = "1"
        if self.database_url:
            env["CLUSTERDECK_DATABASE_URL"] = self.database_url
        return env

    @staticmethod
    def _pump(process: subprocess.Popen, sink: LogSink, tail: collections.deque[str]) -> None:
        assert process.stdout is not None
        for raw in process.stdout:
            line = raw.rstrip("\n")
            tail.append(line)
            try:
                sink(line)
            except Exception:
                logger.exception("task.log_sink_failed")
        process.stdout.close()

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()

    @staticmethod
    def _outcome(returncode: int, tail: collections.deque[str], result_file: Path) -> TaskOutcome:
        if returncode == EXIT_OK:
            return TaskOutcome.success(_read_output_location(result_file))

        detail = "\n".join(tail) or f"exit code {returncode}"
        if returncode == EXIT_ENTRY_POINT:
            return TaskOutcome.failure(FailureCause.ENTRY_POINT_NOT_RESOLVABLE, detail)
        if returncode == EXIT_RESOURCES or returncode == -signal.SIGKILL:
            return TaskOutcome.failure(FailureCause.RESOURCE_EXHAUSTED, detail)
        return TaskOutcome.failure(FailureCause.EXECUTION_FAILURE, detail)


def _read_output_location(result_file: Path) -> str | None:
    try:
        data = json.loads(result_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("task.result_unreadable", path=str(result_file), error=str(exc))
        return None
    location = data.get("output_location") if isinstance(data, dict) else None
    return str(location) if location else None


def execute_task(
    assignment: Assignment,
    cancel_event: threading.Event,
    *,
    shared_root: str | Path,
    log_sink: LogSink | None = None,
    database_url: str | None = None,
) -> TaskOutcome:
    """Run one assignment with a throwaway :class:`TaskRunner`."""
    runner = TaskRunner(shared_root, database_url=database_url)
    return runner.execute_task(assignment, cancel_event, log_sink)


__all__ = ["TaskRunner", "execute_task", "LogSink"]
