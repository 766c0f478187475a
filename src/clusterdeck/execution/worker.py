"""Worker agent — registers with the coordinator, heartbeats, runs assignments.

The WorkerAgent is the worker-pool half of the pull protocol:

1. ``register`` announces the worker's id, capacity and shared volume id.
2. Every ``heartbeat_interval`` seconds ``beat()`` sends a heartbeat.  The
   reply carries newly scheduled assignments and cancel requests.
3. Each assignment is acknowledged (SCHEDULED → RUNNING) and executed by a
   :class:`~clusterdeck.execution.runner.TaskRunner` in a thread pool sized
   to the worker's cores.  Task output is shipped to the coordinator in
   batches; the terminal outcome is reported at the end.  Every heartbeat
   lists the submissions the worker holds so the coordinator can re-deliver
   assignments whose reply was lost and declare LOST work the worker dropped.
4. On shutdown (SIGINT/SIGTERM) running tasks are cancelled and reported,
   then the worker deregisters.

Transient transport errors are logged and retried on the next beat.  A 404
on heartbeat means the coordinator forgot the worker (restart or liveness
timeout), so it registers again.

Usage (programmatic)::

    from clusterdeck.execution.worker import WorkerAgent

    agent = WorkerAgent.from_settings(get_settings())
    agent.start()  # blocks until SIGINT or SIGTERM

Usage (CLI)::

    clusterdeck worker start --cores 4 --memory-mb 8192
"""

from __future__ import annotations

import os
import platform
import signal
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from clusterdeck.core.errors import (
    ClusterError,
    InvalidTransitionError,
    NotFoundError,
    TransportError,
    VolumeMismatchError,
)
from clusterdeck.core.logging import LogContext, get_logger
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.models import (
    Assignment,
    Capacity,
    FailureCause,
    TaskOutcome,
    utcnow,
)
from clusterdeck.execution.runner import TaskRunner
from clusterdeck.execution.transport import CoordinatorClient

logger = get_logger(__name__)


@dataclass
class WorkerStats:
    """Aggregate statistics for a worker."""

    total_received: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_cancelled: int = 0
    total_withdrawn: int = 0
    heartbeats: int = 0
    heartbeat_failures: int = 0
    registrations: int = 0
    last_heartbeat_at: datetime | None = None
    active_tasks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_received": self.total_received,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "total_cancelled": self.total_cancelled,
            "total_withdrawn": self.total_withdrawn,
            "heartbeats": self.heartbeats,
            "heartbeat_failures": self.heartbeat_failures,
            "registrations": self.registrations,
            "last_heartbeat_at": self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            "active_tasks": self.active_tasks,
        }


class _LogShipper:
    """Buffers task output lines and ships them to the coordinator in batches."""

    def __init__(self, client: CoordinatorClient, submission_id: str, *, batch_size: int = 50, max_delay: float = 1.0):
        self._client = client
        self._submission_id = submission_id
        self._batch_size = batch_size
        self._max_delay = max_delay
        self._buffer: list[str] = []
        self._lock = threading.Lock()
        self._last_flush = time.monotonic()

    def write(self, line: str) -> None:
        with self._lock:
            self._buffer.append(line)
            due = len(self._buffer) >= self._batch_size or time.monotonic() - self._last_flush >= self._max_delay
        if due:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            lines, self._buffer = self._buffer, []
            self._last_flush = time.monotonic()
        if not lines:
            return
        try:
            self._client.append_logs(self._submission_id, lines)
        except ClusterError as exc:
            logger.warning("task.logs_dropped", submission_id=self._submission_id, lines=len(lines), error=exc.message)


class WorkerAgent:
    """Registers with the coordinator and executes the assignments it hands out."""

    def __init__(
        self,
        client: CoordinatorClient,
        runner: TaskRunner,
        *,
        worker_id: str | None = None,
        capacity: Capacity | None = None,
        heartbeat_interval: float = 5.0,
        hostname: str | None = None,
        volume_id: str | None = None,
    ) -> None:
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.capacity = capacity or Capacity(cores=2, memory_mb=2048)
        self.heartbeat_interval = heartbeat_interval
        self.hostname = hostname if hostname is not None else platform.node()
        self.volume_id = volume_id
        self._client = client
        self._runner = runner

        self._shutdown = threading.Event()
        self._registered = False
        self._stats = WorkerStats()
        self._started_at = utcnow()
        self._pool = ThreadPoolExecutor(max_workers=self.capacity.cores, thread_name_prefix=self.worker_id)
        self._active: dict[str, tuple[threading.Event, Future]] = {}
        self._unacked: dict[str, Assignment] = {}
        self._active_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        client: CoordinatorClient | None = None,
        worker_id: str | None = None,
        capacity: Capacity | None = None,
    ) -> WorkerAgent:
        return cls(
            client or CoordinatorClient.from_settings(settings),
            TaskRunner(settings.shared_root, database_url=settings.database_url),
            worker_id=worker_id,
            capacity=capacity or Capacity(cores=settings.worker_cores, memory_mb=settings.worker_memory_mb),
            heartbeat_interval=settings.heartbeat_interval,
            volume_id=SharedVolume(settings.shared_root).read_volume_id(),
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Run the heartbeat loop (blocking) until :meth:`stop` or SIGINT/SIGTERM."""
        logger.info(
            "worker.starting",
            worker_id=self.worker_id,
            cores=self.capacity.cores,
            memory_mb=self.capacity.memory_mb,
            heartbeat_interval=self.heartbeat_interval,
        )
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            pass  # not in main thread

        try:
            while not self._shutdown.is_set():
                try:
                    self.beat()
                except VolumeMismatchError as exc:
                    logger.error("worker.volume_mismatch", worker_id=self.worker_id, error=exc.message)
                    raise
                except Exception:
                    logger.exception("worker.beat_failed", worker_id=self.worker_id)
                self._shutdown.wait(self.heartbeat_interval)
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread. Returns the thread."""
        t = threading.Thread(target=self.start, name=f"{self.worker_id}-loop", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        """Request graceful shutdown."""
        logger.info("worker.stopping", worker_id=self.worker_id)
        self._shutdown.set()

    def get_stats(self) -> WorkerStats:
        with self._active_lock:
            self._stats.active_tasks = len(self._active)
        return self._stats

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is running. Returns ``False`` on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._active_lock:
                futures = [f for _, f in self._active.values()]
            if not futures:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            try:
                futures[0].exception(timeout=remaining)
            except FutureTimeout:
                return False

    # ------------------------------------------------------------------ #
    # Protocol
    # ------------------------------------------------------------------ #

    def register(self) -> None:
        self._client.register_worker(
            self.worker_id,
            self.capacity,
            hostname=self.hostname,
            volume_id=self.volume_id,
        )
        self._registered = True
        self._stats.registrations += 1
        logger.info("worker.registered", worker_id=self.worker_id)

    def beat(self) -> None:
        """One heartbeat: (re-)register if needed, start assignments, forward cancels."""
        try:
            if not self._registered:
                self.register()
            reply = self._client.heartbeat(self.worker_id, utcnow(), active=self._held())
        except NotFoundError:
            logger.warning("worker.unknown_to_coordinator", worker_id=self.worker_id)
            self._registered = False
            self._stats.heartbeat_failures += 1
            return
        except TransportError as exc:
            logger.warning("worker.heartbeat_failed", worker_id=self.worker_id, error=exc.message)
            self._stats.heartbeat_failures += 1
            return

        self._stats.heartbeats += 1
        self._stats.last_heartbeat_at = utcnow()

        for submission_id in reply.cancellations:
            with self._active_lock:
                entry = self._active.get(submission_id)
            if entry is not None:
                logger.info("task.cancel_received", submission_id=submission_id)
                entry[0].set()

        pending = dict(self._unacked)
        self._unacked.clear()
        for assignment in reply.assignments:
            if assignment.submission_id not in pending:
                self._stats.total_received += 1
            pending[assignment.submission_id] = assignment
        for assignment in pending.values():
            self._accept(assignment)

    def _held(self) -> list[str]:
        with self._active_lock:
            return [*self._active, *self._unacked]

    def _accept(self, assignment: Assignment) -> None:
        with self._active_lock:
            if assignment.submission_id in self._active:
                return
        try:
            self._client.acknowledge(self.worker_id, assignment.submission_id)
        except (InvalidTransitionError, NotFoundError) as exc:
            logger.info("task.withdrawn", submission_id=assignment.submission_id, reason=exc.message)
            self._stats.total_withdrawn += 1
            return
        except TransportError as exc:
            # Acks are idempotent; resend on the next beat.
            logger.warning("task.ack_failed", submission_id=assignment.submission_id, error=exc.message)
            self._unacked[assignment.submission_id] = assignment
            return

        cancel_event = threading.Event()
        with self._active_lock:
            future = self._pool.submit(self._run, assignment, cancel_event)
            self._active[assignment.submission_id] = (cancel_event, future)

    def _run(self, assignment: Assignment, cancel_event: threading.Event) -> None:
        with LogContext(worker_id=self.worker_id):
            shipper = _LogShipper(self._client, assignment.submission_id)
            try:
                outcome = self._runner.execute_task(assignment, cancel_event, shipper.write)
            except Exception as exc:
                logger.exception("task.runner_crashed", submission_id=assignment.submission_id)
                outcome = TaskOutcome.failure(FailureCause.EXECUTION_FAILURE, f"worker error: {exc}")
            finally:
                shipper.flush()

            self._record(outcome)
            try:
                self._client.report(self.worker_id, assignment.submission_id, outcome)
            except ClusterError as exc:
                logger.error(
                    "task.report_failed",
                    submission_id=assignment.submission_id,
                    status=outcome.status.value,
                    error=exc.message,
                )
            finally:
                with self._active_lock:
                    self._active.pop(assignment.submission_id, None)

    def _record(self, outcome: TaskOutcome) -> None:
        if outcome.succeeded:
            self._stats.total_succeeded += 1
        elif outcome.cause == FailureCause.CANCELLED:
            self._stats.total_cancelled += 1
        else:
            self._stats.total_failed += 1

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("worker.signal", worker_id=self.worker_id, signal=signum)
        self.stop()

    def _cleanup(self) -> None:
        with self._active_lock:
            events = [event for event, _ in self._active.values()]
        for event in events:
            event.set()
        self._pool.shutdown(wait=True)

        if self._registered:
            try:
                self._client.deregister(self.worker_id)
            except ClusterError as exc:
                logger.warning("worker.deregister_failed", worker_id=self.worker_id, error=exc.message)
        self._registered = False
        logger.info("worker.stopped", worker_id=self.worker_id, pid=os.getpid(), **self.get_stats().to_dict())


__all__ = ["WorkerAgent", "WorkerStats"]
