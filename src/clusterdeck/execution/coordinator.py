"""ClusterCoordinator — the master's live registry of workers and submissions.

The coordinator is the only owner of Worker Registrations and Job Submission
Records.  Every mutation goes through one of its operations under a single
lock, so requests arriving concurrently over HTTP are applied one at a time
and heartbeats from one worker are applied in receipt order.

Lifecycle of a submission::

    submit() ──► SUBMITTED ──tick()──► SCHEDULED ──acknowledge()──► RUNNING
                    │                     │                            │
                    │ cancel()            │ cancel()       report() ───┼──► SUCCEEDED
                    ▼                     ▼                            ├──► FAILED
                CANCELLED             CANCELLED          liveness ─────┴──► LOST
                    │
                    └─ scheduling deadline ──► FAILED (SchedulingTimeout)

Assignments are *pulled*: a SCHEDULED submission sits in its worker's
delivery queue until that worker's next heartbeat.  Cancelling before the
heartbeat withdraws it, so the worker never sees the artifact reference.
Each heartbeat may list the submissions the worker holds; the coordinator
re-delivers scheduled work the worker never received and declares LOST any
running work the worker no longer has.

Time is read from an injectable monotonic ``clock`` so tests can drive
liveness and deadlines deterministically through :meth:`tick`.

Usage::

    coordinator = ClusterCoordinator(liveness_timeout=30)
    coordinator.register_worker("worker-1", Capacity(cores=4, memory_mb=8192))
    sid = coordinator.submit(SubmissionRequest("/data/artifacts/job.pyz", "lessons.job:main"))
    coordinator.tick()
    reply = coordinator.heartbeat("worker-1")   # carries the assignment
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from clusterdeck.core.errors import (
    InvalidSubmissionError,
    InvalidTransitionError,
    NotFoundError,
    VolumeMismatchError,
)
from clusterdeck.core.logging import get_logger
from clusterdeck.execution.models import (
    Assignment,
    Capacity,
    DeployMode,
    EntryPoint,
    FailureCause,
    HeartbeatReply,
    SubmissionRecord,
    SubmissionRequest,
    SubmissionStatus,
    TaskOutcome,
    WorkerRegistration,
    utcnow,
)

logger = get_logger(__name__)

_ACTIVE = (SubmissionStatus.SCHEDULED, SubmissionStatus.RUNNING)


@dataclass
class TickResult:
    """What one scheduling cycle changed."""

    expired_workers: list[str] = field(default_factory=list)
    scheduled: list[tuple[str, str]] = field(default_factory=list)
    lost: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.expired_workers or self.scheduled or self.lost or self.timed_out)


class ClusterCoordinator:
    """In-memory coordinator state machine.

    Parameters
    ----------
    liveness_timeout:
        Seconds of heartbeat silence after which a worker is dropped and its
        submissions become LOST.
    scheduling_timeout:
        Seconds a submission may stay SUBMITTED before it FAILS with
        ``SchedulingTimeout``.  ``0`` waits forever.
    cancel_timeout:
        Seconds a worker has to acknowledge the cancel of a RUNNING
        submission before the submission becomes LOST.
    volume_id:
        Identity of the shared volume as seen by the coordinator.  Workers
        announcing a different id are refused.
    clock:
        Monotonic time source (seconds).
    max_log_lines:
        Per-submission cap on retained task log lines; oldest lines drop first.
    """

    def __init__(
        self,
        *,
        liveness_timeout: float = 30.0,
        scheduling_timeout: float = 300.0,
        cancel_timeout: float = 30.0,
        volume_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_log_lines: int = 10_000,
    ) -> None:
        self.liveness_timeout = liveness_timeout
        self.scheduling_timeout = scheduling_timeout
        self.cancel_timeout = cancel_timeout
        self.volume_id = volume_id
        self._clock = clock
        self._max_log_lines = max_log_lines

        self._lock = threading.RLock()
        self._workers: dict[str, WorkerRegistration] = {}
        self._submissions: dict[str, SubmissionRecord] = {}
        self._undelivered: dict[str, list[str]] = {}
        self._logs: dict[str, list[str]] = {}
        self._log_base: dict[str, int] = {}
        self._idempotency: dict[str, str] = {}
        self._worker_seq = itertools.count(1)
        self._submission_seq = itertools.count(1)
        self.started_at = utcnow()

        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, settings: Any, *, volume_id: str | None = None) -> ClusterCoordinator:
        return cls(
            liveness_timeout=settings.liveness_timeout,
            scheduling_timeout=settings.scheduling_timeout,
            cancel_timeout=settings.cancel_timeout,
            volume_id=volume_id,
        )

    # ------------------------------------------------------------------ #
    # Submissions
    # ------------------------------------------------------------------ #

    def submit(self, request: SubmissionRequest) -> str:
        """Record a well-formed submission and return its id.

        Scheduling happens asynchronously on the next :meth:`tick`.  A
        request whose ``idempotency_key`` was seen before returns the id of
        the submission it created, so a client may resend a submit whose
        response it never received.

        Raises:
            InvalidSubmissionError: If the request is malformed.
        """
        self._validate_request(request)
        with self._lock:
            key = request.idempotency_key
            if key and key in self._idempotency:
                existing = self._idempotency[key]
                logger.info("submission.duplicate", submission_id=existing, idempotency_key=key)
                return existing
            sequence = next(self._submission_seq)
            submission_id = f"sub-{sequence:05d}-{uuid.uuid4().hex[:8]}"
            self._submissions[submission_id] = SubmissionRecord(
                submission_id=submission_id,
                request=request,
                sequence=sequence,
                submitted_at=self._clock(),
            )
            self._logs[submission_id] = []
            self._log_base[submission_id] = 0
            if key:
                self._idempotency[key] = submission_id

        logger.info(
            "submission.received",
            submission_id=submission_id,
            artifact=request.artifact_path,
            entry_point=request.entry_point,
            deploy_mode=request.deploy_mode.value,
        )
        return submission_id

    def get(self, submission_id: str) -> SubmissionRecord:
        """Return a snapshot copy of a submission record.

        Raises:
            NotFoundError: For unknown ids.
        """
        with self._lock:
            return copy.deepcopy(self._record(submission_id))

    def get_status(self, submission_id: str) -> SubmissionStatus:
        """Return the current status of a submission.

        Raises:
            NotFoundError: For unknown ids.
        """
        with self._lock:
            return self._record(submission_id).status

    def list_submissions(self, status: SubmissionStatus | None = None) -> list[SubmissionRecord]:
        with self._lock:
            records = [
                copy.deepcopy(r)
                for r in self._submissions.values()
                if status is None or r.status == status
            ]
        return sorted(records, key=lambda r: r.sequence)

    def cancel(self, submission_id: str) -> SubmissionStatus:
        """Cancel a submission.

        SUBMITTED / SCHEDULED submissions become CANCELLED immediately and
        are withdrawn from their worker's delivery queue.  A RUNNING
        submission is flagged; the executing worker learns about it on its
        next heartbeat and reports FAILED with cause ``Cancelled``.

        Raises:
            NotFoundError: For unknown ids.
            InvalidTransitionError: If the submission already finished.
        """
        with self._lock:
            record = self._record(submission_id)
            if record.status in (SubmissionStatus.SUBMITTED, SubmissionStatus.SCHEDULED):
                self._withdraw(record)
                record.cause = FailureCause.CANCELLED
                record.transition_to(SubmissionStatus.CANCELLED)
                logger.info("submission.cancelled", submission_id=submission_id)
            elif record.status == SubmissionStatus.RUNNING:
                if record.cancel_requested_at is None:
                    record.cancel_requested_at = self._clock()
                    logger.info(
                        "submission.cancel_requested",
                        submission_id=submission_id,
                        worker_id=record.worker_id,
                    )
            else:
                raise InvalidTransitionError(record.status.value, SubmissionStatus.CANCELLED.value)
            return record.status

    # ------------------------------------------------------------------ #
    # Workers
    # ------------------------------------------------------------------ #

    def register_worker(
        self,
        worker_id: str,
        capacity: Capacity,
        *,
        hostname: str = "",
        volume_id: str | None = None,
    ) -> WorkerRegistration:
        """Register (or re-register) a worker.

        Idempotent for a repeated identity: the original registration
        sequence number is kept and the liveness timestamp refreshed.

        Raises:
            VolumeMismatchError: If the worker mounts a different shared volume.
        """
        if not worker_id:
            raise InvalidSubmissionError("worker id must not be empty")
        if capacity.cores < 1 or capacity.memory_mb < 1:
            raise InvalidSubmissionError(f"worker capacity must be positive, got {capacity.to_dict()}")
        if self.volume_id and volume_id and volume_id != self.volume_id:
            raise VolumeMismatchError(self.volume_id, volume_id).with_context(worker_id=worker_id)

        with self._lock:
            now = self._clock()
            existing = self._workers.get(worker_id)
            if existing is not None:
                existing.capacity = capacity
                existing.hostname = hostname or existing.hostname
                existing.volume_id = volume_id or existing.volume_id
                existing.last_seen = now
                existing.state = "alive"
                logger.debug("worker.reregistered", worker_id=worker_id)
                return copy.deepcopy(existing)

            registration = WorkerRegistration(
                worker_id=worker_id,
                capacity=capacity,
                sequence=next(self._worker_seq),
                registered_at=utcnow(),
                last_seen=now,
                hostname=hostname,
                volume_id=volume_id,
            )
            self._workers[worker_id] = registration
            self._undelivered.setdefault(worker_id, [])

        logger.info(
            "worker.registered",
            worker_id=worker_id,
            sequence=registration.sequence,
            cores=capacity.cores,
            memory_mb=capacity.memory_mb,
        )
        return copy.deepcopy(registration)

    def heartbeat(
        self,
        worker_id: str,
        timestamp: datetime | None = None,
        *,
        active: Iterable[str] | None = None,
    ) -> HeartbeatReply:
        """Refresh a worker's liveness and hand it pending work.

        The reply carries every assignment scheduled onto the worker since
        its last heartbeat, plus the ids of RUNNING submissions it must abort.

        *active* lists the submissions the worker currently holds.  When
        given, it is reconciled against the worker's records first: a
        delivered SCHEDULED submission the worker does not hold is delivered
        again (the previous reply never arrived), and a RUNNING submission it
        does not hold becomes LOST with cause ``WorkerLost``.

        Raises:
            NotFoundError: If the worker is not registered (it should re-register).
        """
        with self._lock:
            registration = self._worker(worker_id)
            registration.last_seen = self._clock()
            registration.reported_at = timestamp
            registration.state = "alive"

            if active is not None:
                self._reconcile(worker_id, set(active))

            delivered = self._undelivered.get(worker_id, [])
            self._undelivered[worker_id] = []
            assignments = tuple(
                self._assignment_for(self._submissions[sid])
                for sid in delivered
                if self._submissions[sid].status == SubmissionStatus.SCHEDULED
            )
            cancellations = tuple(
                r.submission_id
                for r in self._submissions.values()
                if r.worker_id == worker_id
                and r.status == SubmissionStatus.RUNNING
                and r.cancel_requested
            )

        for assignment in assignments:
            logger.info(
                "submission.delivered",
                submission_id=assignment.submission_id,
                worker_id=worker_id,
            )
        return HeartbeatReply(assignments=assignments, cancellations=cancellations)

    def deregister(self, worker_id: str) -> None:
        """Remove a worker; its unfinished submissions become LOST.

        Raises:
            NotFoundError: If the worker is not registered.
        """
        with self._lock:
            self._worker(worker_id)
            lost = self._drop_worker(worker_id, reason="deregistered")
        logger.info("worker.deregistered", worker_id=worker_id, lost=len(lost))

    def acknowledge(self, worker_id: str, submission_id: str) -> SubmissionRecord:
        """Worker confirms receipt of an assignment: SCHEDULED → RUNNING.

        Acknowledging a submission that is already RUNNING on the same worker
        is a no-op, so a worker may resend an ack whose response was lost.

        Raises:
            NotFoundError: Unknown worker or submission.
            InvalidTransitionError: If the submission is no longer SCHEDULED on
                this worker (e.g. it was cancelled in the meantime).
        """
        with self._lock:
            registration = self._worker(worker_id)
            registration.last_seen = self._clock()
            record = self._record(submission_id)
            self._check_owner(record, worker_id, SubmissionStatus.RUNNING)
            if record.status == SubmissionStatus.RUNNING:
                logger.debug("submission.ack_repeated", submission_id=submission_id, worker_id=worker_id)
                return copy.deepcopy(record)
            record.transition_to(SubmissionStatus.RUNNING)
            snapshot = copy.deepcopy(record)

        logger.info("submission.running", submission_id=submission_id, worker_id=worker_id)
        return snapshot

    def report(self, worker_id: str, submission_id: str, outcome: TaskOutcome) -> SubmissionRecord:
        """Worker-reported terminal status: RUNNING → SUCCEEDED | FAILED.

        A repeated report of the status the record already holds is a no-op.

        Raises:
            NotFoundError: Unknown submission.
            InvalidTransitionError: If the submission is not RUNNING on this
                worker (for instance it was already declared LOST).
        """
        with self._lock:
            registration = self._workers.get(worker_id)
            if registration is not None:
                registration.last_seen = self._clock()
            record = self._record(submission_id)
            self._check_owner(record, worker_id, outcome.status)
            if record.status == outcome.status and record.status.is_terminal:
                logger.debug("submission.report_repeated", submission_id=submission_id, worker_id=worker_id)
                return copy.deepcopy(record)
            record.cause = outcome.cause
            record.error = outcome.error
            record.output_location = outcome.output_location
            record.transition_to(outcome.status)
            snapshot = copy.deepcopy(record)

        log = logger.bind(submission_id=submission_id, worker_id=worker_id)
        if outcome.succeeded:
            log.info("submission.succeeded", output=outcome.output_location)
        else:
            log.warning("submission.failed", cause=outcome.cause.value if outcome.cause else None, error=outcome.error)
        return snapshot

    def list_workers(self) -> list[WorkerRegistration]:
        with self._lock:
            return sorted(
                (copy.deepcopy(w) for w in self._workers.values()),
                key=lambda w: w.sequence,
            )

    # ------------------------------------------------------------------ #
    # Task logs
    # ------------------------------------------------------------------ #

    def append_logs(self, submission_id: str, lines: Iterable[str]) -> int:
        """Append task log lines; returns the absolute offset after the append."""
        with self._lock:
            self._record(submission_id)
            buffer = self._logs[submission_id]
            buffer.extend(lines)
            overflow = len(buffer) - self._max_log_lines
            if overflow > 0:
                del buffer[:overflow]
                self._log_base[submission_id] += overflow
            return self._log_base[submission_id] + len(buffer)

    def get_logs(self, submission_id: str, offset: int = 0) -> tuple[list[str], int]:
        """Return log lines from absolute *offset* and the next offset to ask for."""
        with self._lock:
            self._record(submission_id)
            base = self._log_base[submission_id]
            buffer = self._logs[submission_id]
            start = max(offset - base, 0)
            return buffer[start:], base + len(buffer)

    # ------------------------------------------------------------------ #
    # Scheduling cycle
    # ------------------------------------------------------------------ #

    def tick(self, now: float | None = None) -> TickResult:
        """Run one scheduling cycle.

        1. Drop workers silent for longer than ``liveness_timeout``.
        2. Declare LOST any RUNNING submission whose cancel went
           unacknowledged for ``cancel_timeout``.
        3. Schedule SUBMITTED submissions in submission order onto the
           earliest-registered live worker with enough free capacity.
        4. FAIL submissions that waited past ``scheduling_timeout``.
        """
        result = TickResult()
        with self._lock:
            now = self._clock() if now is None else now

            for worker in sorted(self._workers.values(), key=lambda w: w.sequence):
                silence = now - worker.last_seen
                if silence > self.liveness_timeout:
                    result.expired_workers.append(worker.worker_id)
                    result.lost.extend(self._drop_worker(worker.worker_id, reason="liveness timeout"))
                elif silence > self.liveness_timeout / 2:
                    worker.state = "suspect"

            for record in self._ordered(SubmissionStatus.RUNNING):
                if (
                    record.cancel_requested_at is not None
                    and now - record.cancel_requested_at > self.cancel_timeout
                ):
                    record.cause = FailureCause.CANCELLED
                    record.error = "cancel was not acknowledged by the worker"
                    record.transition_to(SubmissionStatus.LOST)
                    result.lost.append(record.submission_id)
                    logger.warning(
                        "submission.lost",
                        submission_id=record.submission_id,
                        worker_id=record.worker_id,
                        reason="cancel not acknowledged",
                    )

            for record in self._ordered(SubmissionStatus.SUBMITTED):
                worker_id = self._pick_worker(record.request.resources)
                if worker_id is None:
                    continue
                record.worker_id = worker_id
                record.transition_to(SubmissionStatus.SCHEDULED)
                self._undelivered.setdefault(worker_id, []).append(record.submission_id)
                result.scheduled.append((record.submission_id, worker_id))
                logger.info("submission.scheduled", submission_id=record.submission_id, worker_id=worker_id)

            if self.scheduling_timeout > 0:
                for record in self._ordered(SubmissionStatus.SUBMITTED):
                    if now - record.submitted_at > self.scheduling_timeout:
                        record.cause = FailureCause.SCHEDULING_TIMEOUT
                        record.error = (
                            f"no worker with {record.request.resources.cores} core(s) and "
                            f"{record.request.resources.memory_mb} MB free within "
                            f"{self.scheduling_timeout:g}s"
                        )
                        record.transition_to(SubmissionStatus.FAILED)
                        result.timed_out.append(record.submission_id)
                        logger.warning("submission.scheduling_timeout", submission_id=record.submission_id)

        return result

    # ------------------------------------------------------------------ #
    # Monitoring
    # ------------------------------------------------------------------ #

    def snapshot(self) -> dict[str, Any]:
        """Read-only view of live workers and all submission records."""
        with self._lock:
            now = self._clock()
            workers = [
                w.to_dict(used=self._used(w.worker_id), now=now)
                for w in sorted(self._workers.values(), key=lambda w: w.sequence)
            ]
            submissions = [r.to_dict() for r in sorted(self._submissions.values(), key=lambda r: r.sequence)]
            counts: dict[str, int] = {s.value: 0 for s in SubmissionStatus}
            for record in self._submissions.values():
                counts[record.status.value] += 1

        return {
            "volume_id": self.volume_id,
            "started_at": self.started_at.isoformat(),
            "liveness_timeout": self.liveness_timeout,
            "workers": workers,
            "submissions": submissions,
            "counts": counts,
        }

    # ------------------------------------------------------------------ #
    # Background scheduling loop
    # ------------------------------------------------------------------ #

    def start_background(self, interval: float = 1.0) -> threading.Thread:
        """Run :meth:`tick` every *interval* seconds in a daemon thread."""
        self._shutdown.clear()

        def _loop() -> None:
            logger.info("coordinator.scheduler_started", interval=interval)
            while not self._shutdown.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("coordinator.tick_failed")
                self._shutdown.wait(interval)
            logger.info("coordinator.scheduler_stopped")

        self._thread = threading.Thread(target=_loop, name="coordinator-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the background scheduling loop."""
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    # ------------------------------------------------------------------ #
    # Internal helpers (callers hold the lock)
    # ------------------------------------------------------------------ #

    @staticmethod
    def _validate_request(request: SubmissionRequest) -> None:
        if not request.artifact_path or not request.artifact_path.startswith("/"):
            raise InvalidSubmissionError(
                f"artifact path must be an absolute path on the shared volume, got {request.artifact_path!r}"
            )
        EntryPoint.parse(request.entry_point)
        if request.resources.cores < 1 or request.resources.memory_mb < 1:
            raise InvalidSubmissionError(
                f"requested resources must be positive, got {request.resources.to_dict()}"
            )
        if request.supervise and request.deploy_mode != DeployMode.CLUSTER:
            raise InvalidSubmissionError("supervise is only supported in cluster deploy mode")

    def _record(self, submission_id: str) -> SubmissionRecord:
        record = self._submissions.get(submission_id)
        if record is None:
            raise NotFoundError(f"Unknown submission: {submission_id}").with_context(
                submission_id=submission_id
            )
        return record

    def _worker(self, worker_id: str) -> WorkerRegistration:
        registration = self._workers.get(worker_id)
        if registration is None:
            raise NotFoundError(f"Unknown worker: {worker_id}").with_context(worker_id=worker_id)
        return registration

    def _check_owner(self, record: SubmissionRecord, worker_id: str, target: SubmissionStatus) -> None:
        if record.worker_id != worker_id:
            raise InvalidTransitionError(record.status.value, target.value).with_context(
                submission_id=record.submission_id,
                worker_id=worker_id,
                assigned_worker=record.worker_id,
            )

    def _ordered(self, status: SubmissionStatus) -> list[SubmissionRecord]:
        return sorted(
            (r for r in self._submissions.values() if r.status == status),
            key=lambda r: r.sequence,
        )

    def _used(self, worker_id: str) -> Capacity:
        used = Capacity(0, 0)
        for record in self._submissions.values():
            if record.worker_id == worker_id and record.status in _ACTIVE:
                used = used + record.request.resources
        return used

    def _pick_worker(self, request: Capacity) -> str | None:
        for worker in sorted(self._workers.values(), key=lambda w: w.sequence):
            free = worker.capacity - self._used(worker.worker_id)
            if free.fits(request):
                return worker.worker_id
        return None

    def _withdraw(self, record: SubmissionRecord) -> None:
        if record.worker_id is not None:
            queue = self._undelivered.get(record.worker_id, [])
            if record.submission_id in queue:
                queue.remove(record.submission_id)

    def _reconcile(self, worker_id: str, active: set[str]) -> None:
        queue = self._undelivered.setdefault(worker_id, [])
        for record in self._ordered(SubmissionStatus.SCHEDULED):
            sid = record.submission_id
            if record.worker_id == worker_id and sid not in active and sid not in queue:
                queue.append(sid)
                logger.info("submission.redelivered", submission_id=sid, worker_id=worker_id)
        for record in self._ordered(SubmissionStatus.RUNNING):
            if record.worker_id == worker_id and record.submission_id not in active:
                record.cause = FailureCause.WORKER_LOST
                record.error = f"worker {worker_id} no longer holds the submission"
                record.transition_to(SubmissionStatus.LOST)
                logger.warning(
                    "submission.lost",
                    submission_id=record.submission_id,
                    worker_id=worker_id,
                    reason="not held by worker",
                )

    def _drop_worker(self, worker_id: str, *, reason: str) -> list[str]:
        self._workers.pop(worker_id, None)
        self._undelivered.pop(worker_id, None)
        lost: list[str] = []
        for record in self._submissions.values():
            if record.worker_id == worker_id and record.status in _ACTIVE:
                record.cause = FailureCause.WORKER_LOST
                record.error = f"worker {worker_id} lost ({reason})"
                record.transition_to(SubmissionStatus.LOST)
                lost.append(record.submission_id)
                logger.warning(
                    "submission.lost",
                    submission_id=record.submission_id,
                    worker_id=worker_id,
                    reason=reason,
                )
        if reason != "deregistered":
            logger.warning("worker.lost", worker_id=worker_id, reason=reason, lost=len(lost))
        return lost

    def _assignment_for(self, record: SubmissionRecord) -> Assignment:
        request = record.request
        return Assignment(
            submission_id=record.submission_id,
            artifact_path=request.artifact_path,
            entry_point=request.entry_point,
            args=request.args,
            deploy_mode=request.deploy_mode,
        )


__all__ = ["ClusterCoordinator", "TickResult"]
