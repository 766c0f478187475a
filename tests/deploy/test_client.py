"""Tests for SubmissionClient — the build → stage → submit → wait pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from clusterdeck.core.errors import BuildError, TransportError, VolumeMismatchError
from clusterdeck.deploy.client import EXIT_PRE_SUBMISSION, RunReport, SubmissionClient
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.models import Capacity, DeployMode, SubmissionRequest, SubmissionStatus
from clusterdeck.execution.packaging import ArtifactBuilder
from clusterdeck.execution.runner import TaskRunner
from clusterdeck.execution.worker import WorkerAgent


@pytest.fixture
def cluster(api, coordinator, shared_root):
    """Coordinator scheduling loop plus one background worker."""
    agent = WorkerAgent(
        api,
        TaskRunner(shared_root, poll_interval=0.05),
        worker_id="w1",
        capacity=Capacity(cores=2, memory_mb=1024),
        heartbeat_interval=0.05,
        volume_id=SharedVolume(shared_root).read_volume_id(),
    )
    coordinator.start_background(interval=0.05)
    thread = agent.start_background()
    yield coordinator
    agent.stop()
    thread.join(timeout=10)
    coordinator.stop()


# ── End to end ──────────────────────────────────────────────────


class TestRun:
    def test_wordcount_in_to_out(self, cluster, api, shared_root, lesson_dir):
        statuses: list[SubmissionStatus] = []
        logs: list[str] = []
        client = SubmissionClient(
            api, shared_root, poll_interval=0.05, poll_timeout=60, on_status=statuses.append, on_log=logs.append
        )

        report = client.run(
            "wordcount.job:main",
            [lesson_dir / "wordcount"],
            [lesson_dir / "in"],
            args=[str(shared_root / "in"), str(shared_root / "out")],
            source_root=lesson_dir,
        )

        assert report.status == SubmissionStatus.SUCCEEDED
        assert report.exit_code == 0
        assert report.worker_id == "w1"
        assert report.output_location == str(shared_root / "out")
        staged_artifact = Path(report.artifact_path)
        assert staged_artifact.parent == shared_root / "artifacts"
        assert staged_artifact.name.startswith("job-")
        counts = json.loads((shared_root / "out" / "counts.json").read_text())
        assert counts["the"] == 2
        assert sum(counts.values()) == 7
        assert "counted 7 words" in logs
        assert statuses[-1] == SubmissionStatus.SUCCEEDED

    def test_cluster_mode_does_not_tail_logs(self, cluster, api, shared_root, lesson_dir):
        logs: list[str] = []
        client = SubmissionClient(api, shared_root, poll_interval=0.05, poll_timeout=60, on_log=logs.append)

        report = client.run(
            "wordcount.job:crash",
            [lesson_dir / "wordcount"],
            deploy_mode=DeployMode.CLUSTER,
            source_root=lesson_dir,
        )

        assert report.status == SubmissionStatus.FAILED
        assert report.cause == "ExecutionFailure"
        assert report.exit_code == 1
        assert logs == []

    def test_same_named_jobs_keep_separate_artifacts(self, cluster, api, shared_root, lesson_dir):
        client = SubmissionClient(api, shared_root, poll_interval=0.05, poll_timeout=60)

        first = client.run("wordcount.job:main", [lesson_dir / "wordcount"])
        second = client.run("wordcount.job:crash", [lesson_dir / "wordcount"])

        assert first.artifact_path != second.artifact_path
        builder = ArtifactBuilder()
        assert builder.inspect(first.artifact_path).entry_point == "wordcount.job:main"
        assert builder.inspect(second.artifact_path).entry_point == "wordcount.job:crash"

    def test_build_error_happens_before_submission(self, api, coordinator, shared_root, lesson_dir):
        client = SubmissionClient(api, shared_root)
        with pytest.raises(BuildError):
            client.run("wordcount.missing:main", [lesson_dir / "wordcount"])
        assert coordinator.list_submissions() == []
        assert list((shared_root / "artifacts").iterdir()) == []

    def test_volume_mismatch_happens_before_staging(self, api, coordinator, tmp_path, lesson_dir):
        other = tmp_path / "other-volume"
        client = SubmissionClient(api, other)
        with pytest.raises(VolumeMismatchError):
            client.run("wordcount.job:main", [lesson_dir / "wordcount"], [lesson_dir / "in"], source_root=lesson_dir)
        assert coordinator.list_submissions() == []
        assert list((other / "artifacts").iterdir()) == []


# ── Waiting ─────────────────────────────────────────────────────


class TestWait:
    def test_timeout_report(self, api, coordinator, shared_root, clock):
        sid = coordinator.submit(SubmissionRequest(str(shared_root / "artifacts" / "a.pyz"), "a:main"))
        client = SubmissionClient(
            api, shared_root, poll_interval=2.0, poll_timeout=10.0, clock=clock, sleep=clock.advance
        )

        report = client.wait(sid)

        assert report.timed_out
        assert report.status is None
        assert report.outcome == "Timeout"
        assert report.exit_code == 4
        assert report.elapsed_s == pytest.approx(10.0)

    def test_cancelled_submission(self, api, coordinator, shared_root):
        sid = coordinator.submit(SubmissionRequest(str(shared_root / "artifacts" / "a.pyz"), "a:main"))
        coordinator.cancel(sid)

        report = SubmissionClient(api, shared_root).wait(sid)

        assert report.status == SubmissionStatus.CANCELLED
        assert report.exit_code == 3

    def test_transport_errors_are_tolerated(self, shared_root):
        coordinator = MagicMock()
        coordinator.get.side_effect = [
            TransportError("connection reset"),
            {"status": "RUNNING", "worker_id": "w1"},
            {"status": "LOST", "worker_id": "w1", "cause": "WorkerLost"},
        ]
        coordinator.get_logs.return_value = ([], 0)
        statuses: list[SubmissionStatus] = []

        client = SubmissionClient(coordinator, shared_root, sleep=lambda _: None, on_status=statuses.append)
        report = client.wait("sub-00001-abcd", deploy_mode=DeployMode.CLUSTER)

        assert statuses == [SubmissionStatus.RUNNING, SubmissionStatus.LOST]
        assert report.exit_code == 2
        assert report.cause == "WorkerLost"
        coordinator.get_logs.assert_not_called()


# ── Report ──────────────────────────────────────────────────────


class TestRunReport:
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (SubmissionStatus.SUCCEEDED, 0),
            (SubmissionStatus.FAILED, 1),
            (SubmissionStatus.LOST, 2),
            (SubmissionStatus.CANCELLED, 3),
        ],
    )
    def test_exit_codes(self, status, code):
        assert RunReport("sub-1", status).exit_code == code

    def test_timeout_exit_code(self):
        assert RunReport("sub-1", None, timed_out=True).exit_code == 4

    def test_pre_submission_code_is_distinct(self):
        assert EXIT_PRE_SUBMISSION == 5

    def test_to_dict(self):
        data = RunReport("sub-1", SubmissionStatus.SUCCEEDED, output_location="/data/out").to_dict()
        assert data["outcome"] == "SUCCEEDED"
        assert data["exit_code"] == 0
        assert data["output_location"] == "/data/out"
