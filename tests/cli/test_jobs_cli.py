"""Tests for ``clusterdeck run | submit | status | cancel``."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from clusterdeck.cli.app import app
from clusterdeck.core.errors import BuildError, NotFoundError
from clusterdeck.deploy.client import RunReport
from clusterdeck.execution.models import Capacity, DeployMode, SubmissionRequest, SubmissionStatus

runner = CliRunner()


def _report(status: SubmissionStatus | None, **kwargs) -> RunReport:
    return RunReport("sub-00001-abcd1234", status, timed_out=status is None, elapsed_s=1.5, **kwargs)


# ── run ─────────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (SubmissionStatus.SUCCEEDED, 0),
            (SubmissionStatus.FAILED, 1),
            (SubmissionStatus.LOST, 2),
            (SubmissionStatus.CANCELLED, 3),
            (None, 4),
        ],
    )
    @patch("clusterdeck.cli.jobs.SubmissionClient")
    def test_exit_code_follows_outcome(self, mock_cls, status, code, tmp_path):
        client = mock_cls.from_settings.return_value
        client.run.return_value = _report(status)

        result = runner.invoke(app, ["run", "lesson.job:main", str(tmp_path), "--root", str(tmp_path / "data")])

        assert result.exit_code == code, result.output
        client.coordinator.close.assert_called_once()

    @patch("clusterdeck.cli.jobs.SubmissionClient")
    def test_timeout_is_reported(self, mock_cls, tmp_path):
        mock_cls.from_settings.return_value.run.return_value = _report(None)
        result = runner.invoke(app, ["run", "lesson.job:main", str(tmp_path)])
        assert "Timeout" in result.output

    @patch("clusterdeck.cli.jobs.SubmissionClient")
    def test_options_are_forwarded(self, mock_cls, tmp_path):
        client = mock_cls.from_settings.return_value
        client.run.return_value = _report(SubmissionStatus.SUCCEEDED, output_location="/data/out")

        result = runner.invoke(
            app,
            [
                "run", "lesson.job:main", str(tmp_path / "lesson"),
                "-d", str(tmp_path / "in"),
                "-a", "/data/in", "-a", "/data/out",
                "--deploy-mode", "cluster", "--supervise",
                "--cores", "2", "--memory-mb", "1024",
                "--coordinator", "http://master:7077",
                "--root", str(tmp_path / "data"),
                "--poll-timeout", "30",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "/data/out" in result.output
        settings = mock_cls.from_settings.call_args.args[0]
        assert settings.coordinator_url == "http://master:7077"
        assert settings.shared_root == tmp_path / "data"
        assert settings.poll_timeout == 30.0

        args, kwargs = client.run.call_args
        assert args[0] == "lesson.job:main"
        assert list(args[2]) == [tmp_path / "in"]
        assert list(kwargs["args"]) == ["/data/in", "/data/out"]
        assert kwargs["deploy_mode"] == DeployMode.CLUSTER
        assert kwargs["supervise"] is True
        assert kwargs["resources"].cores == 2

    @patch("clusterdeck.cli.jobs.SubmissionClient")
    def test_error_before_submission_exits_5(self, mock_cls, tmp_path):
        client = mock_cls.from_settings.return_value
        client.run.side_effect = BuildError("Unresolved dependencies: pandas", unresolved=["pandas"])

        result = runner.invoke(app, ["run", "lesson.job:main", str(tmp_path)])

        assert result.exit_code == 5
        assert "BUILD_FAILED" in result.output
        assert "pandas" in result.output
        client.coordinator.close.assert_called_once()

    @patch("clusterdeck.cli.jobs.SubmissionClient")
    def test_json_report(self, mock_cls, tmp_path):
        mock_cls.from_settings.return_value.run.return_value = _report(
            SubmissionStatus.FAILED, cause="ExecutionFailure", error="exit status 1"
        )
        result = runner.invoke(app, ["run", "lesson.job:main", str(tmp_path), "--json"])

        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["outcome"] == "FAILED"
        assert report["cause"] == "ExecutionFailure"
        assert report["exit_code"] == 1


# ── submit ──────────────────────────────────────────────────────


class TestSubmit:
    @patch("clusterdeck.cli.jobs.CoordinatorClient")
    def test_submit(self, mock_cls):
        api = mock_cls.from_settings.return_value.__enter__.return_value
        api.submit.return_value = "sub-00007-feedbeef"

        result = runner.invoke(
            app, ["submit", "/data/artifacts/wc.pyz", "wordcount.job:main", "/data/in", "/data/out", "--cores", "2"]
        )

        assert result.exit_code == 0, result.output
        assert "Submitted sub-00007-feedbeef" in result.output
        request: SubmissionRequest = api.submit.call_args.args[0]
        assert request.artifact_path == "/data/artifacts/wc.pyz"
        assert request.args == ("/data/in", "/data/out")
        assert request.deploy_mode == DeployMode.CLUSTER
        assert request.resources.cores == 2
        assert request.name == "wc"

    def test_submit_against_coordinator(self, api, coordinator):
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["submit", "/data/artifacts/wc.pyz", "wordcount.job:main", "--json"])

        assert result.exit_code == 0, result.output
        submission_id = json.loads(result.output)["submission_id"]
        assert coordinator.get_status(submission_id) == SubmissionStatus.SUBMITTED

    def test_invalid_submission_exits_5(self, api):
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["submit", "/data/wc.pyz", "not valid!"])
        assert result.exit_code == 5
        assert "INVALID_INPUT" in result.output

    @patch("clusterdeck.cli.jobs.SubmissionClient")
    @patch("clusterdeck.cli.jobs.CoordinatorClient")
    def test_submit_and_wait(self, mock_api_cls, mock_client_cls):
        api = mock_api_cls.from_settings.return_value.__enter__.return_value
        api.submit.return_value = "sub-00001-abcd1234"
        mock_client_cls.return_value.wait.return_value = _report(SubmissionStatus.LOST, cause="WorkerLost")

        result = runner.invoke(app, ["submit", "/data/wc.pyz", "wc.job", "--wait"])

        assert result.exit_code == 2
        mock_client_cls.return_value.wait.assert_called_once_with("sub-00001-abcd1234", deploy_mode=DeployMode.CLUSTER)


# ── status / cancel ─────────────────────────────────────────────


class TestStatus:
    def test_one_submission(self, api, coordinator):
        sid = coordinator.submit(SubmissionRequest("/data/wc.pyz", "wc.job", name="wordcount"))
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["status", sid, "--json"])

        assert result.exit_code == 0, result.output
        record = json.loads(result.output)
        assert record["status"] == "SUBMITTED"
        assert record["name"] == "wordcount"

    def test_overview(self, api, coordinator):
        coordinator.register_worker("w1", Capacity(2, 1024))
        coordinator.submit(SubmissionRequest("/data/wc.pyz", "wc.job", name="wordcount"))
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["status"])

        assert result.exit_code == 0, result.output
        assert "Workers" in result.output
        assert "w1" in result.output
        assert "wordcount" in result.output
        assert "SUBMITTED=1" in result.output

    def test_unknown_submission(self):
        api = MagicMock()
        api.__enter__.return_value = api
        api.get.side_effect = NotFoundError("Unknown submission: sub-x")
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["status", "sub-x"])

        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output


class TestCancel:
    def test_cancel_submitted(self, api, coordinator):
        sid = coordinator.submit(SubmissionRequest("/data/wc.pyz", "wc.job"))
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["cancel", sid])

        assert result.exit_code == 0, result.output
        assert f"CANCELLED {sid}" in result.output
        assert coordinator.get_status(sid) == SubmissionStatus.CANCELLED

    def test_cancel_running_is_requested(self):
        api = MagicMock()
        api.__enter__.return_value = api
        api.cancel.return_value = {"status": "RUNNING"}
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["cancel", "sub-1"])

        assert result.exit_code == 0
        assert "Cancel requested sub-1 (RUNNING)" in result.output

    def test_cancel_terminal_fails(self, api, coordinator):
        sid = coordinator.submit(SubmissionRequest("/data/wc.pyz", "wc.job"))
        coordinator.cancel(sid)
        with patch("clusterdeck.cli.jobs.CoordinatorClient.from_settings", return_value=api):
            result = runner.invoke(app, ["cancel", sid])

        assert result.exit_code == 1
        assert "CONFLICT" in result.output
