"""Tests for the /api/v1/submissions endpoints."""

from __future__ import annotations

import pytest

PREFIX = "/api/v1/submissions"
ARTIFACT = "/data/artifacts/wordcount.pyz"


def _submit(http, **overrides):
    body = {"artifact_path": ARTIFACT, "entry_point": "wordcount.job:main", "args": ["/data/in", "/data/out"]}
    body.update(overrides)
    return http.post(PREFIX, json=body)


def _assert_problem(resp, status: int, code: str):
    assert resp.status_code == status
    assert resp.headers["content-type"].startswith("application/problem+json")
    body = resp.json()
    assert body["status"] == status
    assert body["code"] == code
    assert body["title"]
    return body


def _running(http, coordinator) -> str:
    http.post("/api/v1/workers", json={"worker_id": "w1", "cores": 2, "memory_mb": 1024})
    sid = _submit(http).json()["data"]["submission_id"]
    coordinator.tick()
    http.post("/api/v1/workers/w1/heartbeat", json={})
    resp = http.post(f"{PREFIX}/{sid}/ack", json={"worker_id": "w1"})
    assert resp.status_code == 200
    return sid


# ── Submit ──────────────────────────────────────────────────────


class TestSubmit:
    def test_accepted(self, http):
        resp = _submit(http)
        assert resp.status_code == 202
        data = resp.json()["data"]
        assert data["submission_id"].startswith("sub-00001-")
        assert data["status"] == "SUBMITTED"

    def test_relative_artifact_path(self, http):
        body = _assert_problem(_submit(http, artifact_path="dist/job.pyz"), 400, "INVALID_INPUT")
        assert "absolute" in body["title"]

    def test_malformed_entry_point(self, http):
        _assert_problem(_submit(http, entry_point="not a module"), 400, "INVALID_INPUT")

    def test_supervise_requires_cluster_mode(self, http):
        _assert_problem(_submit(http, supervise=True), 400, "INVALID_INPUT")
        assert _submit(http, supervise=True, deploy_mode="cluster").status_code == 202

    def test_missing_field(self, http):
        resp = http.post(PREFIX, json={"artifact_path": ARTIFACT})
        body = _assert_problem(resp, 422, "VALIDATION_FAILED")
        assert any(e["field"] == "entry_point" for e in body["errors"])

    def test_non_positive_resources(self, http):
        _assert_problem(_submit(http, cores=0), 422, "VALIDATION_FAILED")


# ── Read ────────────────────────────────────────────────────────


class TestRead:
    def test_get_record(self, http):
        sid = _submit(http, name="wc").json()["data"]["submission_id"]
        resp = http.get(f"{PREFIX}/{sid}")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["submission_id"] == sid
        assert data["name"] == "wc"
        assert data["args"] == ["/data/in", "/data/out"]
        assert data["deploy_mode"] == "client"
        assert [h["status"] for h in data["history"]] == ["SUBMITTED"]

    def test_unknown_id(self, http):
        body = _assert_problem(http.get(f"{PREFIX}/sub-99999-nope"), 404, "NOT_FOUND")
        assert body["instance"] == f"{PREFIX}/sub-99999-nope"

    def test_list_and_filter(self, http, coordinator):
        first = _submit(http).json()["data"]["submission_id"]
        second = _submit(http).json()["data"]["submission_id"]
        coordinator.cancel(second)

        all_ids = [r["submission_id"] for r in http.get(PREFIX).json()["data"]]
        assert all_ids == [first, second]
        cancelled = http.get(PREFIX, params={"status": "CANCELLED"}).json()["data"]
        assert [r["submission_id"] for r in cancelled] == [second]

    def test_list_unknown_status(self, http):
        _assert_problem(http.get(PREFIX, params={"status": "PAUSED"}), 422, "VALIDATION_FAILED")


# ── Cancel ──────────────────────────────────────────────────────


class TestCancel:
    def test_cancel_submitted(self, http):
        sid = _submit(http).json()["data"]["submission_id"]
        resp = http.post(f"{PREFIX}/{sid}/cancel")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "CANCELLED"
        assert data["cause"] == "Cancelled"

    def test_cancel_terminal_conflicts(self, http):
        sid = _submit(http).json()["data"]["submission_id"]
        http.post(f"{PREFIX}/{sid}/cancel")
        _assert_problem(http.post(f"{PREFIX}/{sid}/cancel"), 409, "CONFLICT")

    def test_cancel_running_is_requested(self, http, coordinator):
        sid = _running(http, coordinator)
        data = http.post(f"{PREFIX}/{sid}/cancel").json()["data"]
        assert data["status"] == "RUNNING"
        assert data["cancel_requested"] is True

        beat = http.post("/api/v1/workers/w1/heartbeat", json={}).json()["data"]
        assert beat["cancellations"] == [sid]

    def test_cancel_unknown(self, http):
        _assert_problem(http.post(f"{PREFIX}/nope/cancel"), 404, "NOT_FOUND")


# ── Worker side: ack / report / logs ────────────────────────────


class TestWorkerSide:
    def test_ack_then_report_success(self, http, coordinator):
        sid = _running(http, coordinator)
        resp = http.post(
            f"{PREFIX}/{sid}/report",
            json={"worker_id": "w1", "status": "SUCCEEDED", "output_location": "/data/out"},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "SUCCEEDED"
        assert data["output_location"] == "/data/out"
        assert [h["status"] for h in data["history"]] == ["SUBMITTED", "SCHEDULED", "RUNNING", "SUCCEEDED"]

    def test_report_failure_with_cause(self, http, coordinator):
        sid = _running(http, coordinator)
        data = http.post(
            f"{PREFIX}/{sid}/report",
            json={"worker_id": "w1", "status": "FAILED", "cause": "ResourceExhausted", "error": "killed"},
        ).json()["data"]
        assert data["cause"] == "ResourceExhausted"

    def test_report_non_terminal_rejected(self, http, coordinator):
        sid = _running(http, coordinator)
        resp = http.post(f"{PREFIX}/{sid}/report", json={"worker_id": "w1", "status": "LOST"})
        _assert_problem(resp, 422, "VALIDATION_FAILED")

    def test_report_from_wrong_worker(self, http, coordinator):
        sid = _running(http, coordinator)
        resp = http.post(f"{PREFIX}/{sid}/report", json={"worker_id": "w2", "status": "SUCCEEDED"})
        _assert_problem(resp, 409, "CONFLICT")

    def test_ack_unscheduled_conflicts(self, http):
        http.post("/api/v1/workers", json={"worker_id": "w1", "cores": 1, "memory_mb": 512})
        sid = _submit(http).json()["data"]["submission_id"]
        _assert_problem(http.post(f"{PREFIX}/{sid}/ack", json={"worker_id": "w1"}), 409, "CONFLICT")

    def test_logs_append_and_tail(self, http, coordinator):
        sid = _running(http, coordinator)
        resp = http.post(f"{PREFIX}/{sid}/logs", json={"lines": ["one", "two", "three"]})
        assert resp.json()["data"]["next_offset"] == 3

        page = http.get(f"{PREFIX}/{sid}/logs", params={"offset": 1}).json()["data"]
        assert page == {"lines": ["two", "three"], "next_offset": 3}
        empty = http.get(f"{PREFIX}/{sid}/logs", params={"offset": 3}).json()["data"]
        assert empty["lines"] == []

    @pytest.mark.parametrize("offset", [-1, "x"])
    def test_logs_bad_offset(self, http, offset):
        sid = _submit(http).json()["data"]["submission_id"]
        _assert_problem(http.get(f"{PREFIX}/{sid}/logs", params={"offset": offset}), 422, "VALIDATION_FAILED")


class TestRequestId:
    def test_generated(self, http):
        assert http.get(PREFIX).headers["X-Request-ID"]

    def test_echoed(self, http):
        resp = http.get(PREFIX, headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
