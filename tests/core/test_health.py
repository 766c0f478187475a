"""Tests for clusterdeck.core.health."""

import asyncio
from functools import partial

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clusterdeck.core.errors import VolumeMismatchError
from clusterdeck.core.health import HealthCheck, check_shared_volume, create_health_router
from clusterdeck.deploy.volume import SharedVolume


async def _ok() -> bool:
    return True


async def _down() -> bool:
    raise ConnectionError("unreachable")


def _client(checks):
    app = FastAPI()
    app.include_router(create_health_router("svc", "1.0", checks=checks))
    return TestClient(app)


class TestHealthRouter:
    def test_healthy(self):
        resp = _client([HealthCheck("a", _ok)]).get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["service"] == "svc"
        assert body["checks"]["a"]["status"] == "healthy"

    def test_required_failure_is_unhealthy(self):
        resp = _client([HealthCheck("a", _down)]).get("/health")
        assert resp.status_code == 503
        assert resp.json()["checks"]["a"]["error"] == "unreachable"

    def test_optional_failure_is_degraded(self):
        client = _client([HealthCheck("a", _ok), HealthCheck("b", _down, required=False)])
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert client.get("/health/ready").status_code == 503

    def test_live_always_ok(self):
        resp = _client([HealthCheck("a", _down)]).get("/health/live")
        assert resp.status_code == 200
        assert resp.json() == {"status": "alive"}


class TestCheckSharedVolume:
    def test_missing_root(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            asyncio.run(check_shared_volume(tmp_path / "nope"))

    def test_volume_id_checked(self, tmp_path):
        volume_id = SharedVolume(tmp_path).ensure()
        client = _client([HealthCheck("shared_volume", partial(check_shared_volume, tmp_path, volume_id))])
        assert client.get("/health").json()["status"] == "healthy"

        wrong = _client([HealthCheck("shared_volume", partial(check_shared_volume, tmp_path, "other"))])
        resp = wrong.get("/health")
        assert resp.status_code == 503
        assert "mismatch" in resp.json()["checks"]["shared_volume"]["error"]

    def test_mismatch_error_type(self, tmp_path):
        SharedVolume(tmp_path).ensure()
        with pytest.raises(VolumeMismatchError):
            asyncio.run(check_shared_volume(tmp_path, "other"))
