"""Tests for the Spotfleet ops API."""

from fastapi.testclient import TestClient

import api
from api import app
from fakes import FakeProvider
from sweeper import InstanceSweeper, set_sweeper
from warm_pool import WarmPoolManager, set_warm_pool

client = TestClient(app)


class TestHealth:
    def test_healthz(self):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["env"] == "test"

    def test_readyz(self):
        resp = client.get("/readyz")
        assert resp.status_code == 200
        assert resp.json()["storage"]["ok"] is True

    def test_metrics(self):
        client.post("/job", json={"request_type": "training"})
        m = client.get("/metrics").json()["metrics"]
        assert m["queue_depth"] == 1
        assert "affinity_hit_rate" in m["scheduler"]


class TestJobs:
    def test_submit_and_get(self):
        resp = client.post("/job", json={"request_type": "lora-inference", "priority": 4,
                                         "model": "sdxl"})
        assert resp.status_code == 200
        job = resp.json()["job"]
        assert job["workload_type"] == "comfy-worker"

        got = client.get(f"/job/{job['job_id']}").json()
        assert got["job"]["model"] == "sdxl"
        assert got["usage"] == []
        assert [j["job_id"] for j in client.get("/jobs?status=queued").json()["jobs"]] == [job["job_id"]]

    def test_missing_job_envelope(self):
        resp = client.get("/job/nope")
        assert resp.status_code == 404
        body = resp.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "http_error"

    def test_validation_envelope(self):
        resp = client.post("/job", json={"request_type": "training", "priority": 99})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_events_for_job(self):
        job = client.post("/job", json={"request_type": "training"}).json()["job"]
        events = client.get(f"/events/job/{job['job_id']}").json()["events"]
        assert [e["event_type"] for e in events] == ["job.submitted"]
        assert client.get("/events/verify").json()["valid"] is True


class TestPoolAndSweeper:
    def test_pool_absent(self):
        assert client.get("/pool").status_code == 503

    def test_pool_state(self):
        pool = set_warm_pool(WarmPoolManager(
            provisioner=lambda wt, opts: {"instance_id": "p1", "hourly_rate": 0.3}, persist=False))
        pool.request_instance("trainer", {"job_id": "a"})
        state = client.get("/pool").json()["pool"]
        assert state["total"] == 1
        assert state["by_state"] == {"provisioning": 1}

    def test_sweeper_run_dry(self):
        provider = FakeProvider()
        provider.add_instance("x1", started_at=0)
        set_sweeper(InstanceSweeper(provider=provider, termination_delays=()))
        report = client.post("/sweeper/run").json()["report"]
        assert report["dry_run"] is True
        assert [w["instance_id"] for w in report["would_terminate"]] == ["x1"]
        assert "x1" in provider.instances
        assert client.get("/sweeper").json()["sweeper"]["sweeps"] == 1


class TestAuth:
    def test_token_required_outside_dev(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setenv("SPOTFLEET_API_TOKEN", "s3cret")
        assert client.get("/jobs").status_code == 401
        assert client.get("/jobs", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/jobs", headers={"Authorization": "Bearer s3cret"}).status_code == 200
        assert client.get("/healthz").status_code == 200

    def test_missing_token_config(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setattr(api, "API_TOKEN", "")
        monkeypatch.delenv("SPOTFLEET_API_TOKEN", raising=False)
        resp = client.get("/jobs")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "auth_config_error"
