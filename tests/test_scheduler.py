"""Tests for the job queue, affinity ordering, matching and claim atomicity."""

import threading

import pytest

import db
import scheduler
from events import EventType, get_event_store
from scheduler import (
    claim_job,
    complete_job,
    fail_job,
    get_job,
    get_metrics,
    list_jobs,
    order_by_affinity,
    record_progress,
    schedule_next,
    start_job,
    submit_job,
    workload_type_for,
)
from warm_pool import WarmPoolManager


def _pool(**kwargs):
    n = {"i": 0}

    def provisioner(workload_type, opts):
        n["i"] += 1
        return {"instance_id": f"i-{n['i']}", "hourly_rate": 0.4, "ssh_host": "h"}

    kwargs.setdefault("max_pool_size", 4)
    kwargs.setdefault("max_total", 8)
    return WarmPoolManager(provisioner=provisioner, persist=False, **kwargs)


def _ready_instance(pool, workload_type, model=None):
    """Provision, mark ready, optionally load a model, leave it idle."""
    handle = pool.request_instance(workload_type, {"job_id": "setup"}, wait=False)
    iid = handle["instance_id"]
    pool.mark_ready(iid, {"ssh_host": "h"})
    if model:
        pool.mark_busy(iid, "setup", model=model)
        pool.release(iid)
    else:
        pool.unreserve(iid)
    return iid


# ── Queue ─────────────────────────────────────────────────────────────


class TestQueue:
    def test_submit_persists_queued_job(self):
        job = submit_job("training", priority=2, command="python train.py")
        stored = get_job(job["job_id"])
        assert stored["status"] == "queued"
        assert stored["priority"] == 2
        assert stored["workload_type"] == "trainer"

    def test_submit_requires_request_type(self):
        with pytest.raises(ValueError):
            submit_job("")

    def test_queue_order_priority_then_fifo(self):
        a = submit_job("image-gen", priority=0)
        b = submit_job("image-gen", priority=5)
        c = submit_job("image-gen", priority=0)
        ids = [j["job_id"] for j in list_jobs(status="queued")]
        assert ids.index(b["job_id"]) == 0
        assert ids.index(a["job_id"]) < ids.index(c["job_id"])

    def test_submit_records_event(self):
        job = submit_job("comfy-workflow")
        history = get_event_store().get_entity_history("job", job["job_id"])
        assert [e.event_type for e in history] == [EventType.JOB_SUBMITTED.value]

    def test_workload_routing(self):
        assert workload_type_for("lora-inference") == "comfy-worker"
        assert workload_type_for("training") == "trainer"
        assert workload_type_for("something-else") == "custom-runner"
        assert workload_type_for({"request_type": "image-gen"}) == "comfy-worker"


# ── Affinity ordering ─────────────────────────────────────────────────


class TestAffinity:
    def _job(self, jid, model=None, priority=0, t=0):
        return {"job_id": jid, "model": model, "priority": priority, "submitted_at": t}

    def test_loaded_model_first(self):
        jobs = [self._job("1", "a", t=1), self._job("2", "b", t=2), self._job("3", "a", t=3)]
        ordered = order_by_affinity(jobs, {"b"})
        assert [j["job_id"] for j in ordered] == ["2", "1", "3"]

    def test_larger_group_first_without_loaded(self):
        jobs = [self._job("1", "a", t=1), self._job("2", "b", t=2), self._job("3", "b", t=3)]
        ordered = order_by_affinity(jobs)
        assert [j["job_id"] for j in ordered] == ["2", "3", "1"]

    def test_priority_beats_affinity(self):
        jobs = [self._job("low", "a", priority=0, t=1), self._job("high", "b", priority=9, t=2)]
        ordered = order_by_affinity(jobs, {"a"})
        assert ordered[0]["job_id"] == "high"

    def test_no_model_jobs_last(self):
        jobs = [self._job("1", None, t=1), self._job("2", "a", t=2)]
        assert [j["job_id"] for j in order_by_affinity(jobs)] == ["2", "1"]


# ── Matching ──────────────────────────────────────────────────────────


class TestScheduleNext:
    def test_empty_queue(self):
        assert schedule_next(pool=_pool()) is None

    def test_needs_provisioning_without_instances(self):
        job = submit_job("training")
        decision = schedule_next(pool=_pool())
        assert decision["job"]["job_id"] == job["job_id"]
        assert decision["needs_provisioning"] is True
        assert decision["instance"] is None

    def test_matches_warm_instance_of_same_type(self):
        pool = _pool()
        iid = _ready_instance(pool, "comfy-worker")
        submit_job("image-gen")
        decision = schedule_next(pool=pool)
        assert decision["needs_provisioning"] is False
        assert decision["instance"]["instance_id"] == iid

    def test_ignores_instance_of_other_type(self):
        pool = _pool()
        _ready_instance(pool, "trainer")
        submit_job("image-gen")
        assert schedule_next(pool=pool)["needs_provisioning"] is True

    def test_affinity_prefers_loaded_model(self):
        pool = _pool()
        _ready_instance(pool, "comfy-worker", model="sdxl")
        submit_job("lora-inference", model="flux")
        wanted = submit_job("lora-inference", model="sdxl")
        decision = schedule_next(pool=pool)
        assert decision["job"]["job_id"] == wanted["job_id"]
        assert get_metrics()["affinity_hits"] == 1

    def test_exclude_skips_jobs(self):
        a = submit_job("training")
        b = submit_job("training")
        decision = schedule_next(exclude={a["job_id"]}, pool=_pool())
        assert decision["job"]["job_id"] == b["job_id"]


# ── Claim ─────────────────────────────────────────────────────────────


class TestClaim:
    def test_claim_binds_job(self):
        job = submit_job("training")
        claimed = claim_job(job["job_id"], "inst-1")
        assert claimed["status"] == "claimed"
        assert claimed["instance_id"] == "inst-1"
        assert db.find_instance("inst-1")["status"] == "busy"

    def test_concurrent_claims_one_winner(self):
        job = submit_job("training")
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            r = claim_job(job["job_id"], f"inst-{n}")
            with lock:
                results.append(r)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert get_job(job["job_id"])["instance_id"] == winners[0]["instance_id"]
        assert get_metrics()["claim_conflicts"] == 7

    def test_claim_non_queued_returns_none(self):
        job = submit_job("training")
        assert claim_job(job["job_id"], "a") is not None
        assert claim_job(job["job_id"], "b") is None

    def test_pooled_instance_bound_to_one_job(self):
        pool = _pool()
        iid = _ready_instance(pool, "trainer")
        a = submit_job("training")
        b = submit_job("training")
        assert claim_job(a["job_id"], iid, pool=pool) is not None
        assert claim_job(b["job_id"], iid, pool=pool) is None
        assert get_job(b["job_id"])["status"] == "queued"
        assert pool.get(iid)["job_id"] == a["job_id"]

    def test_failed_db_claim_hands_instance_back(self):
        pool = _pool()
        iid = _ready_instance(pool, "trainer")
        job = submit_job("training")
        claim_job(job["job_id"], "elsewhere")
        assert claim_job(job["job_id"], iid, pool=pool) is None
        assert pool.get_available_instance("trainer")["instance_id"] == iid


# ── Transitions ───────────────────────────────────────────────────────


class TestTransitions:
    def test_full_lifecycle(self):
        job = submit_job("training")
        claim_job(job["job_id"], "i1")
        start_job(job["job_id"], pid=42)
        done = complete_job(job["job_id"], result={"files": []}, usage={"cost_usd": 0.1})
        assert done["status"] == "completed"
        assert done["resource_usage"]["cost_usd"] == 0.1
        states = [e.data.get("new_state") for e in
                  get_event_store().get_entity_history("job", job["job_id"])]
        assert states[1:] == ["claimed", "running", "completed"]

    def test_cannot_skip_claim(self):
        job = submit_job("training")
        with pytest.raises(ValueError):
            start_job(job["job_id"])

    def test_terminal_is_final(self):
        job = submit_job("training")
        claim_job(job["job_id"], "i1")
        fail_job(job["job_id"], "boom")
        with pytest.raises(ValueError):
            complete_job(job["job_id"])
        assert get_job(job["job_id"])["error"] == "boom"

    def test_progress_ignored_after_terminal(self):
        job = submit_job("training")
        claim_job(job["job_id"], "i1")
        assert record_progress(job["job_id"], {"percent": 10.0}) is not None
        fail_job(job["job_id"], "boom")
        assert record_progress(job["job_id"], {"percent": 20.0}) is None
        assert get_job(job["job_id"])["progress"]["percent"] == 10.0


class TestHealth:
    def test_storage_healthcheck_ok(self):
        assert scheduler.storage_healthcheck()["ok"] is True

    def test_metrics_snapshot_counts_queue(self):
        submit_job("training")
        submit_job("training")
        snap = scheduler.get_metrics_snapshot()
        assert snap["queue_depth"] == 2
        assert snap["pool"] is None
        assert snap["total_spend_usd"] == 0.0

    def test_sweep_alert_without_channels(self):
        assert scheduler.alert("test") == []
