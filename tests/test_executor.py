"""Tests for the job executor: phases, polling, failure handling, cost."""

import sqlite3

import pytest

import executor as executor_mod
from billing import usage_for_job
from executor import (
    ExecutionTimeout,
    JobExecutor,
    build_wrapper_script,
    parse_progress,
)
from fakes import FakeTransport
from scheduler import claim_job, get_job, submit_job
from transport import TransportError, TransportTimeout

DONE = '{"completed": true, "exit_code": 0, "timestamp": "2026-01-01T00:00:00"}'


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _claimed(request_type="training", tier=None, **kwargs):
    kwargs.setdefault("command", "python train.py --steps 100")
    job = submit_job(request_type, tier=tier, **kwargs)
    return claim_job(job["job_id"], "inst-1")


def _executor(transport, tmp_path, clock=None, **kwargs):
    return JobExecutor(
        transport, {"instance_id": "inst-1", "hourly_rate": 0.5},
        local_root=str(tmp_path / "out"), sleep=lambda s: None,
        clock=clock or Clock(1000.0), **kwargs,
    )


def _happy_rules(status=DONE):
    return [
        ("setsid nohup", "4242"),
        ("status.json", status),
        ("kill -0", "stopped"),
        ("find . -type f", "model.safetensors 2048\nsamples/0.png 100"),
        ("tail -n", "step 100/100"),
    ]


class TestProcess:
    def test_success_completes_and_bills(self, tmp_path):
        job = _claimed()
        transport = FakeTransport(rules=_happy_rules())
        released = []
        clock = Clock(1000.0 + 3600)
        outcome = _executor(transport, tmp_path, clock=clock).process(job, {
            "instance_id": "inst-1",
            "hourly_rate": 0.5,
            "claimed_at": 1000.0,
            "release": lambda iid, rt: released.append((iid, rt)),
        })

        assert outcome["success"] is True
        assert outcome["gpu_seconds"] == 3600
        assert outcome["cost_usd"] == 0.5
        stored = get_job(job["job_id"])
        assert stored["status"] == "completed"
        assert stored["pid"] == 4242
        assert stored["resource_usage"]["cost_usd"] == 0.5
        assert stored["result"]["files"] == ["model.safetensors", "samples/0.png"]
        assert released == [("inst-1", "training")]
        assert usage_for_job(job["job_id"])[0]["cost_usd"] == 0.5
        assert transport.downloads

    def test_release_runs_when_terminal_write_fails(self, tmp_path, monkeypatch):
        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(executor_mod, "complete_job", locked)
        monkeypatch.setattr(executor_mod, "record_usage", locked)
        job = _claimed()
        released = []
        outcome = _executor(FakeTransport(rules=_happy_rules()), tmp_path,
                            clock=Clock(1000.0 + 60)).process(
            job, {"claimed_at": 1000.0, "release": lambda iid, rt: released.append(iid)})

        assert released == ["inst-1"]
        assert outcome["gpu_seconds"] == 60
        assert get_job(job["job_id"])["status"] == "running"

    def test_release_runs_when_failure_write_fails(self, tmp_path, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("event store unavailable")

        monkeypatch.setattr(executor_mod, "fail_job", boom)
        job = _claimed()
        released = []
        rules = [("mkdir -p", TransportError("connection reset"))]
        outcome = _executor(FakeTransport(rules=rules), tmp_path).process(
            job, {"claimed_at": 1000.0, "release": lambda iid, rt: released.append(iid)})

        assert outcome["success"] is False
        assert released == ["inst-1"]

    def test_tier_multiplier_applied(self, tmp_path):
        job = _claimed(tier="free")
        transport = FakeTransport(rules=_happy_rules())
        outcome = _executor(transport, tmp_path, clock=Clock(1000.0 + 3600)).process(
            job, {"claimed_at": 1000.0, "release": lambda *a: None})
        assert outcome["cost_usd"] == 0.75

    def test_nonzero_exit_fails_job_but_still_bills(self, tmp_path):
        job = _claimed()
        rules = _happy_rules('{"completed": true, "exit_code": 3}')
        rules[-1] = ("tail -n", "Traceback\nCUDA out of memory")
        released = []
        outcome = _executor(FakeTransport(rules=rules), tmp_path, clock=Clock(1060.0)).process(
            job, {"claimed_at": 1000.0, "release": lambda iid, rt: released.append(iid)})

        assert outcome["success"] is False
        assert outcome["error"].startswith("poll failed: workload exited with code 3")
        assert "CUDA out of memory" in outcome["error"]
        stored = get_job(job["job_id"])
        assert stored["status"] == "failed"
        assert stored["resource_usage"]["gpu_seconds"] == 60
        assert released == ["inst-1"]

    def test_upload_failure_fails_from_claimed(self, tmp_path):
        job = _claimed()
        transport = FakeTransport(rules=[("mkdir -p", TransportError("connection reset"))])
        outcome = _executor(transport, tmp_path).process(job, {"release": lambda *a: None})
        assert outcome["error"] == "upload failed: connection reset"
        assert get_job(job["job_id"])["status"] == "failed"
        assert get_job(job["job_id"])["started_at"] is None

    def test_start_timeout_is_not_fatal(self, tmp_path):
        job = _claimed()
        rules = [("setsid nohup", TransportTimeout("held open")), ("job.pid", "777")]
        rules += _happy_rules()[1:]
        outcome = _executor(FakeTransport(rules=rules), tmp_path).process(
            job, {"release": lambda *a: None})
        assert outcome["success"] is True
        assert get_job(job["job_id"])["pid"] == 777

    def test_job_without_command_fails(self, tmp_path):
        job = _claimed(command=None)
        outcome = _executor(FakeTransport(rules=_happy_rules()), tmp_path).process(
            job, {"release": lambda *a: None})
        assert outcome["error"].startswith("start failed")

    def test_job_already_failed_keeps_usage(self, tmp_path):
        from scheduler import fail_job

        job = _claimed()
        fail_job(job["job_id"], "timeout: stuck", actor="sweeper")
        outcome = _executor(FakeTransport(rules=_happy_rules()), tmp_path, clock=Clock(1010.0)).process(
            job, {"claimed_at": 1000.0, "release": lambda *a: None})
        stored = get_job(job["job_id"])
        assert stored["status"] == "failed"
        assert stored["error"] == "timeout: stuck"
        assert stored["resource_usage"]["gpu_seconds"] == 10
        assert outcome["success"] is False


class TestPoll:
    def test_progress_recorded_while_running(self, tmp_path):
        job = _claimed()
        reads = {"n": 0}

        def status(_):
            reads["n"] += 1
            return DONE if reads["n"] > 2 else "{}"

        transport = FakeTransport(rules=[
            ("status.json", status),
            ("kill -0", "running"),
            ("tail -n", "epoch 1 | step 40/100 loss=0.1"),
        ])
        ex = _executor(transport, tmp_path)
        ex.job_root = "/workspace/jobs/" + job["job_id"]
        assert ex.poll(job) == 0
        assert get_job(job["job_id"])["progress"]["step"] == 40

    def test_process_gone_without_status(self, tmp_path):
        job = _claimed()
        transport = FakeTransport(rules=[("status.json", "{}"), ("kill -0", "stopped")])
        ex = _executor(transport, tmp_path)
        ex.job_root = "/workspace/jobs/x"
        with pytest.raises(Exception, match="wrote no status"):
            ex.poll(job)

    def test_timeout_kills_workload(self, tmp_path):
        job = _claimed()
        clock = Clock(0.0)

        def advance(_):
            clock.now += 100
            return "{}"

        transport = FakeTransport(rules=[("status.json", advance), ("kill -0", "running")])
        ex = _executor(transport, tmp_path, clock=clock, max_wait=250)
        ex.job_root = "/workspace/jobs/x"
        with pytest.raises(ExecutionTimeout):
            ex.poll(job)
        assert any(c.startswith("[ -f") and "kill $(cat" in c for c in transport.commands)

    def test_transport_errors_tolerated_then_raised(self, tmp_path):
        job = _claimed()
        transport = FakeTransport(rules=[("status.json", TransportError("reset"))])
        ex = _executor(transport, tmp_path)
        ex.job_root = "/workspace/jobs/x"
        with pytest.raises(TransportError):
            ex.poll(job)
        assert sum("status.json" in c for c in transport.commands) == 5


class TestDatasetUpload:
    def test_dataset_packed_uploaded_verified(self, tmp_path):
        ds = tmp_path / "ds"
        ds.mkdir()
        (ds / "a.png").write_bytes(b"x" * 10)
        (ds / "a.txt").write_text("a cat")
        job = _claimed(dataset_dir=str(ds))
        transport = FakeTransport(rules=_happy_rules())
        transport.rules.insert(0, ("cd /workspace/jobs/%s/dataset" % job["job_id"], "a.png 10\na.txt 5"))
        outcome = _executor(transport, tmp_path).process(job, {"release": lambda *a: None})
        assert outcome["success"] is True
        remote = [r for _, r in transport.uploads]
        assert any(r.endswith("/dataset.tar.gz") for r in remote)
        assert any(r.endswith("/dataset_manifest.json") for r in remote)
        assert any("tar -xzf dataset.tar.gz -C dataset" in c for c in transport.commands)

    def test_dataset_size_mismatch_fails(self, tmp_path):
        ds = tmp_path / "ds"
        ds.mkdir()
        (ds / "a.png").write_bytes(b"x" * 10)
        job = _claimed(dataset_dir=str(ds))
        transport = FakeTransport(rules=[("/dataset && find", "a.png 3")] + _happy_rules())
        outcome = _executor(transport, tmp_path).process(job, {"release": lambda *a: None})
        assert outcome["error"].startswith("upload failed: dataset verification failed")


class TestHelpers:
    def test_parse_progress_step(self):
        p = parse_progress(["loading", "step 250/1000 loss 0.2"])
        assert p["step"] == 250 and p["percent"] == 25.0

    def test_parse_progress_tqdm(self):
        assert parse_progress(["  45/90 [00:10<00:10]"])["percent"] == 50.0

    def test_parse_progress_percent(self):
        assert parse_progress(["done 87.5%"])["percent"] == 87.5

    def test_parse_progress_none(self):
        assert parse_progress(["nothing here", ""]) is None

    def test_wrapper_writes_status_and_pid(self):
        script = build_wrapper_script("j1", "/workspace/jobs/j1", "python run.py", {"HF_HOME": "/cache"})
        assert "echo $WORK_PID > /workspace/jobs/j1/job.pid" in script
        assert "/workspace/jobs/j1/status.json" in script
        assert "export HF_HOME=/cache" in script
        assert "python run.py >> /workspace/jobs/j1/logs/job.log 2>&1 &" in script

    def test_wrapper_rejects_bad_env_name(self):
        with pytest.raises(ValueError):
            build_wrapper_script("j1", "/r", "true", {"BAD NAME;rm": "x"})
