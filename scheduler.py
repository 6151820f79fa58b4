# Spotfleet: rented spot GPUs for bursty jobs, paid for by the second.
# Pull-based queue in SQLite. Warm pool in memory. Every transition audited.
# Match jobs to warm instances, cold-start only when nothing fits.

import json
import logging
import os
import smtplib
import sqlite3
import threading
import time
import uuid
from email.mime.text import MIMEText

import requests

from billing import TIER_MULTIPLIERS, total_spend
from db import (
    claim_job_row,
    get_job as _get_job_conn,
    load_jobs,
    save_instance,
    sqlite_connection,
    sqlite_transaction,
    upsert_job,
    _db_path,
)
from events import (
    EventType,
    JobState,
    TERMINAL_STATES,
    record_event,
    record_job_transition,
    validate_transition,
)
from warm_pool import get_warm_pool

LOG_FILE = os.environ.get(
    "SPOTFLEET_LOG_FILE", os.path.join(os.path.dirname(__file__), "spotfleet.log")
)


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """
    Console + file, one format, one logger. Safe to call repeatedly.
    """
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("spotfleet")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    # File handler: the permanent record
    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    # Console handler: see it live
    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = setup_logging()


# ── Workload Routing ──────────────────────────────────────────────────

REQUEST_TYPE_TO_WORKLOAD = {
    "comfy-workflow": "comfy-worker",
    "lora-inference": "comfy-worker",
    "image-gen": "comfy-worker",
    "training": "trainer",
}
DEFAULT_WORKLOAD = "custom-runner"

# How far down the queue schedule_next() looks for an affinity match
SCHEDULE_WINDOW = 200


def workload_type_for(job_or_request_type):
    """Instance workload type for a job dict or a bare request type."""
    if isinstance(job_or_request_type, dict):
        if job_or_request_type.get("workload_type"):
            return job_or_request_type["workload_type"]
        job_or_request_type = job_or_request_type.get("request_type")
    return REQUEST_TYPE_TO_WORKLOAD.get(job_or_request_type, DEFAULT_WORKLOAD)


_metrics_lock = threading.Lock()
_metrics = {
    "scheduled": 0,
    "affinity_hits": 0,
    "affinity_misses": 0,
    "spinup_requests": 0,
    "claims": 0,
    "claim_conflicts": 0,
    "last_schedule_at": None,
}


def _bump(key, n=1):
    with _metrics_lock:
        _metrics[key] += n


def get_metrics():
    """Scheduling counters plus the affinity hit rate."""
    with _metrics_lock:
        m = dict(_metrics)
    m["affinity_hit_rate"] = (
        round(m["affinity_hits"] / m["scheduled"], 3) if m["scheduled"] else 0.0
    )
    return m


def reset_metrics():
    with _metrics_lock:
        for k in _metrics:
            _metrics[k] = None if k == "last_schedule_at" else 0


# ── Job Queue ─────────────────────────────────────────────────────────


def submit_job(request_type, priority=0, tier=None, model=None, payload=None,
               dataset_dir=None, command=None, image=None, criteria=None):
    """
    Queue a job. Higher priority goes first, FIFO inside a priority.
    `model` is the affinity key: jobs that need the model an instance
    already has loaded jump ahead of equal-priority jobs that do not.
    """
    if not request_type:
        raise ValueError("request_type is required")
    if tier and tier not in TIER_MULTIPLIERS:
        log.warning("UNKNOWN TIER '%s', billing at base rate", tier)

    now = time.time()
    job = {
        "job_id": str(uuid.uuid4())[:8],
        "request_type": request_type,
        "workload_type": workload_type_for(request_type),
        "status": JobState.QUEUED.value,
        "priority": int(priority or 0),
        "tier": tier,
        "model": model,
        "payload": payload or {},
        "dataset_dir": dataset_dir,
        "command": command,
        "image": image,
        "criteria": criteria or {},
        "instance_id": None,
        "submitted_at": now,
        "claimed_at": None,
        "started_at": None,
        "completed_at": None,
        "updated_at": now,
        "progress": None,
        "resource_usage": None,
        "result": None,
        "error": None,
    }

    with sqlite_transaction() as conn:
        upsert_job(conn, job)

    record_event(EventType.JOB_SUBMITTED, "job", job["job_id"],
                 request_type=request_type, priority=job["priority"], model=model)
    log.info(
        "JOB SUBMITTED %s | %s | workload=%s | priority=%s | model=%s",
        job["job_id"], request_type, job["workload_type"], job["priority"], model or "—",
    )
    return job


def get_job(job_id):
    with sqlite_connection() as conn:
        return _get_job_conn(conn, job_id)


def list_jobs(status=None, limit=None):
    """List jobs. Filter by status or get everything."""
    with sqlite_connection() as conn:
        return load_jobs(conn, status=status, limit=limit)


def queued_jobs(limit=None):
    """Queued jobs, priority DESC then oldest first."""
    return list_jobs(status=JobState.QUEUED.value, limit=limit)


def order_by_affinity(jobs, loaded_models=None):
    """
    Reorder jobs to minimize model swaps without breaking priority.

    Inside each priority band: jobs whose model is already loaded come
    first, then the remaining model groups largest first, FIFO inside a
    group, and jobs with no model last.
    """
    loaded = set(loaded_models or ())
    bands = {}
    for job in jobs:
        bands.setdefault(int(job.get("priority") or 0), []).append(job)

    ordered = []
    for priority in sorted(bands, reverse=True):
        groups = {}
        no_model = []
        for job in bands[priority]:
            model = job.get("model")
            if model:
                groups.setdefault(model, []).append(job)
            else:
                no_model.append(job)
        for group in groups.values():
            group.sort(key=lambda j: j.get("submitted_at") or 0)
        no_model.sort(key=lambda j: j.get("submitted_at") or 0)

        # dict order breaks size ties by first appearance, which is queue order
        names = sorted(groups, key=lambda m: (0 if m in loaded else 1, -len(groups[m])))
        for name in names:
            ordered.extend(groups[name])
        ordered.extend(no_model)
    return ordered


def schedule_next(exclude=None, pool=None):
    """
    Match the next job to an instance. Pure: no claim, no provisioning.

    Returns {"job", "instance", "needs_provisioning"} or None when nothing
    is queued. needs_provisioning=True means no available instance of the
    job's workload type exists and the caller should cold-start one.
    `exclude` skips job ids the caller is already provisioning for.
    """
    pool = pool if pool is not None else get_warm_pool()
    exclude = set(exclude or ())
    jobs = [j for j in queued_jobs(limit=SCHEDULE_WINDOW) if j["job_id"] not in exclude]
    if not jobs:
        return None

    loaded = set()
    if pool is not None:
        for wt in {workload_type_for(j) for j in jobs}:
            loaded |= pool.loaded_models(wt)
    ordered = order_by_affinity(jobs, loaded)

    if pool is not None:
        for job in ordered:
            instance = pool.get_available_instance(workload_type_for(job), model=job.get("model"))
            if instance is None:
                continue
            have = instance.get("loaded_model")
            if have and job.get("model") == have:
                _bump("affinity_hits")
            elif have and job.get("model"):
                _bump("affinity_misses")
            _bump("scheduled")
            with _metrics_lock:
                _metrics["last_schedule_at"] = time.time()
            log.debug("SCHEDULE job=%s instance=%s", job["job_id"], instance["instance_id"])
            return {"job": job, "instance": instance, "needs_provisioning": False}

    job = ordered[0]
    _bump("spinup_requests")
    log.debug("SCHEDULE job=%s needs provisioning (%s)", job["job_id"], workload_type_for(job))
    return {"job": job, "instance": None, "needs_provisioning": True}


def claim_job(job_id, instance_id, pool=None, model=None):
    """
    Atomically bind a queued job to an instance. Exactly one of any number
    of concurrent callers wins; the rest get None. Never raises on conflict.
    """
    instance_id = str(instance_id)
    pool = pool if pool is not None else get_warm_pool()
    pooled = pool is not None and pool.owns(instance_id)

    if pooled and not pool.mark_busy(instance_id, job_id, model=model):
        _bump("claim_conflicts")
        log.warning("CLAIM CONFLICT job=%s instance=%s not available in pool", job_id, instance_id)
        return None

    now = time.time()
    try:
        with sqlite_transaction() as conn:
            job = claim_job_row(conn, job_id, instance_id, now)
    except sqlite3.Error as e:
        log.error("CLAIM FAILED job=%s instance=%s err=%s", job_id, instance_id, e)
        job = None

    if job is None:
        _bump("claim_conflicts")
        if pooled:
            # roll back the binding
            if not pool.release(instance_id):
                pool.unreserve(instance_id)
        log.warning("CLAIM CONFLICT job=%s instance=%s already claimed or not queued",
                    job_id, instance_id)
        return None

    if not pooled:
        try:
            save_instance({"instance_id": instance_id, "status": "busy", "job_id": job_id,
                           "workload_type": job.get("workload_type"), "created_at": now,
                           "last_activity_at": now})
        except sqlite3.Error as e:
            log.warning("INSTANCE RECORD FAILED instance=%s err=%s", instance_id, e)

    _bump("claims")
    record_job_transition(job_id, JobState.QUEUED, JobState.CLAIMED, instance_id=instance_id)
    log.info("JOB CLAIMED job=%s instance=%s", job_id, instance_id)
    return job


def _transition(job_id, target, actor="executor", **fields):
    """Validated transition + field update in one write transaction."""
    with sqlite_transaction() as conn:
        job = _get_job_conn(conn, job_id)
        if job is None:
            raise ValueError(f"Unknown job {job_id}")
        current = job["status"]
        validate_transition(current, target, kind="job")
        now = time.time()
        job.update(fields)
        job["status"] = JobState(target).value
        job["updated_at"] = now
        upsert_job(conn, job)
    record_job_transition(job_id, current, target, actor=actor,
                          **{k: v for k, v in fields.items() if k in ("error", "instance_id", "pid")})
    return job


def start_job(job_id, pid=None):
    """claimed → running once the detached workload is launched."""
    job = _transition(job_id, JobState.RUNNING, started_at=time.time(), pid=pid)
    log.info("JOB RUNNING job=%s instance=%s pid=%s", job_id, job.get("instance_id"), pid)
    return job


def complete_job(job_id, result=None, usage=None):
    job = _transition(job_id, JobState.COMPLETED, completed_at=time.time(),
                      result=result, resource_usage=usage)
    dur = (job["completed_at"] - job["started_at"]) if job.get("started_at") else None
    log.info("JOB COMPLETED job=%s duration=%s cost=%s", job_id,
             f"{dur:.1f}s" if dur is not None else "—",
             (usage or {}).get("cost_usd"))
    alert_job_completed(job_id, job.get("request_type", "?"), dur)
    return job


def fail_job(job_id, error, usage=None, actor="executor"):
    """claimed/running → failed with the originating error attached."""
    fields = {"completed_at": time.time(), "error": str(error)}
    if usage is not None:
        fields["resource_usage"] = usage
    job = _transition(job_id, JobState.FAILED, actor=actor, **fields)
    log.warning("JOB FAILED job=%s instance=%s error=%s", job_id, job.get("instance_id"), error)
    alert_job_failed(job_id, job.get("request_type", "?"), job.get("instance_id"), str(error))
    return job


def set_job_usage(job_id, usage):
    """Attach resource usage without a transition (job already terminal)."""
    with sqlite_transaction() as conn:
        job = _get_job_conn(conn, job_id)
        if job is None:
            return None
        job["resource_usage"] = usage
        job["updated_at"] = time.time()
        upsert_job(conn, job)
    return job


def record_progress(job_id, progress):
    """Store the latest parsed progress. Also counts as a heartbeat."""
    with sqlite_transaction() as conn:
        job = _get_job_conn(conn, job_id)
        if job is None or JobState(job["status"]) in TERMINAL_STATES:
            return None
        job["progress"] = progress
        job["updated_at"] = time.time()
        upsert_job(conn, job)
    return job


def touch_job(job_id):
    """Heartbeat: bump updated_at on a live job."""
    return record_progress(job_id, (get_job(job_id) or {}).get("progress"))


# ── Alerts ────────────────────────────────────────────────────────────

ALERT_CONFIG = {
    "email_enabled": os.environ.get("SPOTFLEET_ALERT_EMAIL", "").lower() in ("1", "true", "yes"),
    "smtp_host": os.environ.get("SPOTFLEET_SMTP_HOST", ""),
    "smtp_port": int(os.environ.get("SPOTFLEET_SMTP_PORT", "587")),
    "smtp_user": os.environ.get("SPOTFLEET_SMTP_USER", ""),
    "smtp_pass": os.environ.get("SPOTFLEET_SMTP_PASS", ""),
    "email_from": os.environ.get("SPOTFLEET_EMAIL_FROM", ""),
    "email_to": os.environ.get("SPOTFLEET_EMAIL_TO", ""),
    "telegram_enabled": bool(os.environ.get("SPOTFLEET_TG_TOKEN")),
    "telegram_bot_token": os.environ.get("SPOTFLEET_TG_TOKEN", ""),
    "telegram_chat_id": os.environ.get("SPOTFLEET_TG_CHAT_ID", ""),
}


def configure_alerts(**kwargs):
    """Update alert config at runtime."""
    ALERT_CONFIG.update(kwargs)


def send_email(subject, body):
    cfg = ALERT_CONFIG
    if not cfg["email_enabled"]:
        return False
    try:
        msg = MIMEText(body)
        msg["Subject"] = f"[Spotfleet] {subject}"
        msg["From"] = cfg["email_from"]
        msg["To"] = cfg["email_to"]
        with smtplib.SMTP(cfg["smtp_host"], cfg["smtp_port"]) as server:
            server.starttls()
            server.login(cfg["smtp_user"], cfg["smtp_pass"])
            server.send_message(msg)
        log.info("EMAIL SENT: %s -> %s", subject, cfg["email_to"])
        return True
    except (OSError, smtplib.SMTPException) as e:
        log.error("EMAIL FAILED: %s | %s", subject, e)
        return False


def send_telegram(message):
    cfg = ALERT_CONFIG
    if not cfg["telegram_enabled"]:
        return False
    try:
        resp = requests.post(
            f"https://api.telegram.org/bot{cfg['telegram_bot_token']}/sendMessage",
            json={"chat_id": cfg["telegram_chat_id"], "text": f"[Spotfleet] {message}",
                  "parse_mode": "HTML"},
            timeout=10,
        )
        resp.raise_for_status()
        log.info("TELEGRAM SENT: %s", message)
        return True
    except requests.RequestException as e:
        log.error("TELEGRAM FAILED: %s | %s", message, e)
        return False


def alert(subject, body=None):
    """Fire-and-forget through every enabled channel."""
    body = body or subject
    sent = []
    if ALERT_CONFIG["email_enabled"]:
        threading.Thread(target=send_email, args=(subject, body), daemon=True).start()
        sent.append("email")
    if ALERT_CONFIG["telegram_enabled"]:
        threading.Thread(
            target=send_telegram, args=(f"<b>{subject}</b>\n{body}",), daemon=True
        ).start()
        sent.append("telegram")
    if not sent:
        log.debug("ALERT (no channels): %s", subject)
    return sent


def alert_job_failed(job_id, request_type, instance_id=None, error=""):
    alert(
        f"JOB FAILED: {request_type}",
        f"Job {job_id} ({request_type}) failed on instance {instance_id or 'unknown'}: {error}",
    )


def alert_job_completed(job_id, request_type, duration_sec=None):
    dur = f" in {duration_sec:.1f}s" if duration_sec else ""
    alert(f"JOB COMPLETE: {request_type}", f"Job {job_id} ({request_type}) completed{dur}.")


def alert_sweep_report(report):
    """Sweeper alert callback: one message per sweep that did something."""
    lines = [f"{t['instance_id']}: {t['reason']}" for t in report.get("terminated", [])]
    lines += [f"error: {e}" for e in report.get("errors", [])]
    alert(
        f"SWEEP: {len(report.get('terminated', []))} terminated, {len(report.get('errors', []))} errors",
        "\n".join(lines) or json.dumps(report, default=str),
    )


# ── Health + Metrics ──────────────────────────────────────────────────


def storage_healthcheck():
    """Basic readiness check for SQLite persistence."""
    db_file = _db_path()
    try:
        with sqlite3.connect(db_file, timeout=5) as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS healthcheck (id INTEGER PRIMARY KEY, checked_at REAL)"
            )
            conn.execute("INSERT INTO healthcheck(checked_at) VALUES (?)", (time.time(),))
            conn.commit()
        return {"ok": True, "db_path": db_file}
    except sqlite3.Error as exc:
        log.error("STORAGE HEALTHCHECK FAILED db=%s err=%s", db_file, exc)
        return {"ok": False, "db_path": db_file, "error": str(exc)}


def jobs_by_status():
    with sqlite_connection() as conn:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
    return {r["status"]: r["n"] for r in rows}


def get_metrics_snapshot():
    """Scheduler metrics for observability endpoints."""
    counts = jobs_by_status()
    pool = get_warm_pool()
    pool_state = pool.get_pool_state() if pool is not None else None
    return {
        "queue_depth": counts.get(JobState.QUEUED.value, 0),
        "jobs_by_status": counts,
        "running_jobs": counts.get(JobState.RUNNING.value, 0),
        "failed_jobs": counts.get(JobState.FAILED.value, 0),
        "scheduler": get_metrics(),
        "pool": {
            "total": pool_state["total"],
            "by_state": pool_state["by_state"],
            "by_type": pool_state["by_type"],
        } if pool_state else None,
        "total_spend_usd": total_spend(),
    }
