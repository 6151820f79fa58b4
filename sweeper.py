# Spotfleet Instance Sweeper
# The last line of defence against a forgotten GPU billing all weekend.
# Walks every instance the provider says we have and terminates:
#   orphan : no job ever referenced it and the pool does not own it
#   stuck  : its job is still live but past max runtime or silent too long
#   stale  : its jobs are all finished and nothing has touched it since
# Catches worker crashes, failed terminations and anything else that leaks.

import logging
import os
import threading
import time

from db import get_instance, jobs_for_instance, set_instance_fields, sqlite_connection
from events import EventType, InstanceState, JobState, TERMINAL_STATES, record_event
from provider import GONE_STATES, InstanceNotFoundError, ProviderError, get_provider
from retry import RetryExhausted, RetryPolicy, retry_call
from scheduler import fail_job
from transport import drop_transport
from warm_pool import get_warm_pool

log = logging.getLogger("spotfleet")

SWEEP_INTERVAL_SEC = int(os.environ.get("SPOTFLEET_SWEEP_INTERVAL_SEC", "300"))
MAX_RUNTIME_SEC = int(os.environ.get("SPOTFLEET_MAX_RUNTIME_SEC", str(4 * 3600)))
STUCK_THRESHOLD_SEC = int(os.environ.get("SPOTFLEET_STUCK_THRESHOLD_SEC", str(2 * 3600)))
STALE_THRESHOLD_SEC = int(os.environ.get("SPOTFLEET_STALE_THRESHOLD_SEC", "900"))
ORPHAN_GRACE_SEC = int(os.environ.get("SPOTFLEET_ORPHAN_GRACE_SEC", "600"))

# Backoff between termination attempts
TERMINATION_DELAYS = (5, 15, 30, 60, 120)


def _as_epoch(value):
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class InstanceSweeper:

    def __init__(self, provider=None, pool=None, interval=None, max_runtime=None,
                 stuck_threshold=None, stale_threshold=None, orphan_grace=None,
                 alert_callback=None, termination_delays=TERMINATION_DELAYS,
                 sleep=time.sleep, clock=time.time):
        self.provider = provider
        self._pool = pool
        self.interval = interval if interval is not None else SWEEP_INTERVAL_SEC
        self.max_runtime = max_runtime if max_runtime is not None else MAX_RUNTIME_SEC
        self.stuck_threshold = stuck_threshold if stuck_threshold is not None else STUCK_THRESHOLD_SEC
        self.stale_threshold = stale_threshold if stale_threshold is not None else STALE_THRESHOLD_SEC
        self.orphan_grace = orphan_grace if orphan_grace is not None else ORPHAN_GRACE_SEC
        self.alert_callback = alert_callback
        self.termination_delays = tuple(termination_delays)
        self.sleep = sleep
        self.clock = clock

        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None
        self.last_report = None
        self.sweeps = 0

    @property
    def pool(self):
        return self._pool if self._pool is not None else get_warm_pool()

    def _provider(self):
        return self.provider if self.provider is not None else get_provider()

    # ── classification ────────────────────────────────────────────────

    def _age(self, inst, record):
        started = _as_epoch(inst.get("started_at"))
        if started is None and record:
            started = _as_epoch(record.get("created_at"))
        return None if started is None else self.clock() - started

    def classify(self, inst, jobs, record=None):
        """
        Decide one instance. Returns (reason, detail, job) or None to keep it.
        `jobs` is every job record that references the instance, newest first.
        """
        now = self.clock()
        instance_id = inst["instance_id"]
        pool = self.pool
        member = pool.get(instance_id) if pool is not None else None

        active = next((j for j in jobs if JobState(j["status"]) not in TERMINAL_STATES), None)
        if active is not None:
            bound_at = _as_epoch(active.get("claimed_at")) or _as_epoch(active.get("started_at"))
            if bound_at is not None and now - bound_at > self.max_runtime:
                return ("stuck",
                        f"job {active['job_id']} exceeded max runtime "
                        f"({(now - bound_at) / 3600:.2f}h > {self.max_runtime / 3600:.1f}h)",
                        active)
            updated = _as_epoch(active.get("updated_at"))
            if updated is not None and now - updated > self.stuck_threshold:
                return ("stuck",
                        f"job {active['job_id']} {active['status']} with no update for "
                        f"{int((now - updated) // 60)}min",
                        active)
            return None

        if member is not None and member["state"] != InstanceState.BUSY:
            # ready/idle members are the reaper's business, starting ones the cold path's
            return None

        if jobs or member is not None:
            last = max(
                (_as_epoch(j.get("completed_at")) or _as_epoch(j.get("updated_at")) or 0
                 for j in jobs),
                default=0,
            )
            if record:
                last = max(last, _as_epoch(record.get("last_activity_at")) or 0)
            if member is not None:
                last = max(last, _as_epoch(member.get("last_activity_at")) or 0)
            if now - last > self.stale_threshold:
                what = "busy in pool with no live job" if member is not None else "jobs finished"
                return ("stale",
                        f"{what}, idle for {int(now - last)}s "
                        f"(threshold {self.stale_threshold}s)",
                        jobs[0] if jobs else None)
            return None

        age = self._age(inst, record)
        if age is not None and age > self.orphan_grace:
            return ("orphan", f"no job record references it (age {int(age)}s)", None)
        return None

    # ── sweep ─────────────────────────────────────────────────────────

    def sweep(self, dry_run=False):
        """One pass. Concurrent calls return {"skipped": True}."""
        if not self._sweep_lock.acquire(blocking=False):
            log.debug("SWEEP already in progress, skipping")
            return {"skipped": True}

        started = self.clock()
        report = {
            "instances_checked": 0,
            "terminated": [],
            "would_terminate": [],
            "errors": [],
            "dry_run": dry_run,
            "started_at": started,
        }
        try:
            try:
                instances = self._provider().list_instances()
            except ProviderError as e:
                log.error("SWEEP LIST FAILED err=%s", e)
                report["errors"].append({"instance_id": None, "error": f"list_instances: {e}"})
                return report

            live = [i for i in instances
                    if (i.get("status") or "").lower() not in GONE_STATES and i.get("instance_id")]
            report["instances_checked"] = len(live)

            for inst in live:
                instance_id = str(inst["instance_id"])
                try:
                    with sqlite_connection() as conn:
                        jobs = jobs_for_instance(conn, instance_id)
                        record = get_instance(conn, instance_id)
                    verdict = self.classify(inst, jobs, record)
                    if verdict is None:
                        continue
                    reason, detail, job = verdict
                    finding = {
                        "instance_id": instance_id,
                        "reason": reason,
                        "detail": detail,
                        "job_id": job["job_id"] if job else None,
                    }
                    if dry_run:
                        report["would_terminate"].append(finding)
                        log.info("SWEEP WOULD TERMINATE instance=%s reason=%s (%s)",
                                 instance_id, reason, detail)
                        continue

                    log.warning("SWEEP TERMINATE instance=%s reason=%s (%s)", instance_id, reason, detail)
                    self.terminate(instance_id, reason)
                    if reason == "stuck" and job is not None:
                        try:
                            fail_job(job["job_id"], f"timeout: {detail}", actor="sweeper")
                        except ValueError as e:
                            log.info("SWEEP job=%s already terminal: %s", job["job_id"], e)
                    report["terminated"].append(finding)
                except Exception as e:
                    log.error("SWEEP ERROR instance=%s err=%s", instance_id, e, exc_info=True)
                    report["errors"].append({"instance_id": instance_id, "error": str(e)})

            return report
        finally:
            report["duration_sec"] = round(self.clock() - started, 3)
            self.last_report = report
            self.sweeps += 1
            self._sweep_lock.release()
            if report["terminated"]:
                log.info("SWEEP COMPLETE checked=%d terminated=%d errors=%d",
                         report["instances_checked"], len(report["terminated"]), len(report["errors"]))
            else:
                log.debug("SWEEP COMPLETE checked=%d nothing terminated", report["instances_checked"])
            if (report["terminated"] or report["errors"]) and self.alert_callback:
                try:
                    self.alert_callback(report)
                except Exception as e:
                    log.error("SWEEP ALERT CALLBACK failed: %s", e)

    def terminate(self, instance_id, reason):
        """
        Terminate with the backoff schedule. Not-found counts as terminated.
        Raises RetryExhausted when every attempt failed.
        """
        instance_id = str(instance_id)
        provider = self._provider()

        def attempt(_):
            try:
                provider.terminate_instance(instance_id)
                return "terminated"
            except InstanceNotFoundError:
                log.info("SWEEP instance=%s already gone", instance_id)
                return "not_found"

        policy = RetryPolicy(
            max_attempts=len(self.termination_delays) + 1,
            delays=self.termination_delays,
            retry_on=(ProviderError,),
        )
        try:
            outcome = retry_call(attempt, policy, sleep=self.sleep, label=f"terminate {instance_id}")
        except RetryExhausted:
            log.error("SWEEP TERMINATE GAVE UP instance=%s reason=%s", instance_id, reason)
            raise

        now = self.clock()
        pool = self.pool
        if pool is not None and pool.owns(instance_id):
            pool.forget(instance_id, reason=reason)
        else:
            drop_transport(instance_id)
        set_instance_fields(instance_id, status="terminated", terminated_reason=reason,
                            terminated_at=now)
        try:
            record_event(EventType.SWEEP_TERMINATED, "instance", instance_id, actor="sweeper",
                         reason=reason, outcome=outcome)
        except Exception as e:
            log.debug("Sweep event skip: %s", e)
        return outcome

    # ── background ────────────────────────────────────────────────────

    def start(self, interval=None):
        """Sweep now, then every `interval` seconds in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            log.warning("SWEEPER already running")
            return self._thread
        if interval is not None:
            self.interval = interval
        self._stop.clear()

        def loop():
            failures = 0
            wait = 0
            while not self._stop.wait(wait):
                try:
                    self.sweep()
                    failures = 0
                    wait = self.interval
                except Exception as e:
                    failures += 1
                    wait = min(2 ** failures, 300)
                    log.error("SWEEPER error (retry in %ds): %s", wait, e, exc_info=True)

        log.info("SWEEPER START interval=%ds max_runtime=%ds stuck=%ds orphan_grace=%ds",
                 self.interval, self.max_runtime, self.stuck_threshold, self.orphan_grace)
        self._thread = threading.Thread(target=loop, name="instance-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            log.info("SWEEPER STOPPED")

    def get_status(self):
        """For health checks."""
        return {
            "running": self._thread is not None and self._thread.is_alive(),
            "sweeping": self._sweep_lock.locked(),
            "sweeps": self.sweeps,
            "last_report": self.last_report,
            "config": {
                "interval_sec": self.interval,
                "max_runtime_sec": self.max_runtime,
                "stuck_threshold_sec": self.stuck_threshold,
                "stale_threshold_sec": self.stale_threshold,
                "orphan_grace_sec": self.orphan_grace,
                "termination_delays": list(self.termination_delays),
            },
        }


_sweeper = None


def get_sweeper():
    return _sweeper


def set_sweeper(sweeper):
    global _sweeper
    _sweeper = sweeper
    return sweeper
