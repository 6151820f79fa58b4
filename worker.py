#!/usr/bin/env python3
# Spotfleet Worker
# The long-running service loop:
#   - polls the scheduler for the next job
#   - warm path: claim an idle pooled instance and execute on it
#   - cold path: provision + readiness in its own thread, then claim
#   - each claimed job runs on its own thread, nothing global spans a job
#   - sweeper and idle reaper run alongside
#   - SIGINT/SIGTERM: stop polling, let jobs finish, terminate the pool

# Auto-load .env file
from dotenv import load_dotenv
load_dotenv()

import argparse
import logging
import os
import signal
import sys
import threading
import time

import provider as provider_mod
import transport as transport_mod
from executor import REMOTE_ROOT, JobExecutor
from provider import ProviderError, get_provider, make_label
from provisioning import ProvisioningError, await_ready
from scheduler import (
    alert_sweep_report,
    claim_job,
    queued_jobs,
    schedule_next,
    workload_type_for,
)
from sweeper import InstanceSweeper, set_sweeper
from transport import SshTransport, get_transport
from warm_pool import WarmPoolManager, set_warm_pool

# ── Configuration ─────────────────────────────────────────────────────

POLL_INTERVAL = float(os.environ.get("SPOTFLEET_POLL_INTERVAL", "5"))
COOLDOWN = float(os.environ.get("SPOTFLEET_COOLDOWN", "1"))
CONCURRENCY = int(os.environ.get("SPOTFLEET_CONCURRENCY", "2"))
PROVISION_WAIT_SEC = int(os.environ.get("SPOTFLEET_PROVISION_WAIT_SEC", "300"))
PROVISION_RETRY_BACKOFF_SEC = int(os.environ.get("SPOTFLEET_PROVISION_RETRY_BACKOFF_SEC", "60"))
REAPER_INTERVAL = int(os.environ.get("SPOTFLEET_REAPER_INTERVAL", "15"))
MAX_CONSECUTIVE_FAILURES = int(os.environ.get("SPOTFLEET_MAX_FAILURES", "30"))
SHUTDOWN_GRACE_SEC = int(os.environ.get("SPOTFLEET_SHUTDOWN_GRACE_SEC", "30"))

VERSION = "1.0.0"

# ── Logging ───────────────────────────────────────────────────────────
# Child of "spotfleet", so the handlers from scheduler.setup_logging() apply

log = logging.getLogger("spotfleet.worker")


class FleetWorker:
    """Poll → match → (provision) → claim → execute, with bounded concurrency."""

    def __init__(self, provider, pool, sweeper=None, concurrency=None, poll_interval=None,
                 cooldown=None, dry_run=False, transport_factory=SshTransport,
                 executor_factory=JobExecutor, readiness=await_ready, clock=time.time):
        self.provider = provider
        self.pool = pool
        self.sweeper = sweeper
        self.concurrency = max(1, concurrency if concurrency is not None else CONCURRENCY)
        self.poll_interval = poll_interval if poll_interval is not None else POLL_INTERVAL
        self.cooldown = cooldown if cooldown is not None else COOLDOWN
        self.dry_run = dry_run
        self.transport_factory = transport_factory
        self.executor_factory = executor_factory
        self.readiness = readiness
        self.clock = clock

        self.shutdown = threading.Event()
        self._lock = threading.Lock()
        self._inflight = {}       # job_id -> thread
        self._backoff_until = {}  # job_id -> epoch, after a failed cold start
        self.stats = {"dispatched": 0, "completed": 0, "failed": 0, "provision_failures": 0}

    # ── bookkeeping ───────────────────────────────────────────────────

    def active_count(self):
        with self._lock:
            return len(self._inflight)

    def _excluded(self):
        now = self.clock()
        with self._lock:
            for job_id in [j for j, t in self._backoff_until.items() if t <= now]:
                del self._backoff_until[job_id]
            return set(self._inflight) | set(self._backoff_until)

    def _spawn(self, job_id, target, *args):
        def run():
            try:
                target(*args)
            except Exception as e:
                log.error("WORKER THREAD job=%s crashed: %s", job_id, e, exc_info=True)
            finally:
                with self._lock:
                    self._inflight.pop(job_id, None)

        t = threading.Thread(target=run, name=f"job-{job_id}", daemon=True)
        with self._lock:
            self._inflight[job_id] = t
        t.start()
        return t

    def _back_off(self, job_id):
        with self._lock:
            self._backoff_until[job_id] = self.clock() + PROVISION_RETRY_BACKOFF_SEC
        self.stats["provision_failures"] += 1

    # ── one pass ──────────────────────────────────────────────────────

    def tick(self):
        """One scheduling pass. Returns the decision acted on, or None."""
        if self.active_count() >= self.concurrency:
            return None
        decision = schedule_next(exclude=self._excluded(), pool=self.pool)
        if decision is None:
            return None

        job = decision["job"]
        job_id = job["job_id"]
        wt = workload_type_for(job)

        if self.dry_run:
            if decision["needs_provisioning"]:
                log.info("DRY RUN job=%s would provision a %s instance", job_id, wt)
            else:
                log.info("DRY RUN job=%s would run on instance=%s",
                         job_id, decision["instance"]["instance_id"])
            return decision

        if not decision["needs_provisioning"]:
            self.stats["dispatched"] += 1
            self._spawn(job_id, self._run_warm, job, decision["instance"])
            return decision

        depth = sum(1 for j in queued_jobs() if workload_type_for(j) == wt)
        if not self.pool.should_spinup(wt, depth):
            log.debug("WORKER job=%s waiting: %s pool at capacity or below spin-up threshold",
                      job_id, wt)
            return None
        self.stats["dispatched"] += 1
        self._spawn(job_id, self._run_cold, job)
        return decision

    # ── warm / cold paths ─────────────────────────────────────────────

    def _run_warm(self, job, instance):
        claimed = claim_job(job["job_id"], instance["instance_id"], pool=self.pool,
                            model=job.get("model"))
        if claimed is None:
            return
        self._execute(claimed, self.pool.get(instance["instance_id"]) or instance)

    def _run_cold(self, job):
        job_id = job["job_id"]
        wt = workload_type_for(job)
        opts = {
            "job_id": job_id,
            "criteria": job.get("criteria") or {},
            "image": job.get("image"),
            "label": make_label(job_id),
        }
        try:
            handle = self.pool.request_instance(wt, opts, wait=True, timeout=PROVISION_WAIT_SEC)
        except (ProvisioningError, ProviderError) as e:
            log.error("COLD START FAILED job=%s type=%s err=%s", job_id, wt, e)
            self._back_off(job_id)
            return
        if handle is None:
            log.warning("COLD START job=%s no instance within %ds", job_id, PROVISION_WAIT_SEC)
            return

        instance_id = handle["instance_id"]
        if handle.get("pending"):
            try:
                status = self.readiness(self.provider, instance_id,
                                        transport_factory=self.transport_factory)
            except Exception as e:
                # job never left queued; kill the instance and try again later
                log.error("READINESS FAILED job=%s instance=%s err=%s", job_id, instance_id, e)
                self.pool.terminate_instance(instance_id, reason="readiness_failed")
                self._back_off(job_id)
                return
            self.pool.mark_ready(instance_id, status)

        claimed = claim_job(job_id, instance_id, pool=self.pool, model=job.get("model"))
        if claimed is None:
            # someone else took the job; the instance stays warm for the next one
            self.pool.unreserve(instance_id)
            return
        self._execute(claimed, self.pool.get(instance_id) or handle)

    def _execute(self, job, instance):
        transport = get_transport(instance, factory=self.transport_factory)
        executor = self.executor_factory(transport, instance, remote_root=REMOTE_ROOT)
        outcome = executor.process(job, {
            "instance_id": instance["instance_id"],
            "hourly_rate": instance.get("hourly_rate") or 0.0,
            "tier": job.get("tier"),
            "claimed_at": job.get("claimed_at"),
        })
        self.stats["completed" if outcome["success"] else "failed"] += 1
        log.info("JOB DONE job=%s success=%s gpu_seconds=%.1f cost=$%.6f",
                 job["job_id"], outcome["success"], outcome["gpu_seconds"], outcome["cost_usd"])
        return outcome

    # ── loop ──────────────────────────────────────────────────────────

    def run(self, once=False):
        """Main polling loop. Returns when shutdown is set (or after one pass)."""
        if not self.dry_run:
            if self.sweeper is not None:
                self.sweeper.start()
            self.pool.start_reaper(REAPER_INTERVAL)

        failures = 0
        try:
            while not self.shutdown.is_set():
                try:
                    decision = self.tick()
                    failures = 0
                except Exception as e:
                    failures += 1
                    log.error("Poll loop error: %s", e, exc_info=True)
                    if failures > MAX_CONSECUTIVE_FAILURES:
                        log.error("Too many poll failures, shutting down")
                        break
                    backoff = min(2 ** failures, 300)
                    log.warning("Backing off %ds before next poll", backoff)
                    self.shutdown.wait(backoff)
                    continue

                if once:
                    break
                self.shutdown.wait(self.cooldown if decision else self.poll_interval)
        finally:
            self.stop(wait=True)

    def stop(self, wait=True):
        """Stop polling, give jobs a grace period, then terminate the pool."""
        self.shutdown.set()
        if wait:
            deadline = time.monotonic() + SHUTDOWN_GRACE_SEC
            with self._lock:
                threads = list(self._inflight.values())
            for t in threads:
                t.join(max(0.0, deadline - time.monotonic()))
        if self.sweeper is not None:
            self.sweeper.stop()
        self.pool.shutdown()
        log.info("Worker stopped. dispatched=%d completed=%d failed=%d",
                 self.stats["dispatched"], self.stats["completed"], self.stats["failed"])


# ── Entry point ───────────────────────────────────────────────────────


def validate_config():
    """Exit 1 when the provider key or SSH key is missing."""
    errors = []
    if not provider_mod.PROVIDER_API_KEY:
        errors.append("SPOTFLEET_PROVIDER_API_KEY is not set")
    if not os.path.exists(transport_mod.SSH_KEY_PATH):
        errors.append(f"SSH key not found at {transport_mod.SSH_KEY_PATH} (SPOTFLEET_SSH_KEY_PATH)")
    if errors:
        log.error("Configuration errors:")
        for e in errors:
            log.error("  - %s", e)
        sys.exit(1)


def print_startup_banner(worker):
    log.info("=" * 64)
    log.info("  Spotfleet Worker v%s", VERSION)
    log.info("=" * 64)
    log.info("  Provider:       %s", provider_mod.PROVIDER_URL)
    log.info("  Concurrency:    %d", worker.concurrency)
    log.info("  Poll interval:  %.0fs (cooldown %.0fs)", worker.poll_interval, worker.cooldown)
    log.info("  Pool:           %d per type, %d total, idle %ds",
             worker.pool.max_pool_size, worker.pool.max_total, worker.pool.idle_timeout)
    log.info("  Dry run:        %s", "YES" if worker.dry_run else "no")
    log.info("=" * 64)


def install_signal_handlers(worker):
    def handler(signum, frame):
        log.info("Received %s, initiating graceful shutdown", signal.Signals(signum).name)
        worker.shutdown.set()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def build_parser():
    parser = argparse.ArgumentParser(prog="spotfleet-worker", description="Spotfleet service worker")
    parser.add_argument("--once", action="store_true", help="Run a single scheduling pass and exit")
    parser.add_argument("--dry-run", action="store_true", help="Log decisions, touch nothing")
    parser.add_argument("--concurrency", type=int, default=CONCURRENCY)
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if not args.dry_run:
        validate_config()

    provider = get_provider()
    pool = set_warm_pool(WarmPoolManager(provider=provider))
    sweeper = set_sweeper(InstanceSweeper(provider=provider, pool=pool,
                                          alert_callback=alert_sweep_report))
    worker = FleetWorker(provider, pool, sweeper=sweeper, concurrency=args.concurrency,
                         poll_interval=args.poll_interval, dry_run=args.dry_run)
    install_signal_handlers(worker)
    print_startup_banner(worker)
    worker.run(once=args.once)
    return 0


if __name__ == "__main__":
    sys.exit(main())
