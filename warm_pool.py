# Spotfleet Warm Pool Manager
# Keeps booted instances around between jobs of the same workload type so the
# next job skips the cold start. Caps spend per type and overall. Idle
# instances die after their idle timeout. shutdown() kills everything.
#
#   PROVISIONING → WARMING → READY → BUSY → IDLE → DRAINING → TERMINATED
#
# All membership changes go through this object's lock. Provider calls never
# happen while the lock is held.

import logging
import os
import threading
import time
import uuid

from db import save_instance
from events import EventType, InstanceState, public_status, record_event
from provider import InstanceNotFoundError, ProviderError
from provisioning import provision_instance
from transport import drop_transport

log = logging.getLogger("spotfleet")

POOL_MAX_SIZE = int(os.environ.get("SPOTFLEET_POOL_MAX_SIZE", "2"))
POOL_MAX_TOTAL = int(os.environ.get("SPOTFLEET_POOL_MAX_TOTAL", "8"))
IDLE_TIMEOUT_SEC = float(os.environ.get("SPOTFLEET_IDLE_TIMEOUT_SEC", "300"))
IDLE_TIMEOUT_MAX_SEC = float(os.environ.get("SPOTFLEET_IDLE_TIMEOUT_MAX_SEC", "1800"))
SPINUP_THRESHOLD = int(os.environ.get("SPOTFLEET_SPINUP_THRESHOLD", "1"))
# A reservation that never turns into a job is dropped after this long
RESERVATION_TIMEOUT_SEC = float(os.environ.get("SPOTFLEET_RESERVATION_TIMEOUT_SEC", "600"))

# Extra idle seconds after a request type that tends to come in bursts
WARMTH_TIERS = {
    "lora-inference": 600,
    "comfy-workflow": 300,
    "image-gen": 120,
}

_AVAILABLE = (InstanceState.READY, InstanceState.IDLE)
_LIVE = (
    InstanceState.PROVISIONING, InstanceState.WARMING, InstanceState.READY,
    InstanceState.BUSY, InstanceState.IDLE,
)


class WarmPoolManager:
    """Owns every pooled instance. The scheduler reads it; nothing else writes it."""

    def __init__(self, provider=None, provisioner=None, max_pool_size=None, max_total=None,
                 idle_timeout=None, idle_timeout_max=None, warmth_tiers=None,
                 spinup_threshold=None, reservation_timeout=None, persist=True,
                 clock=time.time):
        self.provider = provider
        self._provisioner = provisioner
        self.max_pool_size = max_pool_size if max_pool_size is not None else POOL_MAX_SIZE
        self.max_total = max_total if max_total is not None else POOL_MAX_TOTAL
        self.idle_timeout = idle_timeout if idle_timeout is not None else IDLE_TIMEOUT_SEC
        self.idle_timeout_max = idle_timeout_max if idle_timeout_max is not None else IDLE_TIMEOUT_MAX_SEC
        self.warmth_tiers = dict(WARMTH_TIERS if warmth_tiers is None else warmth_tiers)
        self.spinup_threshold = spinup_threshold if spinup_threshold is not None else SPINUP_THRESHOLD
        self.reservation_timeout = (reservation_timeout if reservation_timeout is not None
                                    else RESERVATION_TIMEOUT_SEC)
        self.persist = persist
        self.clock = clock

        self._lock = threading.RLock()
        self._conds = {}
        self._instances = {}
        self._terminating = set()
        self._closed = False
        self._reaper = None
        self._reaper_stop = threading.Event()
        self.metrics = {
            "provision_requests": 0,
            "provision_failures": 0,
            "reuse_hits": 0,
            "waits": 0,
            "terminated": 0,
        }

    # ── internals ─────────────────────────────────────────────────────

    def _cond(self, workload_type):
        cond = self._conds.get(workload_type)
        if cond is None:
            cond = threading.Condition(self._lock)
            self._conds[workload_type] = cond
        return cond

    def _notify(self, workload_type=None):
        conds = [self._conds.get(workload_type)] if workload_type else list(self._conds.values())
        for c in conds:
            if c is not None:
                c.notify_all()

    def _count(self, workload_type=None):
        return sum(
            1 for i in self._instances.values()
            if i["state"] in _LIVE and (workload_type is None or i["workload_type"] == workload_type)
        )

    def _has_capacity(self, workload_type):
        return (self._count(workload_type) < self.max_pool_size
                and self._count() < self.max_total)

    def _take_available(self, workload_type, owner):
        ready = idle = None
        for inst in self._instances.values():
            if inst["workload_type"] != workload_type or inst["state"] not in _AVAILABLE:
                continue
            if inst.get("reserved_for") not in (None, owner):
                continue
            if inst["state"] == InstanceState.READY:
                ready = inst
                break
            if idle is None:
                idle = inst
        chosen = ready or idle
        if chosen is not None:
            chosen["reserved_for"] = owner
            chosen["reserved_at"] = self.clock()
        return chosen

    def _snapshot(self, inst):
        rec = {k: v for k, v in inst.items()
               if k not in ("state", "reserved_for", "reserved_at", "idle_deadline")}
        rec["pool_state"] = inst["state"].value
        rec["status"] = public_status(inst["state"])
        rec["pool"] = inst["workload_type"]
        return rec

    def _save(self, inst):
        if not self.persist or inst.get("pending"):
            return
        try:
            save_instance(self._snapshot(inst))
        except Exception as e:
            log.warning("POOL PERSIST FAILED instance=%s err=%s", inst.get("instance_id"), e)

    def _audit(self, event_type, instance_id, **data):
        try:
            record_event(event_type, "instance", instance_id, actor="pool", **data)
        except Exception as e:
            log.debug("Pool event skip: %s", e)

    def idle_timeout_for(self, request_type=None):
        bonus = self.warmth_tiers.get(request_type, 0) if request_type else 0
        return min(self.idle_timeout + bonus, self.idle_timeout_max)

    def _provision(self, workload_type, opts):
        if self._provisioner is not None:
            return self._provisioner(workload_type, opts)
        return provision_instance(self.provider, workload_type, opts)

    # ── queries ───────────────────────────────────────────────────────

    def owns(self, instance_id):
        with self._lock:
            return str(instance_id) in self._instances

    def get(self, instance_id):
        with self._lock:
            inst = self._instances.get(str(instance_id))
            return dict(inst) if inst else None

    def get_available_instance(self, workload_type, model=None):
        """
        Peek at an unreserved READY (preferred) or IDLE instance. Does not
        reserve. With `model`, an instance that already has it loaded wins.
        """
        with self._lock:
            candidates = [
                i for i in self._instances.values()
                if i["workload_type"] == workload_type and i["state"] in _AVAILABLE
                and i.get("reserved_for") is None
            ]
            if not candidates:
                return None
            candidates.sort(key=lambda i: (
                0 if model and i.get("loaded_model") == model else 1,
                0 if i["state"] == InstanceState.READY else 1,
            ))
            return self._handle(candidates[0], pending=False)

    def loaded_models(self, workload_type):
        """Models resident on available instances of a type (for affinity)."""
        with self._lock:
            return {
                i.get("loaded_model") for i in self._instances.values()
                if i["workload_type"] == workload_type and i["state"] in _AVAILABLE
                and i.get("reserved_for") is None and i.get("loaded_model")
            }

    def count(self, workload_type=None):
        with self._lock:
            return self._count(workload_type)

    def should_spinup(self, workload_type, queue_depth):
        """Queue deep enough and room left under the caps."""
        with self._lock:
            return queue_depth >= self.spinup_threshold and self._has_capacity(workload_type)

    # ── request / readiness ───────────────────────────────────────────

    def request_instance(self, workload_type, opts=None, wait=True, timeout=None):
        """
        Return an available instance reserved for the caller, or start
        provisioning and return a pending handle. At capacity, block until a
        slot frees up (bounded by `timeout`; returns None when it expires or
        when wait=False).
        """
        opts = dict(opts or {})
        owner = opts.get("job_id") or f"req-{uuid.uuid4().hex[:8]}"
        deadline = time.monotonic() + timeout if timeout is not None else None
        cond = None

        with self._lock:
            cond = self._cond(workload_type)
            waited = False
            while True:
                if self._closed:
                    log.warning("POOL CLOSED request type=%s refused", workload_type)
                    return None
                inst = self._take_available(workload_type, owner)
                if inst is not None:
                    self.metrics["reuse_hits"] += 1
                    log.info("POOL REUSE instance=%s type=%s state=%s owner=%s",
                             inst["instance_id"], workload_type, inst["state"].value, owner)
                    return self._handle(inst, pending=False)
                if self._has_capacity(workload_type):
                    break
                if not wait:
                    return None
                if not waited:
                    self.metrics["waits"] += 1
                    waited = True
                    log.info("POOL AT CAPACITY type=%s (%d/%d), waiting",
                             workload_type, self._count(workload_type), self.max_pool_size)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    log.warning("POOL WAIT TIMEOUT type=%s owner=%s", workload_type, owner)
                    return None
                cond.wait(remaining)

            placeholder_id = f"pending-{uuid.uuid4().hex[:12]}"
            self._instances[placeholder_id] = {
                "instance_id": placeholder_id,
                "workload_type": workload_type,
                "state": InstanceState.PROVISIONING,
                "pending": True,
                "reserved_for": owner,
                "reserved_at": self.clock(),
                "created_at": self.clock(),
            }
            self.metrics["provision_requests"] += 1

        log.info("POOL PROVISION type=%s owner=%s", workload_type, owner)
        try:
            provisioned = self._provision(workload_type, opts)
        except Exception as e:
            with self._lock:
                self._instances.pop(placeholder_id, None)
                self.metrics["provision_failures"] += 1
                cond.notify_all()
            log.error("POOL PROVISION FAILED type=%s err=%s", workload_type, e)
            raise

        instance_id = str(provisioned["instance_id"])
        now = self.clock()
        with self._lock:
            self._instances.pop(placeholder_id, None)
            inst = dict(provisioned)
            inst.update({
                "instance_id": instance_id,
                "workload_type": workload_type,
                "state": InstanceState.PROVISIONING,
                "reserved_for": owner,
                "reserved_at": now,
                "created_at": inst.get("created_at") or now,
                "last_activity_at": now,
                "job_id": None,
            })
            self._instances[instance_id] = inst
            closed = self._closed
            handle = self._handle(inst, pending=True)
        self._save(inst)
        self._audit(EventType.INSTANCE_PROVISIONING, instance_id, workload_type=workload_type,
                    offer_id=inst.get("offer_id"), label=inst.get("label"))

        if closed:
            self.terminate_instance(instance_id, reason="shutdown")
            return None
        return handle

    def _handle(self, inst, pending):
        h = {k: v for k, v in inst.items() if k not in ("state", "reserved_at", "idle_deadline")}
        h["pool_state"] = inst["state"].value
        h["status"] = public_status(inst["state"])
        h["pending"] = pending
        return h

    def mark_warming(self, instance_id):
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst or inst["state"] != InstanceState.PROVISIONING:
                return False
            inst["state"] = InstanceState.WARMING
        self._save(inst)
        return True

    def mark_ready(self, instance_id, details=None):
        """PROVISIONING/WARMING → READY once the readiness probe has passed."""
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst:
                log.warning("POOL MARK READY unknown instance=%s", instance_id)
                return False
            if inst["state"] not in (InstanceState.PROVISIONING, InstanceState.WARMING):
                log.warning("POOL MARK READY instance=%s invalid from %s",
                            instance_id, inst["state"].value)
                return False
            for k, v in (details or {}).items():
                if v not in (None, "") and k not in ("instance_id", "status", "state"):
                    inst[k] = v
            inst["state"] = InstanceState.READY
            inst["ready_at"] = inst["last_activity_at"] = self.clock()
            if inst.get("idle_deadline") is None:
                inst["idle_deadline"] = inst["ready_at"] + self.idle_timeout
            if inst.get("reserved_for") is not None:
                # the reservation clock starts once there is something to claim
                inst["reserved_at"] = inst["ready_at"]
            self._cond(inst["workload_type"]).notify_all()
        self._save(inst)
        self._audit(EventType.INSTANCE_READY, instance_id,
                    boot_seconds=round(inst["ready_at"] - inst["created_at"], 2))
        log.info("POOL READY instance=%s type=%s", instance_id, inst["workload_type"])
        return True

    # ── busy / idle ───────────────────────────────────────────────────

    def mark_busy(self, instance_id, job_id, model=None):
        """READY/IDLE → BUSY, bound to exactly one job."""
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst or inst["state"] not in _AVAILABLE:
                return False
            if inst.get("reserved_for") not in (None, job_id):
                log.warning("POOL MARK BUSY instance=%s reserved for %s, not %s",
                            instance_id, inst["reserved_for"], job_id)
                return False
            inst["state"] = InstanceState.BUSY
            inst["job_id"] = job_id
            inst["reserved_for"] = None
            inst["reserved_at"] = None
            inst["idle_deadline"] = None
            inst["last_activity_at"] = self.clock()
            if model:
                inst["loaded_model"] = model
        self._save(inst)
        self._audit(EventType.INSTANCE_BUSY, instance_id, job_id=job_id)
        return True

    def unreserve(self, instance_id):
        """Hand back a reservation that never turned into a job."""
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst or inst.get("reserved_for") is None:
                return False
            inst["reserved_for"] = None
            inst["reserved_at"] = None
            if inst["state"] == InstanceState.READY:
                inst["idle_deadline"] = self.clock() + self.idle_timeout
            self._cond(inst["workload_type"]).notify_all()
        return True

    def release(self, instance_id, request_type=None):
        """
        BUSY → IDLE and start the idle timer. Releasing an instance that is
        already idle (or unknown) is a no-op and returns False.
        """
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst or inst["state"] != InstanceState.BUSY:
                log.debug("POOL RELEASE no-op instance=%s", instance_id)
                return False
            now = self.clock()
            timeout = self.idle_timeout_for(request_type)
            job_id = inst.get("job_id")
            inst["state"] = InstanceState.IDLE
            inst["job_id"] = None
            inst["idle_since"] = now
            inst["idle_deadline"] = now + timeout
            inst["last_activity_at"] = now
            self._cond(inst["workload_type"]).notify_all()
        self._save(inst)
        self._audit(EventType.INSTANCE_RELEASED, instance_id, job_id=job_id, idle_timeout=timeout)
        log.info("POOL RELEASE instance=%s job=%s idle_timeout=%ds", instance_id, job_id, timeout)
        return True

    def extend_warmth(self, instance_id, request_type=None):
        """Restart an idle instance's timer using the request type's warmth tier."""
        with self._lock:
            inst = self._instances.get(str(instance_id))
            if not inst or inst["state"] != InstanceState.IDLE:
                return False
            inst["idle_deadline"] = self.clock() + self.idle_timeout_for(request_type)
            return True

    def reap_idle(self, now=None):
        """
        Terminate idle (and never-used ready) instances past their deadline.
        Reservations older than reservation_timeout are dropped first, so an
        instance whose caller vanished between reserve and claim is reaped too.
        """
        now = self.clock() if now is None else now
        with self._lock:
            for inst in self._instances.values():
                if (inst["state"] not in _AVAILABLE or inst.get("reserved_for") is None
                        or now - (inst.get("reserved_at") or now) <= self.reservation_timeout):
                    continue
                log.warning("POOL RESERVATION EXPIRED instance=%s owner=%s",
                            inst["instance_id"], inst["reserved_for"])
                inst["reserved_for"] = None
                inst["reserved_at"] = None
                if inst.get("idle_deadline") is None:
                    inst["idle_deadline"] = now + self.idle_timeout
                self._cond(inst["workload_type"]).notify_all()
            expired = [
                i["instance_id"] for i in self._instances.values()
                if i["state"] in _AVAILABLE and i.get("reserved_for") is None
                and i.get("idle_deadline") is not None and i["idle_deadline"] <= now
            ]
        for instance_id in expired:
            self.terminate_instance(instance_id, reason="idle_timeout")
        return expired

    def start_reaper(self, interval=15):
        """Run reap_idle() in a background thread."""

        def loop():
            while not self._reaper_stop.wait(interval):
                try:
                    self.reap_idle()
                except Exception as e:
                    log.error("POOL REAPER error: %s", e, exc_info=True)

        self._reaper_stop.clear()
        self._reaper = threading.Thread(target=loop, name="pool-reaper", daemon=True)
        self._reaper.start()
        return self._reaper

    # ── termination ───────────────────────────────────────────────────

    def terminate_instance(self, instance_id, reason="manual"):
        """Remove from the pool, then terminate at the provider. Guards double termination."""
        instance_id = str(instance_id)
        with self._lock:
            inst = self._instances.get(instance_id)
            if not inst or instance_id in self._terminating:
                return False
            if inst.get("pending"):
                return False
            self._terminating.add(instance_id)
            inst["state"] = InstanceState.DRAINING

        log.info("POOL TERMINATE instance=%s type=%s reason=%s",
                 instance_id, inst["workload_type"], reason)
        ok = True
        try:
            if self.provider is not None:
                self.provider.terminate_instance(instance_id)
        except InstanceNotFoundError:
            log.info("POOL TERMINATE instance=%s already gone", instance_id)
        except ProviderError as e:
            ok = False
            log.error("POOL TERMINATE FAILED instance=%s err=%s (sweeper will retry)", instance_id, e)
        finally:
            self._remove(instance_id, inst)

        self._record_gone(inst, reason, ok)
        return True

    def forget(self, instance_id, reason="external"):
        """Drop an instance someone else already terminated (the sweeper)."""
        instance_id = str(instance_id)
        with self._lock:
            inst = self._instances.get(instance_id)
            if not inst or inst.get("pending"):
                return False
        self._remove(instance_id, inst)
        self._record_gone(inst, reason, True)
        return True

    def _remove(self, instance_id, inst):
        with self._lock:
            self._instances.pop(instance_id, None)
            self._terminating.discard(instance_id)
            self.metrics["terminated"] += 1
            self._notify(inst["workload_type"])
        drop_transport(instance_id)

    def _record_gone(self, inst, reason, ok):
        inst["state"] = InstanceState.TERMINATED if ok else InstanceState.DRAINING
        inst["terminated_reason"] = reason
        inst["terminated_at"] = self.clock()
        self._save(inst)
        self._audit(EventType.INSTANCE_TERMINATED, inst["instance_id"], reason=reason, ok=ok)

    def shutdown(self):
        """Terminate everything the pool owns. Safe to call more than once."""
        with self._lock:
            self._closed = True
            ids = [i for i, inst in self._instances.items() if not inst.get("pending")]
            self._notify()
        self._reaper_stop.set()
        if ids:
            log.info("POOL SHUTDOWN terminating %d instances", len(ids))
        for instance_id in ids:
            self.terminate_instance(instance_id, reason="shutdown")
        return ids

    # ── observability ─────────────────────────────────────────────────

    def get_pool_state(self):
        now = self.clock()
        with self._lock:
            by_state = {}
            by_type = {}
            rows = []
            for inst in self._instances.values():
                state = inst["state"].value
                by_state[state] = by_state.get(state, 0) + 1
                by_type[inst["workload_type"]] = by_type.get(inst["workload_type"], 0) + 1
                remaining = None
                if inst["state"] in _AVAILABLE and inst.get("idle_deadline") is not None:
                    remaining = max(0.0, round(inst["idle_deadline"] - now, 1))
                rows.append({
                    "instance_id": inst["instance_id"],
                    "workload_type": inst["workload_type"],
                    "state": state,
                    "status": public_status(inst["state"]),
                    "job_id": inst.get("job_id"),
                    "hourly_rate": inst.get("hourly_rate"),
                    "idle_time_remaining": remaining,
                })
            return {
                "total": len(rows),
                "by_state": by_state,
                "by_type": by_type,
                "instances": rows,
                "config": {
                    "max_pool_size": self.max_pool_size,
                    "max_total": self.max_total,
                    "idle_timeout": self.idle_timeout,
                    "idle_timeout_max": self.idle_timeout_max,
                },
                "metrics": dict(self.metrics),
                "closed": self._closed,
            }


# ── Singleton ─────────────────────────────────────────────────────────

_pool = None


def get_warm_pool():
    """The process-wide pool, or None when running without one."""
    return _pool


def set_warm_pool(pool):
    global _pool
    _pool = pool
    return pool
