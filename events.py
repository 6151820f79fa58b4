# Spotfleet Event Log + State Machines
#
# Job lifecycle:       queued → claimed → running → completed/failed
# Instance lifecycle:  provisioning → warming → ready ⇄ busy → idle → draining → terminated
#
# Transitions are validated here and every accepted one is appended to an
# immutable event log. The log is what billing disputes and orphan hunts
# are settled against.
#
# TAMPER-EVIDENT: each event carries the SHA-256 hash of the previous one,
# so replaying the chain detects edits.

import hashlib
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

log = logging.getLogger("spotfleet")


# ── Job States ────────────────────────────────────────────────────────

class JobState(str, Enum):
    """Job lifecycle. Monotonic: never moves backward."""
    QUEUED = "queued"
    CLAIMED = "claimed"         # Bound to an instance, workload not started
    RUNNING = "running"         # Detached workload launched on the instance
    COMPLETED = "completed"     # Terminal: success
    FAILED = "failed"           # Terminal: error attached


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

VALID_TRANSITIONS = {
    JobState.QUEUED:    {JobState.CLAIMED},
    JobState.CLAIMED:   {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING:   {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED:    set(),
}


# ── Instance States ───────────────────────────────────────────────────

class InstanceState(str, Enum):
    PROVISIONING = "provisioning"   # Provider call issued, no endpoint yet
    WARMING = "warming"             # Running per provider, readiness probe pending
    READY = "ready"                 # Probe passed, never used
    BUSY = "busy"                   # Exactly one non-terminal job bound
    IDLE = "idle"                   # Released, idle timer running
    DRAINING = "draining"           # Termination requested
    TERMINATED = "terminated"


INSTANCE_TRANSITIONS = {
    InstanceState.PROVISIONING: {InstanceState.WARMING, InstanceState.READY, InstanceState.DRAINING},
    InstanceState.WARMING:      {InstanceState.READY, InstanceState.DRAINING},
    InstanceState.READY:        {InstanceState.BUSY, InstanceState.DRAINING},
    InstanceState.BUSY:         {InstanceState.IDLE, InstanceState.DRAINING},
    InstanceState.IDLE:         {InstanceState.BUSY, InstanceState.DRAINING},
    InstanceState.DRAINING:     {InstanceState.TERMINATED},
    InstanceState.TERMINATED:   set(),
}

# Pool-internal sub-states collapse onto the externally reported status set
_PUBLIC_STATUS = {
    InstanceState.WARMING: "provisioning",
    InstanceState.IDLE: "ready",
}


def public_status(state) -> str:
    """Report status as provisioning/ready/busy/draining/terminated."""
    state = InstanceState(state)
    return _PUBLIC_STATUS.get(state, state.value)


def validate_transition(current, target, kind="job"):
    """Raise ValueError unless current → target is allowed."""
    enum_cls, table = (JobState, VALID_TRANSITIONS) if kind == "job" else (
        InstanceState, INSTANCE_TRANSITIONS)
    try:
        cur = enum_cls(current)
        new = enum_cls(target)
    except ValueError as e:
        raise ValueError(f"Unknown {kind} state: {e}")
    allowed = table.get(cur, set())
    if new not in allowed:
        raise ValueError(
            f"Invalid {kind} transition: {cur.value} → {new.value}. "
            f"Allowed from {cur.value}: {sorted(s.value for s in allowed)}"
        )
    return new


# ── Event Types ───────────────────────────────────────────────────────

class EventType(str, Enum):
    JOB_SUBMITTED = "job.submitted"
    JOB_CLAIMED = "job.claimed"
    JOB_RUNNING = "job.running"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"

    INSTANCE_PROVISIONING = "instance.provisioning"
    INSTANCE_READY = "instance.ready"
    INSTANCE_BUSY = "instance.busy"
    INSTANCE_RELEASED = "instance.released"
    INSTANCE_TERMINATED = "instance.terminated"

    PROVISION_FAILED = "provision.failed"
    SWEEP_TERMINATED = "sweep.terminated"
    USAGE_RECORDED = "usage.recorded"


_JOB_EVENT = {
    JobState.CLAIMED: EventType.JOB_CLAIMED,
    JobState.RUNNING: EventType.JOB_RUNNING,
    JobState.COMPLETED: EventType.JOB_COMPLETED,
    JobState.FAILED: EventType.JOB_FAILED,
}


@dataclass
class Event:
    """Immutable event record, hash-chained to its predecessor."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "job", "instance"
    entity_id: str = ""
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "scheduler", "pool", "executor", "sweeper"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 of the canonical payload (excludes event_hash)."""
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


# ── Event Store ───────────────────────────────────────────────────────

class EventStore:
    """Append-only event store backed by SQLite."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get(
            "SPOTFLEET_EVENTS_DB_PATH",
            os.path.join(os.path.dirname(__file__), "spotfleet_events.db"),
        )
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    actor TEXT DEFAULT '',
                    data TEXT DEFAULT '{}',
                    prev_hash TEXT DEFAULT '',
                    event_hash TEXT DEFAULT ''
                );
                CREATE INDEX IF NOT EXISTS idx_events_entity
                    ON events(entity_type, entity_id);
                CREATE INDEX IF NOT EXISTS idx_events_type
                    ON events(event_type);
            """)

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def append(self, event: Event) -> Event:
        """Append an event, linking it to the most recent one."""
        with self._lock, self._conn() as conn:
            row = conn.execute(
                "SELECT event_hash FROM events ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            event.prev_hash = row["event_hash"] if row and row["event_hash"] else ""
            event.event_hash = event.compute_hash()
            conn.execute(
                """INSERT INTO events
                   (event_id, event_type, entity_type, entity_id,
                    timestamp, actor, data, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, str(getattr(event.event_type, "value", event.event_type)),
                    event.entity_type, str(event.entity_id), event.timestamp, event.actor,
                    json.dumps(event.data, default=str), event.prev_hash, event.event_hash,
                ),
            )
        return event

    def _row_to_event(self, r) -> Event:
        return Event(
            event_id=r["event_id"],
            event_type=r["event_type"],
            entity_type=r["entity_type"],
            entity_id=r["entity_id"],
            timestamp=r["timestamp"],
            actor=r["actor"],
            data=json.loads(r["data"]),
            prev_hash=r["prev_hash"] or "",
            event_hash=r["event_hash"] or "",
        )

    def verify_chain(self) -> dict:
        """Replay the chain. Returns {"valid", "events_checked", "broken_at"}."""
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY rowid ASC").fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            evt = self._row_to_event(row)
            if evt.prev_hash != prev_hash:
                return {"valid": False, "events_checked": i + 1, "broken_at": evt.event_id,
                        "reason": f"prev_hash mismatch at event {evt.event_id}"}
            if evt.compute_hash() != evt.event_hash:
                return {"valid": False, "events_checked": i + 1, "broken_at": evt.event_id,
                        "reason": f"event_hash tampered at event {evt.event_id}"}
            prev_hash = evt.event_hash
        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 1000,
    ) -> list[Event]:
        clauses = []
        params = []
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(str(entity_id))
        if event_type:
            clauses.append("event_type = ?")
            params.append(str(getattr(event_type, "value", event_type)))
        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY rowid ASC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        return self.get_events(entity_type=entity_type, entity_id=entity_id, limit=10000)

    def clear(self):
        with self._lock, self._conn() as conn:
            conn.execute("DELETE FROM events")


# ── Helpers ───────────────────────────────────────────────────────────


def record_event(event_type, entity_type, entity_id, actor="scheduler", **data) -> Event:
    """Append an event to the process-wide store."""
    return get_event_store().append(Event(
        event_type=getattr(event_type, "value", event_type),
        entity_type=entity_type,
        entity_id=str(entity_id),
        actor=actor,
        data=data,
    ))


def record_job_transition(job_id, current, target, actor="scheduler", **data) -> Event:
    """Validate a job transition and log it. Raises ValueError if invalid."""
    new = validate_transition(current, target, kind="job")
    event = record_event(
        _JOB_EVENT.get(new, f"job.{new.value}"), "job", job_id, actor=actor,
        previous_state=JobState(current).value, new_state=new.value, **data,
    )
    log.info("STATE %s → %s | job=%s | actor=%s", JobState(current).value, new.value, job_id, actor)
    return event


# ── Singleton ─────────────────────────────────────────────────────────

_event_store: Optional[EventStore] = None


def get_event_store() -> EventStore:
    global _event_store
    if _event_store is None:
        _event_store = EventStore()
    return _event_store


def set_event_store(store: Optional[EventStore]):
    global _event_store
    _event_store = store
