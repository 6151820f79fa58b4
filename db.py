# Spotfleet Persistence Layer
# SQLite record store for jobs, instances and usage.
#
#   - WAL mode, one connection per operation
#   - JSON payload column carries the full record, indexed columns carry
#     the fields we query on
#   - Write transactions are BEGIN IMMEDIATE so concurrent claimers serialize

# Auto-load .env file (must be before any os.environ reads)
from dotenv import load_dotenv
load_dotenv()

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager

log = logging.getLogger("spotfleet")

# ── Configuration ─────────────────────────────────────────────────────

DEFAULT_DB_FILE = os.path.join(os.path.dirname(__file__), "spotfleet.db")


def _db_path():
    return os.environ.get("SPOTFLEET_DB_PATH", DEFAULT_DB_FILE)


# ── SQLite Backend ────────────────────────────────────────────────────


def _ensure_tables(conn):
    """Ensure all persistence tables and indexes exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            priority INTEGER NOT NULL,
            submitted_at REAL NOT NULL,
            instance_id TEXT,
            updated_at REAL NOT NULL,
            payload TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS instances (
            instance_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            workload_type TEXT,
            label TEXT,
            created_at REAL NOT NULL,
            payload TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS usage (
            usage_id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            instance_id TEXT,
            gpu_seconds REAL NOT NULL,
            hourly_rate REAL NOT NULL,
            cost_usd REAL NOT NULL,
            recorded_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_queue "
        "ON jobs(status, priority DESC, submitted_at ASC)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_instance ON jobs(instance_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_instances_status "
        "ON instances(status, created_at ASC)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_job ON usage(job_id)")


@contextmanager
def sqlite_connection():
    """SQLite connection with WAL mode enabled."""
    conn = sqlite3.connect(_db_path(), timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    _ensure_tables(conn)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def sqlite_transaction():
    """Execute a mutation in a single SQLite write transaction."""
    with sqlite_connection() as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise


def decode_payload(payload):
    """Decode a JSON payload column. Corrupt rows read as None."""
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        return None


# ── Jobs ──────────────────────────────────────────────────────────────


def upsert_job(conn, job):
    """Upsert a job record."""
    job_id = str(job.get("job_id", "")).strip()
    if not job_id:
        return
    now = time.time()
    status = str(job.get("status") or "queued")
    priority = int(job.get("priority", 0) or 0)
    submitted_at = float(job.get("submitted_at", now) or now)
    updated_at = float(job.get("updated_at", now) or now)
    conn.execute(
        """
        INSERT INTO jobs(job_id, status, priority, submitted_at, instance_id, updated_at, payload)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(job_id) DO UPDATE SET
            status = excluded.status,
            priority = excluded.priority,
            submitted_at = excluded.submitted_at,
            instance_id = excluded.instance_id,
            updated_at = excluded.updated_at,
            payload = excluded.payload
        """,
        (
            job_id,
            status,
            priority,
            submitted_at,
            job.get("instance_id"),
            updated_at,
            json.dumps(job),
        ),
    )


def get_job(conn, job_id):
    row = conn.execute("SELECT payload FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return decode_payload(row["payload"])


def load_jobs(conn, status=None, limit=None):
    """Load jobs, optionally filtered by status. Queue order: priority, then FIFO."""
    query = "SELECT payload FROM jobs"
    params = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY priority DESC, submitted_at ASC, job_id ASC"
    if limit:
        query += " LIMIT ?"
        params.append(int(limit))
    jobs = []
    for row in conn.execute(query, params).fetchall():
        item = decode_payload(row["payload"])
        if isinstance(item, dict):
            jobs.append(item)
    return jobs


def jobs_for_instance(conn, instance_id):
    """Every job record that references an instance, newest first."""
    rows = conn.execute(
        "SELECT payload FROM jobs WHERE instance_id = ? ORDER BY updated_at DESC",
        (instance_id,),
    ).fetchall()
    return [j for j in (decode_payload(r["payload"]) for r in rows) if isinstance(j, dict)]


def claim_job_row(conn, job_id, instance_id, claimed_at):
    """Conditional queued -> claimed update.

    Returns the claimed job dict, or None when the row was not queued.
    Must run inside sqlite_transaction().
    """
    cur = conn.execute(
        """
        UPDATE jobs
        SET status = 'claimed', instance_id = ?, updated_at = ?
        WHERE job_id = ? AND status = 'queued'
        """,
        (instance_id, claimed_at, job_id),
    )
    if cur.rowcount != 1:
        return None
    job = get_job(conn, job_id)
    if job is None:
        return None
    job["status"] = "claimed"
    job["instance_id"] = instance_id
    job["claimed_at"] = claimed_at
    job["updated_at"] = claimed_at
    upsert_job(conn, job)
    return job


# ── Instances ─────────────────────────────────────────────────────────


def upsert_instance(conn, instance):
    """Upsert an instance record."""
    instance_id = str(instance.get("instance_id", "")).strip()
    if not instance_id:
        return
    now = time.time()
    conn.execute(
        """
        INSERT INTO instances(instance_id, status, workload_type, label, created_at, payload)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(instance_id) DO UPDATE SET
            status = excluded.status,
            workload_type = excluded.workload_type,
            label = excluded.label,
            payload = excluded.payload
        """,
        (
            instance_id,
            str(instance.get("status") or "provisioning"),
            instance.get("workload_type"),
            instance.get("label"),
            float(instance.get("created_at", now) or now),
            json.dumps(instance),
        ),
    )


def get_instance(conn, instance_id):
    row = conn.execute(
        "SELECT payload FROM instances WHERE instance_id = ?", (str(instance_id),)
    ).fetchone()
    if not row:
        return None
    return decode_payload(row["payload"])


def load_instances(conn, status=None):
    if status:
        rows = conn.execute(
            "SELECT payload FROM instances WHERE status = ? ORDER BY created_at ASC",
            (status,),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT payload FROM instances ORDER BY created_at ASC"
        ).fetchall()
    return [i for i in (decode_payload(r["payload"]) for r in rows) if isinstance(i, dict)]


def save_instance(instance):
    """Standalone upsert for callers that do not hold a connection."""
    with sqlite_transaction() as conn:
        upsert_instance(conn, instance)
    return instance


def set_instance_fields(instance_id, **updates):
    """Patch fields on a stored instance. Creates the record if missing."""
    with sqlite_transaction() as conn:
        inst = get_instance(conn, instance_id) or {
            "instance_id": str(instance_id),
            "created_at": time.time(),
        }
        inst.update(updates)
        upsert_instance(conn, inst)
        return inst


def find_instance(instance_id):
    with sqlite_connection() as conn:
        return get_instance(conn, instance_id)


def list_instances(status=None):
    with sqlite_connection() as conn:
        return load_instances(conn, status=status)


def reset_storage():
    """Drop every row."""
    with sqlite_transaction() as conn:
        conn.execute("DELETE FROM jobs")
        conn.execute("DELETE FROM instances")
        conn.execute("DELETE FROM usage")
