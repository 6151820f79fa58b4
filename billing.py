# Spotfleet Usage Metering
# Per-job GPU seconds × the instance's hourly rate × the submitter's tier.
#   - The billing window is claim → release. Boot time before the claim
#     belongs to the pool, not the job.
#   - Every job that was bound to an instance gets a usage row, success
#     or failure.

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from db import sqlite_connection, sqlite_transaction
from events import EventType, record_event

log = logging.getLogger("spotfleet")


# ── Tier Multipliers ──────────────────────────────────────────────────

TIER_MULTIPLIERS = {
    "free": 1.5,
    "holder": 1.2,
    "premium": 1.0,
}
DEFAULT_MULTIPLIER = 1.0


def tier_multiplier(tier: Optional[str]) -> float:
    return TIER_MULTIPLIERS.get(tier, DEFAULT_MULTIPLIER) if tier else DEFAULT_MULTIPLIER


def compute_cost(gpu_seconds: float, hourly_rate: float, tier: Optional[str] = None) -> float:
    """USD for `gpu_seconds` at `hourly_rate`, rounded to 6 places."""
    gpu_seconds = max(0.0, float(gpu_seconds or 0))
    hourly_rate = max(0.0, float(hourly_rate or 0))
    return round(gpu_seconds / 3600 * hourly_rate * tier_multiplier(tier), 6)


@dataclass
class UsageRecord:
    """What one job consumed on one instance."""
    job_id: str = ""
    instance_id: str = ""
    gpu_seconds: float = 0.0
    hourly_rate: float = 0.0
    tier: Optional[str] = None
    cost_usd: float = 0.0
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    def resource_usage(self) -> dict:
        """The shape stored on the job record."""
        return {
            "gpu_seconds": self.gpu_seconds,
            "hourly_rate": self.hourly_rate,
            "cost_usd": self.cost_usd,
        }


def meter(job_id, instance_id, started_at, released_at, hourly_rate, tier=None) -> UsageRecord:
    """Build a usage record for the claim → release window."""
    gpu_seconds = round(max(0.0, float(released_at) - float(started_at)), 3)
    return UsageRecord(
        job_id=str(job_id),
        instance_id=str(instance_id or ""),
        gpu_seconds=gpu_seconds,
        hourly_rate=float(hourly_rate or 0),
        tier=tier,
        cost_usd=compute_cost(gpu_seconds, hourly_rate, tier),
    )


def record_usage(usage: UsageRecord) -> UsageRecord:
    """Persist a usage row and audit it."""
    with sqlite_transaction() as conn:
        conn.execute(
            """INSERT INTO usage
               (job_id, instance_id, gpu_seconds, hourly_rate, cost_usd, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (usage.job_id, usage.instance_id, usage.gpu_seconds,
             usage.hourly_rate, usage.cost_usd, usage.recorded_at),
        )
    try:
        record_event(EventType.USAGE_RECORDED, "job", usage.job_id, actor="billing",
                     **usage.to_dict())
    except Exception as e:
        log.debug("Usage event skip: %s", e)
    log.info("METERED job=%s instance=%s gpu_seconds=%.1f rate=$%.4f/h cost=$%.6f tier=%s",
             usage.job_id, usage.instance_id, usage.gpu_seconds, usage.hourly_rate,
             usage.cost_usd, usage.tier or "default")
    return usage


def usage_for_job(job_id) -> list:
    with sqlite_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM usage WHERE job_id = ? ORDER BY recorded_at ASC", (str(job_id),)
        ).fetchall()
    return [dict(r) for r in rows]


def total_spend(since: Optional[float] = None) -> float:
    with sqlite_connection() as conn:
        if since is None:
            row = conn.execute("SELECT SUM(cost_usd) AS total FROM usage").fetchone()
        else:
            row = conn.execute(
                "SELECT SUM(cost_usd) AS total FROM usage WHERE recorded_at >= ?", (since,)
            ).fetchone()
    return round(row["total"] or 0.0, 6)


def get_usage_summary(since: Optional[float] = None, until: Optional[float] = None) -> dict:
    """Usage summary for the ops API and CLI."""
    since = since or 0.0
    until = until or time.time()
    with sqlite_connection() as conn:
        row = conn.execute(
            """SELECT
                COUNT(DISTINCT job_id) AS job_count,
                COUNT(DISTINCT instance_id) AS instances_used,
                SUM(gpu_seconds) AS gpu_seconds,
                SUM(cost_usd) AS cost_usd
            FROM usage
            WHERE recorded_at >= ? AND recorded_at <= ?""",
            (since, until),
        ).fetchone()
    return {
        "period_start": since,
        "period_end": until,
        "job_count": row["job_count"] or 0,
        "instances_used": row["instances_used"] or 0,
        "total_gpu_hours": round((row["gpu_seconds"] or 0) / 3600, 4),
        "total_cost_usd": round(row["cost_usd"] or 0, 6),
        "currency": "USD",
    }
