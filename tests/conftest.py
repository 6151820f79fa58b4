"""Shared pytest configuration for the Spotfleet test suite.

Ensures the project root is on sys.path so test files can import
source modules (scheduler, warm_pool, sweeper, etc.) directly, and points
every SQLite file and the log file at a throwaway directory before any of
them is imported.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to sys.path so `import scheduler`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_tmp_ctx = tempfile.TemporaryDirectory(prefix="spotfleet_test_")
_tmpdir = _tmp_ctx.name
os.environ["SPOTFLEET_DB_PATH"] = os.path.join(_tmpdir, "spotfleet.db")
os.environ["SPOTFLEET_EVENTS_DB_PATH"] = os.path.join(_tmpdir, "events.db")
os.environ["SPOTFLEET_LOG_FILE"] = os.path.join(_tmpdir, "spotfleet.log")
os.environ["SPOTFLEET_ENV"] = "test"
os.environ.setdefault("SPOTFLEET_API_TOKEN", "")


@pytest.fixture(autouse=True)
def clean_state(tmp_path):
    """Fresh storage, event log and singletons for every test."""
    import db
    import events
    import provider
    import scheduler
    import sweeper
    import transport
    import warm_pool

    db.reset_storage()
    events.set_event_store(events.EventStore(db_path=str(tmp_path / "events.db")))
    scheduler.reset_metrics()
    scheduler.configure_alerts(email_enabled=False, telegram_enabled=False)
    warm_pool.set_warm_pool(None)
    sweeper.set_sweeper(None)
    provider.set_provider(None)
    with transport._transports_lock:
        transport._transports.clear()
    yield
    warm_pool.set_warm_pool(None)
    sweeper.set_sweeper(None)
    provider.set_provider(None)
