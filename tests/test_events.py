"""Tests for Spotfleet state machines and the hash-chained event log."""

import os
import sqlite3

import pytest

from events import (
    Event,
    EventStore,
    EventType,
    InstanceState,
    JobState,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    public_status,
    record_job_transition,
    validate_transition,
)


def _store(tmp_path) -> EventStore:
    return EventStore(db_path=os.path.join(str(tmp_path), f"events_{os.urandom(4).hex()}.db"))


# ── State machines ────────────────────────────────────────────────────


class TestJobStates:
    def test_happy_path(self):
        assert validate_transition("queued", "claimed") == JobState.CLAIMED
        assert validate_transition("claimed", "running") == JobState.RUNNING
        assert validate_transition("running", "completed") == JobState.COMPLETED

    def test_claimed_can_fail(self):
        assert validate_transition("claimed", "failed") == JobState.FAILED

    @pytest.mark.parametrize("current,target", [
        ("queued", "running"),
        ("queued", "failed"),
        ("running", "queued"),
        ("completed", "failed"),
        ("failed", "queued"),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(ValueError):
            validate_transition(current, target)

    def test_unknown_state(self):
        with pytest.raises(ValueError, match="Unknown job state"):
            validate_transition("queued", "paused")

    def test_terminal_states_have_no_exits(self):
        for s in TERMINAL_STATES:
            assert VALID_TRANSITIONS[s] == set()


class TestInstanceStates:
    def test_pool_cycle(self):
        for cur, new in [("provisioning", "warming"), ("warming", "ready"), ("ready", "busy"),
                         ("busy", "idle"), ("idle", "busy"), ("idle", "draining"),
                         ("draining", "terminated")]:
            validate_transition(cur, new, kind="instance")

    def test_busy_cannot_skip_to_ready(self):
        with pytest.raises(ValueError):
            validate_transition("busy", "ready", kind="instance")

    def test_public_status_collapses_substates(self):
        assert public_status(InstanceState.WARMING) == "provisioning"
        assert public_status("idle") == "ready"
        assert public_status("busy") == "busy"


# ── Event store ───────────────────────────────────────────────────────


class TestEventStore:
    def test_chain(self, tmp_path):
        es = _store(tmp_path)
        e1 = es.append(Event(event_type=EventType.JOB_SUBMITTED, entity_type="job", entity_id="j1"))
        e2 = es.append(Event(event_type=EventType.JOB_CLAIMED, entity_type="job", entity_id="j1"))
        assert e1.prev_hash == ""
        assert len(e1.event_hash) == 64
        assert e2.prev_hash == e1.event_hash
        assert es.verify_chain()["valid"] is True

    def test_tamper_detected(self, tmp_path):
        es = _store(tmp_path)
        for n in range(3):
            es.append(Event(event_type=EventType.USAGE_RECORDED, entity_type="job",
                            entity_id=f"j{n}", data={"cost_usd": 0.1}))
        conn = sqlite3.connect(es.db_path)
        conn.execute("UPDATE events SET data = ? WHERE entity_id = 'j1'", ('{"cost_usd": 0.0}',))
        conn.commit()
        conn.close()
        result = es.verify_chain()
        assert result["valid"] is False

    def test_filters(self, tmp_path):
        es = _store(tmp_path)
        es.append(Event(event_type=EventType.INSTANCE_READY, entity_type="instance", entity_id="i1"))
        es.append(Event(event_type=EventType.JOB_SUBMITTED, entity_type="job", entity_id="j1"))
        assert [e.entity_id for e in es.get_events(entity_type="instance")] == ["i1"]
        assert len(es.get_entity_history("job", "j1")) == 1

    def test_record_job_transition_validates(self):
        with pytest.raises(ValueError):
            record_job_transition("j1", JobState.QUEUED, JobState.COMPLETED)
        evt = record_job_transition("j1", "queued", "claimed", instance_id="i1")
        assert evt.data["new_state"] == "claimed"
        assert evt.data["instance_id"] == "i1"
