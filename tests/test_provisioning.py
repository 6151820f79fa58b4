"""Tests for the cold path: offer fallback, readiness, launch cleanup."""

import pytest

from events import EventType, get_event_store
from fakes import FakeProvider, FakeTransport, make_offer
from provisioning import (
    ProvisioningError,
    ReadinessTimeoutError,
    await_ready,
    launch_instance,
    prepare_remote_dir,
    provision_instance,
    wait_for_running,
    wait_for_ssh,
)
from transport import CommandResult, TransportAuthError, TransportTimeout


def _no_sleep(_):
    pass


class TestOfferFallback:
    def test_first_offer_taken_second_used(self):
        provider = FakeProvider(
            offers=[make_offer("o1", 0.3), make_offer("o2", 0.4), make_offer("o3", 0.5)],
            unavailable={"o1"},
        )
        inst = provision_instance(provider, "trainer", {"job_id": "j1"}, sleep=_no_sleep)
        assert inst["offer_id"] == "o2"
        assert inst["provisioning_errors"] == 1
        assert inst["hourly_rate"] == 0.4
        assert inst["label"] == "spotfleet-j1"
        assert provider.credentials == [inst["instance_id"]]
        failed = get_event_store().get_events(event_type=EventType.PROVISION_FAILED)
        assert [e.entity_id for e in failed] == ["o1"]

    def test_all_offers_taken(self):
        provider = FakeProvider(
            offers=[make_offer(f"o{n}", 0.1 * n) for n in range(1, 8)],
            unavailable={f"o{n}" for n in range(1, 8)},
        )
        with pytest.raises(ProvisioningError) as exc:
            provision_instance(provider, "trainer", {}, sleep=_no_sleep)
        # only the five cheapest offers are tried
        assert exc.value.stats["attempts"] == 5
        assert exc.value.stats["provisioning_errors"] == 5
        assert provider.provisioned == []

    def test_no_matching_offers(self):
        provider = FakeProvider(offers=[make_offer("o1", gpu="A100")])
        with pytest.raises(ProvisioningError):
            provision_instance(provider, "trainer", {"criteria": {"gpu_type": "4090"}})

    def test_criteria_filter(self):
        provider = FakeProvider(offers=[make_offer("cheap", 0.2, vram=8), make_offer("big", 0.9, vram=48)])
        inst = provision_instance(provider, "trainer", {"criteria": {"min_vram_gb": 24}})
        assert inst["offer_id"] == "big"


class TestReadiness:
    def test_wait_for_running_polls_until_running(self):
        provider = FakeProvider()
        provider.add_instance("7", status="loading")
        sleeps = []

        def sleep(s):
            sleeps.append(s)
            provider.instances["7"]["status"] = "running"

        status = wait_for_running(provider, "7", timeout=100, interval=10, sleep=sleep)
        assert status["status"] == "running"
        assert sleeps == [10]

    def test_wait_for_running_gone(self):
        provider = FakeProvider()
        provider.add_instance("7", status="exited")
        with pytest.raises(ProvisioningError):
            wait_for_running(provider, "7", sleep=_no_sleep)

    def test_wait_for_ssh_retries_auth_failures(self):
        calls = {"n": 0}

        def flaky(_):
            calls["n"] += 1
            if calls["n"] < 3:
                raise TransportAuthError("permission denied")
            return CommandResult(0, "ok", "")

        transport = FakeTransport(rules=[("echo ok", flaky)])
        transport.probe = lambda timeout=10: transport.exec("echo ok").stdout == "ok"
        assert wait_for_ssh(transport, attempts=5, sleep=_no_sleep, port_check=None)
        assert calls["n"] == 3

    def test_wait_for_ssh_gives_up(self):
        transport = FakeTransport()
        transport.probe = lambda timeout=10: False
        with pytest.raises(ReadinessTimeoutError):
            wait_for_ssh(transport, attempts=3, sleep=_no_sleep, port_check=None)

    def test_port_closed_counts_as_not_ready(self):
        transport = FakeTransport()
        with pytest.raises(ReadinessTimeoutError):
            wait_for_ssh(transport, attempts=2, sleep=_no_sleep,
                         port_check=lambda host, port, timeout=5: False)

    def test_await_ready_uses_proxy_endpoint(self):
        provider = FakeProvider()
        provider.add_instance("9")
        made = []

        def factory(host, port=22, user=None):
            t = FakeTransport(host, port, user)
            made.append(t)
            return t

        await_ready(provider, "9", transport_factory=factory, sleep=_no_sleep,
                    port_check=lambda *a, **k: True)
        assert made[0].host == "ssh9.example.net"


class TestLaunch:
    def test_launch_ready(self):
        provider = FakeProvider()
        inst = launch_instance(provider, "trainer", {"job_id": "j1"},
                               transport_factory=FakeTransport, sleep=_no_sleep,
                               port_check=lambda *a, **k: True)
        assert inst["status"] == "ready"
        assert inst["ssh_host"]

    def test_launch_readiness_failure_terminates(self):
        provider = FakeProvider()

        def slow_probe(timeout=10):
            raise TransportTimeout("slow")

        def factory(host, port=22, user=None):
            t = FakeTransport(host, port, user)
            t.probe = slow_probe
            return t

        with pytest.raises(ReadinessTimeoutError):
            launch_instance(provider, "trainer", {}, transport_factory=factory, sleep=_no_sleep,
                            port_check=lambda *a, **k: True)
        assert len(provider.terminated) == 1
        assert provider.instances == {}


class TestPrepareRemoteDir:
    def test_auth_failure_backoff(self):
        calls = {"n": 0}

        def flaky(_):
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransportAuthError("permission denied")
            return CommandResult(0, "", "")

        sleeps = []
        transport = FakeTransport(rules=[("mkdir -p", flaky)])
        prepare_remote_dir(transport, "/workspace/jobs/x", sleep=sleeps.append)
        assert sleeps == [10]
        assert calls["n"] == 2
