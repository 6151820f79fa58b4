# Spotfleet Provisioning (cold path)
# Offer search → provision (next offer when one is taken) → attach key →
# wait for provider "running" → wait until SSH actually answers.
#
# Provider "running" and "SSH authenticatable" are separate milestones.
# The gap between them is covered by a bounded probe loop, never a fixed sleep.

import logging
import time

from events import EventType, record_event
from provider import (
    GONE_STATES,
    OfferUnavailableError,
    ProviderError,
    make_label,
)
from retry import RetryExhausted, RetryPolicy, retry_call
from transport import (
    SshTransport,
    TransportAuthError,
    TransportError,
    endpoint_of,
    tcp_check,
)

log = logging.getLogger("spotfleet")

MAX_OFFER_ATTEMPTS = 5
RUNNING_TIMEOUT_SEC = 600
RUNNING_POLL_SEC = 10
SSH_PROBE_ATTEMPTS = 12
SSH_PROBE_INTERVAL_SEC = 10
SSH_PROBE_TIMEOUT_SEC = 10


class ProvisioningError(Exception):
    """No offer could be turned into an instance."""

    def __init__(self, message, stats=None):
        super().__init__(message)
        self.stats = stats or {}


class ReadinessTimeoutError(Exception):
    """Instance never became reachable inside the readiness window."""


class _NotReady(Exception):
    pass


class _NoInstanceId(Exception):
    pass


def provision_from_offers(provider, offers, image=None, disk_gb=None, label=None, env=None,
                          max_offers=MAX_OFFER_ATTEMPTS, sleep=time.sleep):
    """
    Try offers in order. An offer taken by someone else is a provisioning
    error, not a fatal one: count it and move on to the next offer.
    Returns (instance, stats).
    """
    candidates = list(offers)[:max_offers]
    stats = {"attempts": 0, "provisioning_errors": 0, "offer_id": None}
    if not candidates:
        raise ProvisioningError("no offers to provision from", stats)

    def attempt(n):
        offer = candidates[n - 1]
        stats["attempts"] = n
        inst = provider.provision_instance(
            offer["offer_id"], image=image, disk_gb=disk_gb, label=label, env=env,
        )
        if not inst or not inst.get("instance_id"):
            raise _NoInstanceId(f"offer {offer['offer_id']} returned no instance id")
        inst = dict(inst)
        if not inst.get("hourly_rate"):
            inst["hourly_rate"] = offer.get("hourly_rate") or 0.0
        inst["offer_id"] = offer["offer_id"]
        inst["gpu_type"] = inst.get("gpu_type") or offer.get("gpu_type")
        stats["offer_id"] = offer["offer_id"]
        return inst

    def on_retry(n, err):
        stats["provisioning_errors"] += 1
        offer_id = candidates[n - 1]["offer_id"]
        log.warning("PROVISION OFFER FAILED offer=%s attempt=%d/%d err=%s",
                    offer_id, n, len(candidates), err)
        record_event(EventType.PROVISION_FAILED, "offer", offer_id, actor="provisioner",
                     error=str(err), label=label)

    policy = RetryPolicy(
        max_attempts=len(candidates),
        delays=(0,),
        retry_on=(OfferUnavailableError, _NoInstanceId),
    )
    try:
        inst = retry_call(attempt, policy, sleep=sleep, on_retry=on_retry, label="provision")
    except RetryExhausted as e:
        stats["provisioning_errors"] += 1
        raise ProvisioningError(
            f"all {len(candidates)} offers failed, last: {e.last_error}", stats,
        ) from e

    log.info("PROVISION OK instance=%s offer=%s attempts=%d errors=%d",
             inst["instance_id"], stats["offer_id"], stats["attempts"], stats["provisioning_errors"])
    return inst, stats


def provision_instance(provider, workload_type, opts=None, sleep=time.sleep):
    """
    Search, provision and attach credentials. Returns an instance record in
    the provisioning state. Readiness is the caller's next step.
    """
    opts = opts or {}
    criteria = dict(opts.get("criteria") or {})
    offers = provider.search_offers(criteria)
    if not offers:
        raise ProvisioningError(f"no offers match {criteria or 'default criteria'}")

    label = opts.get("label") or make_label(opts.get("job_id"))
    inst, stats = provision_from_offers(
        provider, offers,
        image=opts.get("image"), disk_gb=opts.get("disk_gb"), label=label, env=opts.get("env"),
        max_offers=opts.get("max_offers", MAX_OFFER_ATTEMPTS), sleep=sleep,
    )

    try:
        provider.attach_access_credentials(inst["instance_id"])
    except ProviderError as e:
        # key was also sent with the provision request
        log.warning("SSH KEY ATTACH FAILED instance=%s err=%s", inst["instance_id"], e)

    inst.update({
        "workload_type": workload_type,
        "label": label,
        "status": "provisioning",
        "provisioning_errors": stats["provisioning_errors"],
        "created_at": time.time(),
    })
    return inst


def wait_for_running(provider, instance_id, timeout=RUNNING_TIMEOUT_SEC,
                     interval=RUNNING_POLL_SEC, sleep=time.sleep):
    """Poll provider status until running with an SSH endpoint."""

    def check(_):
        status = provider.get_instance_status(instance_id)
        state = (status.get("status") or "").lower()
        if state in GONE_STATES:
            raise ProvisioningError(f"instance {instance_id} went {state} while booting")
        if state == "running" and (status.get("ssh_host") or status.get("public_ip")):
            return status
        raise _NotReady(f"instance {instance_id} status={state or 'unknown'}")

    attempts = max(1, int(timeout // max(interval, 1)) + 1)
    policy = RetryPolicy.fixed(interval, attempts, retry_on=(_NotReady,), deadline=timeout)
    try:
        return retry_call(check, policy, sleep=sleep, label=f"wait-running {instance_id}")
    except RetryExhausted as e:
        raise ReadinessTimeoutError(f"instance {instance_id} not running after {timeout}s: {e.last_error}")


def wait_for_ssh(transport, attempts=SSH_PROBE_ATTEMPTS, interval=SSH_PROBE_INTERVAL_SEC,
                 probe_timeout=SSH_PROBE_TIMEOUT_SEC, sleep=time.sleep, port_check=tcp_check):
    """
    Readiness probe: TCP port open, then an authenticated `echo ok`.
    Timeouts and auth failures right after boot are transient (keys are
    still propagating), so they are retried until the policy runs out.
    """

    def probe(_):
        if port_check is not None and not port_check(transport.host, transport.port, timeout=5):
            raise _NotReady(f"{transport.host}:{transport.port} not accepting connections")
        if not transport.probe(timeout=probe_timeout):
            raise _NotReady(f"{transport.host} probe returned unexpected output")
        return True

    policy = RetryPolicy.fixed(interval, attempts, retry_on=(_NotReady, TransportError))
    try:
        retry_call(probe, policy, sleep=sleep, label=f"ssh-probe {transport.host}")
    except RetryExhausted as e:
        raise ReadinessTimeoutError(f"{transport.host} never answered SSH: {e.last_error}")
    log.info("SSH READY %s:%d", transport.host, transport.port)
    return True


def await_ready(provider, instance_id, transport_factory=SshTransport, sleep=time.sleep,
                running_timeout=RUNNING_TIMEOUT_SEC, probe_attempts=SSH_PROBE_ATTEMPTS,
                port_check=tcp_check):
    """Provider running + SSH probe. Returns the provider status record."""
    status = wait_for_running(provider, instance_id, timeout=running_timeout, sleep=sleep)
    host, port, user = endpoint_of(status)
    transport = transport_factory(host, port=port, user=user)
    wait_for_ssh(transport, attempts=probe_attempts, sleep=sleep, port_check=port_check)
    return status


def prepare_remote_dir(transport, path, sleep=time.sleep, attempts=4):
    """First command after boot. Auth failures back off (n+1)*10s."""
    policy = RetryPolicy(
        max_attempts=attempts,
        delays=tuple((n + 1) * 10 for n in range(max(1, attempts - 1))),
        retry_on=(TransportAuthError,),
    )
    cmd = f"mkdir -p {path}"
    return retry_call(lambda _: transport.exec(cmd, timeout=30, check=True), policy,
                      sleep=sleep, label=f"mkdir {transport.host}")


def launch_instance(provider, workload_type, opts=None, transport_factory=SshTransport,
                    sleep=time.sleep, port_check=tcp_check):
    """
    Full cold start for one caller. Any readiness failure terminates the
    instance before the error propagates, so nothing is left billing.
    """
    inst = provision_instance(provider, workload_type, opts, sleep=sleep)
    instance_id = inst["instance_id"]
    try:
        status = await_ready(provider, instance_id, transport_factory=transport_factory,
                             sleep=sleep, port_check=port_check)
    except Exception:
        log.error("LAUNCH FAILED instance=%s, terminating", instance_id)
        try:
            provider.terminate_instance(instance_id)
        except ProviderError as te:
            log.error("TERMINATE AFTER FAILED LAUNCH instance=%s err=%s", instance_id, te)
        raise
    inst.update({k: v for k, v in status.items() if v})
    inst["hourly_rate"] = inst.get("hourly_rate") or 0.0
    inst["status"] = "ready"
    return inst
