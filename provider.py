# Spotfleet Instance Provider Client
# Thin REST wrapper over a Vast-style spot GPU marketplace.
# Search offers. Provision. Poll status. Attach keys. Terminate. List.
#
# The marketplace is inconsistent about field names, so every response is
# normalized here and nothing above this module ever sees a raw payload.

import logging
import os
import time

import requests

log = logging.getLogger("spotfleet")

PROVIDER_URL = os.environ.get("SPOTFLEET_PROVIDER_URL", "https://console.vast.ai/api/v0")
PROVIDER_API_KEY = os.environ.get("SPOTFLEET_PROVIDER_API_KEY", "")
SSH_KEY_PATH = os.environ.get("SPOTFLEET_SSH_KEY_PATH", os.path.expanduser("~/.ssh/spotfleet"))
LABEL_PREFIX = os.environ.get("SPOTFLEET_LABEL_PREFIX", "spotfleet")
DEFAULT_IMAGE = os.environ.get("SPOTFLEET_DEFAULT_IMAGE", "pytorch/pytorch:latest")
DEFAULT_DISK_GB = int(os.environ.get("SPOTFLEET_DISK_GB", "40"))
REQUEST_TIMEOUT = 30

# Regions with known SSH connectivity problems
BLOCKED_REGIONS = ("CN", "China", "HK", "Hong Kong")

# Provider-side states that mean the machine is gone or going
GONE_STATES = ("exited", "terminated", "stopped", "destroyed", "deleted", "offline")

_UNAVAILABLE_MARKERS = ("no_such_ask", "no longer available", "not available", "already rented")


class ProviderError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class OfferUnavailableError(ProviderError):
    """The offer was taken by someone else between search and provision."""


class InstanceNotFoundError(ProviderError):
    """Provider has no such instance. For terminate, that means already gone."""


def make_label(job_id=None):
    """`<prefix>-<job_id>`, or a timestamp when there is no job yet."""
    suffix = job_id if job_id else str(int(time.time() * 1000))
    return f"{LABEL_PREFIX}-{suffix}"


def _first(raw, *keys, default=None):
    for k in keys:
        v = raw.get(k)
        if v not in (None, ""):
            return v
    return default


def normalize_offer(raw):
    raw = raw or {}
    vram = _first(raw, "vram_gb", "gpu_ram")
    if vram:
        vram = float(vram)
        vram = vram / 1024 if vram > 500 else vram  # MB from some endpoints
    return {
        "offer_id": _first(raw, "id", "offer_id", "ask_contract_id"),
        "gpu_type": raw.get("gpu_name"),
        "num_gpus": int(raw.get("num_gpus") or 1),
        "vram_gb": vram,
        "hourly_rate": float(_first(raw, "dph_total", "dph_base", "price", default=0) or 0),
        "gpu_frac": float(raw.get("gpu_frac") if raw.get("gpu_frac") is not None else 1.0),
        "region": _first(raw, "geolocation", "region", "country"),
        "reliability": _first(raw, "reliability", "reliability2", "host_score"),
    }


def normalize_instance(raw):
    raw = raw or {}
    ssh = raw.get("ssh") if isinstance(raw.get("ssh"), dict) else {}
    instance_id = _first(raw, "id", "instance_id", "rental_id", "new_contract")
    return {
        "instance_id": str(instance_id) if instance_id is not None else None,
        "status": _first(raw, "cur_state", "actual_status", "status", "state"),
        "public_ip": _first(raw, "public_ipaddr", "public_ip", "ip"),
        # proxy host (sshN.vast.ai) routes more reliably than the direct IP
        "ssh_host": _first(raw, "ssh_host") or ssh.get("hostname"),
        "ssh_port": int(_first(raw, "ssh_port", default=ssh.get("port") or 22)),
        "ssh_user": _first(raw, "ssh_user", default=ssh.get("user") or "root"),
        "hourly_rate": float(_first(raw, "dph_total", "price", default=0) or 0),
        "gpu_type": raw.get("gpu_name"),
        "label": raw.get("label"),
        "started_at": _first(raw, "start_date", "created_at"),
    }


def filter_offers(offers, criteria=None):
    """Client-side filter + sort. Cheapest first unless sort says otherwise."""
    criteria = criteria or {}
    gpu = (criteria.get("gpu_type") or "").lower()
    min_vram = criteria.get("min_vram_gb")
    max_rate = criteria.get("max_hourly_rate")
    allow_fractional = criteria.get("allow_fractional", False)

    kept = []
    for o in offers:
        if gpu and gpu not in (o.get("gpu_type") or "").lower():
            continue
        if min_vram and o.get("vram_gb") and o["vram_gb"] < min_vram:
            continue
        if max_rate and o.get("hourly_rate") and o["hourly_rate"] > max_rate:
            continue
        if not allow_fractional and o.get("gpu_frac", 1.0) < 1.0:
            continue
        region = str(o.get("region") or "").lower()
        if region and any(b.lower() in region for b in BLOCKED_REGIONS):
            continue
        kept.append(o)

    sort_key = criteria.get("sort_by", "hourly_rate")
    kept.sort(key=lambda o: o.get(sort_key) or 0, reverse=criteria.get("descending", False))
    return kept


# ── Contract ──────────────────────────────────────────────────────────


class ProviderClient:
    """What the orchestrator needs from a GPU marketplace."""

    def search_offers(self, criteria=None):
        raise NotImplementedError

    def provision_instance(self, offer_id, image=None, disk_gb=None, label=None, env=None):
        raise NotImplementedError

    def get_instance_status(self, instance_id):
        raise NotImplementedError

    def attach_access_credentials(self, instance_id):
        raise NotImplementedError

    def terminate_instance(self, instance_id):
        raise NotImplementedError

    def list_instances(self):
        raise NotImplementedError

    def find_instance_by_label(self, label):
        for inst in self.list_instances():
            if inst.get("label") == label:
                return inst
        return None


# ── Vast-style REST implementation ────────────────────────────────────


class VastProvider(ProviderClient):

    def __init__(self, api_key=None, base_url=None, ssh_key_path=None):
        self.api_key = api_key or PROVIDER_API_KEY
        self.base_url = (base_url or PROVIDER_URL).rstrip("/")
        self.ssh_key_path = ssh_key_path or SSH_KEY_PATH
        self._public_key = None

    def _headers(self):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(
                method, url, headers=self._headers(), timeout=REQUEST_TIMEOUT, **kwargs,
            )
        except requests.RequestException as e:
            raise ProviderError(f"{method} {path} failed: {e}")

        body = {}
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {"raw": resp.text}

        text = (str(body.get("error", "")) + " " + str(body.get("msg", ""))).lower()
        if resp.status_code >= 400 or body.get("success") is False:
            if any(m in text for m in _UNAVAILABLE_MARKERS):
                raise OfferUnavailableError(
                    body.get("msg") or "offer no longer available", status_code=resp.status_code,
                )
            if resp.status_code == 404 and path.startswith("/instances/"):
                raise InstanceNotFoundError(f"{method} {path}: not found", status_code=404)
            raise ProviderError(
                f"{method} {path} -> HTTP {resp.status_code}: {body.get('msg') or body.get('error') or resp.text}",
                status_code=resp.status_code,
            )
        return body

    def public_key(self):
        if self._public_key is None:
            pub = f"{self.ssh_key_path}.pub"
            if not os.path.exists(pub):
                raise ProviderError(f"SSH public key not found at {pub}")
            with open(pub) as f:
                self._public_key = f.read().strip()
        return self._public_key

    def search_offers(self, criteria=None):
        criteria = criteria or {}
        q = {
            "rentable": {"eq": True},
            "rented": {"eq": False},
            "external": {"eq": False},
            "order": [["dph_total", "asc"]],
            "limit": criteria.get("limit", 50),
        }
        if criteria.get("verified", True):
            q["verified"] = {"eq": True}
        if criteria.get("min_vram_gb"):
            q["gpu_ram"] = {"gte": float(criteria["min_vram_gb"]) * 1024}
        if not criteria.get("allow_fractional", False):
            q["gpu_frac"] = {"gte": 1.0}
        body = self._request("POST", "/bundles/", json=q)
        offers = body.get("offers", [])
        if isinstance(offers, dict):
            offers = [offers] if "id" in offers else list(offers.values())
        return filter_offers([normalize_offer(o) for o in offers], criteria)

    def provision_instance(self, offer_id, image=None, disk_gb=None, label=None, env=None):
        if offer_id is None:
            raise ProviderError("offer_id is required to provision an instance")
        label = label or make_label()
        payload = {
            "image": image or DEFAULT_IMAGE,
            "disk": disk_gb or DEFAULT_DISK_GB,
            "label": label,
            "target_state": "running",
            "cancel_unavail": True,
            "ssh": True,
            "direct": True,
        }
        if env:
            payload["env"] = {str(k): str(v) for k, v in env.items()}
        try:
            payload["ssh_key"] = self.public_key()
        except ProviderError as e:
            log.warning("PROVISION without ssh_key: %s", e)

        body = self._request("PUT", f"/asks/{offer_id}/", json=payload)
        instance_id = _first(body, "new_contract", "instance_id", "id")
        if instance_id is None and isinstance(body.get("instances"), dict):
            instance_id = body["instances"].get("id")

        if instance_id is not None:
            log.info("PROVIDER PROVISIONED offer=%s instance=%s label=%s", offer_id, instance_id, label)
            return {"instance_id": str(instance_id), "status": "provisioning", "label": label}

        log.warning("PROVIDER PROVISION returned no instance id, looking up label=%s", label)
        found = self.find_instance_by_label(label)
        if not found:
            return {"instance_id": None, "status": "unknown", "label": label}
        return found

    def get_instance_status(self, instance_id):
        body = self._request("GET", f"/instances/{instance_id}/")
        raw = body.get("instances", body)
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        inst = normalize_instance(raw)
        inst["instance_id"] = inst["instance_id"] or str(instance_id)
        return inst

    def attach_access_credentials(self, instance_id):
        self._request("POST", f"/instances/{instance_id}/ssh/", json={"ssh_key": self.public_key()})
        log.info("PROVIDER SSH KEY ATTACHED instance=%s", instance_id)

    def terminate_instance(self, instance_id):
        self._request("DELETE", f"/instances/{instance_id}/")
        log.info("PROVIDER TERMINATED instance=%s", instance_id)

    def list_instances(self):
        body = self._request("GET", "/instances/")
        return [normalize_instance(i) for i in (body.get("instances") or [])]


_provider = None


def get_provider():
    global _provider
    if _provider is None:
        _provider = VastProvider()
    return _provider


def set_provider(provider):
    global _provider
    _provider = provider
