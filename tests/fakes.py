"""In-memory stand-ins for the GPU marketplace and the SSH transport."""

import threading
import time

from provider import (
    InstanceNotFoundError,
    OfferUnavailableError,
    ProviderClient,
    ProviderError,
    filter_offers,
)
from transport import CommandResult


def make_offer(offer_id, rate=0.5, gpu="RTX 4090", vram=24.0, region="US"):
    return {
        "offer_id": offer_id,
        "gpu_type": gpu,
        "num_gpus": 1,
        "vram_gb": vram,
        "hourly_rate": rate,
        "gpu_frac": 1.0,
        "region": region,
        "reliability": 0.99,
    }


class FakeProvider(ProviderClient):
    """Marketplace with a fixed offer book. Provisioned instances boot instantly."""

    def __init__(self, offers=None, unavailable=(), fail_terminate=0):
        self.offers = list(offers) if offers is not None else [make_offer("o1"), make_offer("o2", 0.7)]
        self.unavailable = set(unavailable)
        self.fail_terminate = fail_terminate
        self.instances = {}
        self.provisioned = []
        self.terminated = []
        self.credentials = []
        self._next = 100
        self._lock = threading.Lock()

    def add_instance(self, instance_id, label=None, status="running", started_at=None,
                     hourly_rate=0.5):
        inst = {
            "instance_id": str(instance_id),
            "status": status,
            "public_ip": None,
            "ssh_host": f"ssh{instance_id}.example.net",
            "ssh_port": 22,
            "ssh_user": "root",
            "hourly_rate": hourly_rate,
            "gpu_type": "RTX 4090",
            "label": label,
            "started_at": started_at if started_at is not None else time.time(),
        }
        with self._lock:
            self.instances[str(instance_id)] = inst
        return inst

    def search_offers(self, criteria=None):
        return filter_offers(list(self.offers), criteria)

    def provision_instance(self, offer_id, image=None, disk_gb=None, label=None, env=None):
        if offer_id in self.unavailable:
            raise OfferUnavailableError(f"offer {offer_id} no longer available")
        rate = next((o["hourly_rate"] for o in self.offers if o["offer_id"] == offer_id), 0.5)
        with self._lock:
            self._next += 1
            instance_id = str(self._next)
            self.provisioned.append((offer_id, instance_id))
        self.add_instance(instance_id, label=label, hourly_rate=rate)
        return {"instance_id": instance_id, "status": "provisioning", "label": label}

    def get_instance_status(self, instance_id):
        with self._lock:
            inst = self.instances.get(str(instance_id))
            if inst is None:
                raise InstanceNotFoundError(f"instance {instance_id} not found", status_code=404)
            return dict(inst)

    def attach_access_credentials(self, instance_id):
        self.credentials.append(str(instance_id))

    def terminate_instance(self, instance_id):
        with self._lock:
            if self.fail_terminate > 0:
                self.fail_terminate -= 1
                raise ProviderError("HTTP 502: bad gateway", status_code=502)
            if str(instance_id) not in self.instances:
                raise InstanceNotFoundError(f"instance {instance_id} not found", status_code=404)
            del self.instances[str(instance_id)]
            self.terminated.append(str(instance_id))

    def list_instances(self):
        with self._lock:
            return [dict(i) for i in self.instances.values()]


class FakeTransport:
    """
    Scripted remote host. `rules` is a list of (substring, response); the
    first rule whose substring appears in the command answers it. A
    response is a CommandResult, a string (stdout, rc 0), an exception to
    raise, or a callable taking the command.
    """

    def __init__(self, host="fake-host", port=22, user=None, rules=None):
        self.host = host
        self.port = port
        self.user = user or "root"
        self.rules = list(rules or [])
        self.commands = []
        self.uploads = []
        self.downloads = []

    def exec(self, command, timeout=30, check=False):
        self.commands.append(command)
        for needle, response in self.rules:
            if needle in command:
                if callable(response) and not isinstance(response, type):
                    response = response(command)
                if isinstance(response, BaseException):
                    raise response
                if isinstance(response, str):
                    response = CommandResult(0, response, "")
                return response
        return CommandResult(0, "", "")

    def upload(self, local_path, remote_path, recursive=False, timeout=600):
        self.uploads.append((local_path, remote_path))

    def download(self, remote_path, local_path, recursive=False, timeout=600):
        self.downloads.append((remote_path, local_path))

    def probe(self, timeout=10):
        return True
