# Spotfleet Remote Execution Transport
# ssh/scp over subprocess. Key-based auth only. No passwords. No agent forwarding.
# No retries in here: every failure goes back to the caller, who owns the
# retry policy (a readiness probe wants fast-fail, a dataset upload does not).

import logging
import os
import re
import shlex
import socket
import subprocess
import threading
from collections import namedtuple

log = logging.getLogger("spotfleet")

SSH_KEY_PATH = os.environ.get("SPOTFLEET_SSH_KEY_PATH", os.path.expanduser("~/.ssh/spotfleet"))
SSH_USER = os.environ.get("SPOTFLEET_SSH_USER", "root")
CONNECT_TIMEOUT = int(os.environ.get("SPOTFLEET_SSH_CONNECT_TIMEOUT", "10"))

CommandResult = namedtuple("CommandResult", ["returncode", "stdout", "stderr"])


class TransportError(Exception):
    """Remote session could not be used (connection refused, reset, no route)."""


class TransportTimeout(TransportError):
    """Command or transfer exceeded its time bound."""


class TransportAuthError(TransportError):
    """Key rejected. Common for a minute or so after boot while keys propagate."""


# ssh exits 255 on its own errors; these markers say it was auth, not network
_AUTH_MARKERS = (
    "permission denied",
    "host key verification failed",
    "too many authentication failures",
    "no supported authentication methods",
)

# Safe name pattern: alphanumeric, hyphens, underscores, dots, slashes
_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9._/@:-]+$")


def _validate_name(value, label="value"):
    """Reject shell-unsafe characters in names used in remote commands."""
    if not value or not _SAFE_NAME_RE.match(str(value)):
        raise ValueError(
            f"Invalid {label}: {value!r} (only alphanumeric, hyphens, underscores, dots, slashes allowed)"
        )
    return str(value)


def _classify_failure(stderr, host):
    text = (stderr or "").lower()
    if any(m in text for m in _AUTH_MARKERS):
        return TransportAuthError(f"ssh auth failed for {host}: {stderr.strip()}")
    return TransportError(f"ssh connection to {host} failed: {stderr.strip() or 'exit 255'}")


def tcp_check(host, port, timeout=5):
    """True if a TCP connection to host:port opens."""
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except OSError:
        return False


class SshTransport:
    """One remote host. exec/upload/download, each bounded by a timeout."""

    def __init__(self, host, port=22, user=None, key_path=None, connect_timeout=None):
        self.host = host
        self.port = int(port or 22)
        self.user = user or SSH_USER
        self.key_path = key_path or SSH_KEY_PATH
        self.connect_timeout = connect_timeout or CONNECT_TIMEOUT

    def __repr__(self):
        return f"SshTransport({self.user}@{self.host}:{self.port})"

    def _common_opts(self):
        return [
            "-i", self.key_path,
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "PasswordAuthentication=no",
            "-o", "KbdInteractiveAuthentication=no",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ServerAliveInterval=10",
            "-o", "ServerAliveCountMax=3",
            "-o", "LogLevel=ERROR",
        ]

    def _ssh_cmd(self, command):
        return ["ssh", "-p", str(self.port), *self._common_opts(),
                f"{self.user}@{self.host}", command]

    def _scp_cmd(self, src, dst, recursive):
        cmd = ["scp", "-P", str(self.port), *self._common_opts()]
        if recursive:
            cmd.append("-r")
        return cmd + [src, dst]

    def _run(self, argv, timeout, what):
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise TransportTimeout(f"{what} on {self.host} timed out after {timeout}s")
        except OSError as e:
            raise TransportError(f"{what} on {self.host} could not start: {e}")
        return result

    def exec(self, command, timeout=30, check=False):
        """
        Run a command remotely. Returns CommandResult(returncode, stdout, stderr).
        A non-zero exit from the command itself is returned, not raised,
        unless check=True.
        """
        result = self._run(self._ssh_cmd(command), timeout, "exec")
        stdout = result.stdout.strip()
        stderr = result.stderr.strip()
        if result.returncode == 255:
            raise _classify_failure(stderr, self.host)
        if check and result.returncode != 0:
            raise TransportError(
                f"remote command failed rc={result.returncode} on {self.host}: {stderr or stdout}"
            )
        return CommandResult(result.returncode, stdout, stderr)

    def upload(self, local_path, remote_path, recursive=False, timeout=600):
        if not os.path.exists(local_path):
            raise FileNotFoundError(local_path)
        recursive = recursive or os.path.isdir(local_path)
        dst = f"{self.user}@{self.host}:{shlex.quote(remote_path)}"
        result = self._run(self._scp_cmd(local_path, dst, recursive), timeout, "upload")
        if result.returncode != 0:
            if result.returncode == 255 or "lost connection" in result.stderr.lower():
                raise _classify_failure(result.stderr, self.host)
            raise TransportError(f"upload {local_path} -> {remote_path} failed: {result.stderr.strip()}")
        log.debug("UPLOAD %s -> %s:%s", local_path, self.host, remote_path)

    def download(self, remote_path, local_path, recursive=False, timeout=600):
        parent = os.path.dirname(os.path.abspath(local_path))
        os.makedirs(parent, exist_ok=True)
        src = f"{self.user}@{self.host}:{shlex.quote(remote_path)}"
        result = self._run(self._scp_cmd(src, local_path, recursive), timeout, "download")
        if result.returncode != 0:
            if result.returncode == 255 or "lost connection" in result.stderr.lower():
                raise _classify_failure(result.stderr, self.host)
            raise TransportError(f"download {remote_path} -> {local_path} failed: {result.stderr.strip()}")
        log.debug("DOWNLOAD %s:%s -> %s", self.host, remote_path, local_path)

    def probe(self, timeout=10):
        """Single authenticated round trip. Raises on transport failure."""
        rc, stdout, _ = self.exec("echo ok", timeout=timeout)
        return rc == 0 and stdout.splitlines()[-1:] == ["ok"]


# ── Transport cache ───────────────────────────────────────────────────
# One transport per instance id. Accessed only through these helpers.

_transports = {}
_transports_lock = threading.Lock()


def endpoint_of(instance):
    """(host, port, user) for an instance record. Proxy host preferred."""
    host = instance.get("ssh_host") or instance.get("public_ip")
    if not host:
        raise TransportError(f"instance {instance.get('instance_id')} has no SSH endpoint")
    return host, int(instance.get("ssh_port") or 22), instance.get("ssh_user") or SSH_USER


def get_transport(instance, factory=SshTransport):
    instance_id = str(instance.get("instance_id"))
    with _transports_lock:
        t = _transports.get(instance_id)
        if t is None:
            host, port, user = endpoint_of(instance)
            t = factory(host, port=port, user=user)
            _transports[instance_id] = t
            log.info("TRANSPORT CREATED instance=%s %s:%d", instance_id, host, port)
        return t


def drop_transport(instance_id):
    with _transports_lock:
        return _transports.pop(str(instance_id), None) is not None
