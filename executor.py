# Spotfleet Job Executor
# Drives one claimed job on one ready instance:
#   upload → start (detached) → poll → retrieve → cost → terminal state
#
# The workload runs under setsid so it survives our SSH session dropping.
# Completion is signalled by a status file the wrapper script writes, never
# by the SSH channel closing. Cost and release run on every path.

import json
import logging
import os
import re
import shlex
import time

from billing import meter, record_usage
from packer import (
    ARCHIVE_NAME,
    MANIFEST_NAME,
    pack,
    parse_remote_listing,
    verify_manifest,
)
from provisioning import prepare_remote_dir
from scheduler import complete_job, fail_job, record_progress, set_job_usage, start_job, touch_job
from transport import TransportError, TransportTimeout, _validate_name
from warm_pool import get_warm_pool

log = logging.getLogger("spotfleet")

REMOTE_ROOT = os.environ.get("SPOTFLEET_REMOTE_ROOT", "/workspace/jobs")
LOCAL_ROOT = os.environ.get(
    "SPOTFLEET_LOCAL_ROOT", os.path.join(os.path.dirname(__file__), "job_outputs")
)
DEFAULT_COMMAND = os.environ.get("SPOTFLEET_DEFAULT_COMMAND", "")

START_EXEC_TIMEOUT_SEC = 15
START_SETTLE_SEC = 3
POLL_INITIAL_SEC = 5.0
POLL_MAX_SEC = 60.0
MAX_WAIT_SEC = int(os.environ.get("SPOTFLEET_MAX_RUNTIME_SEC", str(4 * 3600)))
MAX_POLL_TRANSPORT_ERRORS = 5
PROGRESS_TAIL_LINES = 20

SCRIPT_HEREDOC = "SPOTFLEET_SCRIPT"

_STEP_RE = re.compile(r"(?:step|it|iter(?:ation)?)\s*[:=]?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_BAR_RE = re.compile(r"(\d+)\s*/\s*(\d+)\s*\[")
_PCT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)\s*%")


class ExecutionError(Exception):
    """Workload-level failure (non-zero exit, vanished process, bad upload)."""


class ExecutionTimeout(ExecutionError):
    """Workload exceeded the maximum wait."""


def parse_progress(lines):
    """
    Best-effort progress from the last log lines, newest first:
    `step 120/1000`, tqdm's `120/1000 [`, or a bare percentage.
    """
    for line in reversed([l for l in (lines or []) if l.strip()]):
        m = _STEP_RE.search(line) or _BAR_RE.search(line)
        if m:
            step, total = int(m.group(1)), int(m.group(2))
            pct = round(100.0 * step / total, 1) if total else None
            return {"step": step, "total": total, "percent": pct, "line": line.strip()[-200:]}
        m = _PCT_RE.search(line)
        if m:
            return {"step": None, "total": None, "percent": float(m.group(1)),
                    "line": line.strip()[-200:]}
    return None


def build_wrapper_script(job_id, job_root, command, env=None):
    """Run the workload, record its PID, then write status.json with the exit code."""
    exports = "\n".join(
        f"export {_validate_name(k, 'env var')}={shlex.quote(str(v))}"
        for k, v in sorted((env or {}).items())
    )
    return f"""#!/bin/bash
export PYTHONUNBUFFERED=1
export SPOTFLEET_JOB_ID={shlex.quote(job_id)}
export SPOTFLEET_JOB_ROOT={shlex.quote(job_root)}
{exports}
cd {shlex.quote(job_root)}
{command} >> {shlex.quote(job_root + "/logs/job.log")} 2>&1 &
WORK_PID=$!
echo $WORK_PID > {shlex.quote(job_root + "/job.pid")}
wait $WORK_PID
EXIT_CODE=$?
echo "{{\\"completed\\": true, \\"exit_code\\": $EXIT_CODE, \\"timestamp\\": \\"$(date -Iseconds)\\"}}" > {shlex.quote(job_root + "/status.json")}
exit $EXIT_CODE
"""


def _default_release(instance_id, request_type=None):
    pool = get_warm_pool()
    if pool is not None and pool.owns(instance_id):
        return pool.release(instance_id, request_type)
    return False


class JobExecutor:
    """One job, one instance. Construct per job; not reusable."""

    def __init__(self, transport, instance=None, remote_root=None, local_root=None,
                 poll_initial=POLL_INITIAL_SEC, poll_max=POLL_MAX_SEC, max_wait=None,
                 sleep=time.sleep, clock=time.time):
        self.transport = transport
        self.instance = instance or {}
        self.remote_root = (remote_root or REMOTE_ROOT).rstrip("/")
        self.local_root = local_root or LOCAL_ROOT
        self.poll_initial = poll_initial
        self.poll_max = poll_max
        self.max_wait = max_wait if max_wait is not None else MAX_WAIT_SEC
        self.sleep = sleep
        self.clock = clock
        self.job_root = None
        self.phase = None

    def _exec(self, command, timeout=30, check=True):
        return self.transport.exec(command, timeout=timeout, check=check)

    def _enter(self, job_id, phase):
        self.phase = phase
        log.info("EXEC PHASE %s job=%s instance=%s", phase.upper(), job_id,
                 self.instance.get("instance_id"))

    # ── process ───────────────────────────────────────────────────────

    def process(self, job, ctx=None):
        """
        Run the job to a terminal state. Never raises for workload or
        transport failures: they become a failed job with the originating
        error. Returns {"success", "gpu_seconds", "cost_usd", "error", "result"}.
        """
        ctx = ctx or {}
        job_id = _validate_name(job["job_id"], "job_id")
        instance_id = str(ctx.get("instance_id") or job.get("instance_id")
                          or self.instance.get("instance_id") or "")
        hourly_rate = ctx.get("hourly_rate")
        if hourly_rate is None:
            hourly_rate = self.instance.get("hourly_rate") or 0.0
        release = ctx.get("release") or _default_release
        billed_from = ctx.get("claimed_at") or job.get("claimed_at") or self.clock()
        self.job_root = f"{self.remote_root}/{job_id}"

        success = False
        error = None
        result = None
        started = False
        usage = None
        try:
            self._enter(job_id, "upload")
            self.upload(job)

            self._enter(job_id, "start")
            pid = self.start(job)
            start_job(job_id, pid=pid)
            started = True

            self._enter(job_id, "poll")
            exit_code = self.poll(job)
            if exit_code != 0:
                tail = self.tail_logs(5)
                raise ExecutionError(
                    f"workload exited with code {exit_code}"
                    + (f": {tail[-1]}" if tail else "")
                )

            self._enter(job_id, "retrieve")
            result = self.retrieve(job)
            success = True
        except Exception as e:
            error = f"{self.phase} failed: {e}"
            log.error("EXEC FAILED job=%s instance=%s phase=%s err=%s",
                      job_id, instance_id, self.phase, e)
        finally:
            # release runs whatever the bookkeeping does
            try:
                self._enter(job_id, "cost")
                usage = meter(job_id, instance_id, billed_from, self.clock(), hourly_rate,
                              tier=ctx.get("tier", job.get("tier")))
                try:
                    record_usage(usage)
                except Exception as e:
                    log.error("USAGE RECORD FAILED job=%s err=%s", job_id, e)

                self._enter(job_id, "terminal")
                try:
                    self._finish(job_id, success, started, result, error, usage.resource_usage())
                except Exception as e:
                    log.error("TERMINAL WRITE FAILED job=%s success=%s err=%s",
                              job_id, success, e, exc_info=True)
            finally:
                try:
                    release(instance_id, job.get("request_type"))
                except Exception as e:
                    log.error("RELEASE FAILED instance=%s job=%s err=%s", instance_id, job_id, e)

        return {
            "success": success,
            "gpu_seconds": usage.gpu_seconds,
            "cost_usd": usage.cost_usd,
            "error": error,
            "result": result,
        }

    def _finish(self, job_id, success, started, result, error, usage):
        try:
            if success:
                complete_job(job_id, result=result, usage=usage)
            else:
                fail_job(job_id, error or "unknown error", usage=usage)
        except ValueError as e:
            # sweeper may have failed the job under us; usage still lands
            log.warning("TERMINAL TRANSITION SKIPPED job=%s started=%s: %s", job_id, started, e)
            set_job_usage(job_id, usage)

    # ── phases ────────────────────────────────────────────────────────

    def upload(self, job):
        root = self.job_root
        q = shlex.quote(root)
        # first command on a fresh instance, so auth failures get the slow retry
        prepare_remote_dir(self.transport, f"{q}/logs {q}/outputs {q}/inputs {q}/scripts",
                           sleep=self.sleep)

        staging = os.path.join(self.local_root, job["job_id"], "transfer")
        os.makedirs(staging, exist_ok=True)
        job_file = os.path.join(staging, "job.json")
        with open(job_file, "w") as f:
            json.dump({k: job.get(k) for k in ("job_id", "request_type", "model", "payload")},
                      f, indent=2, default=str)
        self.transport.upload(job_file, f"{root}/job.json")

        if job.get("dataset_dir"):
            self.upload_dataset(job["dataset_dir"], staging)

        for path in (job.get("payload") or {}).get("inputs") or []:
            self.transport.upload(path, f"{root}/inputs/{os.path.basename(path.rstrip('/'))}")

    def upload_dataset(self, dataset_dir, staging):
        """Pack, upload, extract into dataset/, then check the remote copy against the manifest."""
        packed = pack(dataset_dir, staging)
        root = shlex.quote(self.job_root)
        self.transport.upload(packed["archive_path"], f"{self.job_root}/{ARCHIVE_NAME}")
        self.transport.upload(packed["manifest_path"], f"{self.job_root}/{MANIFEST_NAME}")
        self._exec(
            f"cd {root} && rm -rf dataset && mkdir -p dataset && "
            f"tar -xzf {ARCHIVE_NAME} -C dataset && rm -f {ARCHIVE_NAME}",
            timeout=600,
        )
        listing = parse_remote_listing(
            self._exec(f"cd {root}/dataset && find . -type f -printf '%P %s\\n'", timeout=60).stdout
        )
        check = verify_manifest(packed["manifest"], listing)
        if not check["ok"]:
            raise ExecutionError(
                f"dataset verification failed: {len(check['missing'])} missing, "
                f"{len(check['size_mismatch'])} size mismatches"
            )
        log.info("DATASET UPLOADED job_root=%s files=%d", self.job_root, len(listing))

    def start(self, job):
        """Write the wrapper and launch it detached. Returns the wrapper PID (or None)."""
        command = job.get("command") or DEFAULT_COMMAND
        if not command:
            raise ExecutionError("job has no command to run")
        script_path = f"{self.job_root}/scripts/run_job.sh"
        script = build_wrapper_script(job["job_id"], self.job_root, command, job.get("env"))
        launch = (
            f"mkdir -p {shlex.quote(self.job_root)}/scripts && "
            f"cat > {shlex.quote(script_path)} << '{SCRIPT_HEREDOC}'\n{script}{SCRIPT_HEREDOC}\n"
            f"chmod +x {shlex.quote(script_path)} && "
            f"setsid nohup bash {shlex.quote(script_path)} </dev/null >/dev/null 2>&1 & echo $!"
        )

        pid = None
        try:
            res = self._exec(launch, timeout=START_EXEC_TIMEOUT_SEC)
            pid = self._parse_pid(res.stdout)
        except TransportTimeout:
            # channel held open by the detached child; the script is running
            log.debug("START exec timed out for %s, proceeding to poll", job["job_id"])

        self.sleep(START_SETTLE_SEC)
        if pid is None:
            res = self._exec(f"cat {shlex.quote(self.job_root)}/job.pid 2>/dev/null || true",
                             check=False)
            pid = self._parse_pid(res.stdout)
        log.info("WORKLOAD STARTED job=%s pid=%s", job["job_id"], pid)
        return pid

    @staticmethod
    def _parse_pid(text):
        for line in reversed((text or "").splitlines()):
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def read_status(self):
        res = self._exec(f"cat {shlex.quote(self.job_root)}/status.json 2>/dev/null || echo '{{}}'",
                         check=False)
        for line in reversed(res.stdout.splitlines()):
            line = line.strip()
            if line.startswith("{"):
                try:
                    return json.loads(line)
                except ValueError:
                    return {}
        return {}

    def is_alive(self):
        pid_file = shlex.quote(f"{self.job_root}/job.pid")
        res = self._exec(
            f"if [ -f {pid_file} ] && kill -0 $(cat {pid_file}) 2>/dev/null; "
            f"then echo running; else echo stopped; fi",
            check=False,
        )
        lines = [l.strip() for l in res.stdout.splitlines() if l.strip()]
        return bool(lines) and lines[-1] == "running"

    def poll(self, job):
        """Wait for status.json. Returns the workload exit code."""
        job_id = job["job_id"]
        delay = self.poll_initial
        deadline = self.clock() + self.max_wait
        transport_errors = 0

        while True:
            try:
                status = self.read_status()
                if status.get("completed"):
                    return int(status.get("exit_code", 1))
                if not self.is_alive():
                    # the wrapper may have finished between the two reads
                    status = self.read_status()
                    if status.get("completed"):
                        return int(status.get("exit_code", 1))
                    raise ExecutionError("workload process is gone and wrote no status")
                progress = parse_progress(self.tail_logs(PROGRESS_TAIL_LINES))
                if progress:
                    record_progress(job_id, progress)
                else:
                    touch_job(job_id)
                transport_errors = 0
            except TransportError as e:
                transport_errors += 1
                if transport_errors >= MAX_POLL_TRANSPORT_ERRORS:
                    raise
                log.warning("POLL TRANSPORT ERROR job=%s (%d/%d): %s",
                            job_id, transport_errors, MAX_POLL_TRANSPORT_ERRORS, e)

            if self.clock() >= deadline:
                self.kill()
                raise ExecutionTimeout(f"workload exceeded max wait of {self.max_wait}s")
            self.sleep(delay)
            delay = min(delay * 2, self.poll_max)

    def kill(self):
        pid_file = shlex.quote(f"{self.job_root}/job.pid")
        try:
            self._exec(f"[ -f {pid_file} ] && kill $(cat {pid_file}) 2>/dev/null || true", check=False)
        except TransportError as e:
            log.warning("KILL FAILED job_root=%s err=%s", self.job_root, e)

    def retrieve(self, job):
        """Download outputs/ into the local staging dir. Returns the result reference."""
        local_dir = os.path.join(self.local_root, job["job_id"], "outputs")
        remote = f"{self.job_root}/outputs"
        listing = parse_remote_listing(
            self._exec(f"cd {shlex.quote(remote)} 2>/dev/null && find . -type f -printf '%P %s\\n'",
                       check=False).stdout
        )
        if listing:
            os.makedirs(local_dir, exist_ok=True)
            self.transport.download(f"{remote}/.", local_dir, recursive=True)
        log.info("OUTPUTS RETRIEVED job=%s files=%d -> %s", job["job_id"], len(listing), local_dir)
        return {
            "exit_code": 0,
            "outputs_dir": local_dir if listing else None,
            "files": sorted(listing),
            "remote_root": self.job_root,
        }

    def tail_logs(self, lines=100):
        res = self._exec(
            f"tail -n {int(lines)} {shlex.quote(self.job_root + '/logs/job.log')} 2>/dev/null || true",
            check=False,
        )
        return res.stdout.splitlines()
