#!/usr/bin/env python3
# Spotfleet CLI
# argparse. One subcommand per operation.
# Exit codes: 0 ok, 1 operation failed, 2 bad invocation or missing config.

import argparse
import json
import os
import sys
import tempfile

import provider as provider_mod
import transport as transport_mod
from billing import get_usage_summary
from db import list_instances, set_instance_fields
from executor import ExecutionError, JobExecutor
from packer import DatasetError, validate_dataset
from provider import LABEL_PREFIX, ProviderError, get_provider, make_label
from provisioning import (
    ProvisioningError,
    ReadinessTimeoutError,
    launch_instance,
    prepare_remote_dir,
)
from retry import RetryExhausted
from scheduler import claim_job, get_job, list_jobs, submit_job, workload_type_for
from sweeper import InstanceSweeper
from transport import SshTransport, TransportError, endpoint_of, get_transport

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _require_provider_config(need_ssh=True):
    """Print what is missing and return False."""
    missing = []
    if not provider_mod.PROVIDER_API_KEY:
        missing.append("SPOTFLEET_PROVIDER_API_KEY is not set")
    if need_ssh and not os.path.exists(transport_mod.SSH_KEY_PATH):
        missing.append(f"SSH key not found at {transport_mod.SSH_KEY_PATH}")
    for m in missing:
        print(f"Config error: {m}", file=sys.stderr)
    return not missing


def _criteria(args):
    c = {}
    if getattr(args, "gpu", None):
        c["gpu_type"] = args.gpu
    if getattr(args, "max_price", None):
        c["max_hourly_rate"] = args.max_price
    if getattr(args, "min_vram", None):
        c["min_vram_gb"] = args.min_vram
    if getattr(args, "allow_fractional", False):
        c["allow_fractional"] = True
    return c


def _print_job(j):
    inst = j.get("instance_id") or "—"
    model = j.get("model") or "—"
    cost = (j.get("resource_usage") or {}).get("cost_usd")
    cost_s = f"${cost:.4f}" if cost is not None else "—"
    print(f"  [{j['status']:>9}] {j['job_id']} | {j['request_type']} | p{j.get('priority', 0)} "
          f"| model: {model} | instance: {inst} | cost: {cost_s}")


# ── Jobs ──────────────────────────────────────────────────────────────


def cmd_submit(args):
    """Queue a job for the worker."""
    job = submit_job(
        args.type, priority=args.priority, tier=args.tier, model=args.model,
        dataset_dir=args.dataset, command=args.command, image=args.image,
        criteria=_criteria(args),
    )
    print(f"Job submitted: {job['job_id']} | {job['request_type']} -> {job['workload_type']} "
          f"| priority {job['priority']}")
    return EXIT_OK


def cmd_jobs(args):
    jobs = list_jobs(status=args.status)
    if not jobs:
        print("No jobs.")
        return EXIT_OK
    for j in jobs:
        _print_job(j)
    return EXIT_OK


def cmd_job(args):
    j = get_job(args.job_id)
    if not j:
        print(f"Job {args.job_id} not found.", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(j, indent=2, default=str))
    return EXIT_OK


# ── Provision and run ─────────────────────────────────────────────────


def cmd_run(args):
    """
    Provision an instance, run one job on it end to end, print usage.
    The instance is terminated afterwards unless --keep.
    """
    if not _require_provider_config():
        return EXIT_USAGE

    if args.job_id:
        job = get_job(args.job_id)
        if not job:
            print(f"Job {args.job_id} not found.", file=sys.stderr)
            return EXIT_FAILED
        if job["status"] != "queued":
            print(f"Job {args.job_id} is {job['status']}, not queued.", file=sys.stderr)
            return EXIT_FAILED
    else:
        if not args.type or not (args.command or args.dataset):
            print("run needs --job-id, or --type with --command/--dataset", file=sys.stderr)
            return EXIT_USAGE
        job = submit_job(args.type, tier=args.tier, model=args.model, dataset_dir=args.dataset,
                         command=args.command, image=args.image, criteria=_criteria(args))
        print(f"Job submitted: {job['job_id']}")

    provider = get_provider()
    opts = {
        "job_id": job["job_id"],
        "criteria": job.get("criteria") or _criteria(args),
        "image": job.get("image"),
        "label": make_label(job["job_id"]),
    }
    print(f"Provisioning a {workload_type_for(job)} instance...")
    try:
        inst = launch_instance(provider, workload_type_for(job), opts)
    except (ProvisioningError, ReadinessTimeoutError, ProviderError) as e:
        print(f"Provisioning failed: {e}", file=sys.stderr)
        return EXIT_FAILED
    instance_id = inst["instance_id"]
    print(f"Instance {instance_id} ready at {inst.get('ssh_host') or inst.get('public_ip')} "
          f"(${inst.get('hourly_rate', 0):.3f}/h, {inst.get('provisioning_errors', 0)} provisioning errors)")

    def release(iid, _request_type=None):
        if args.keep:
            print(f"Keeping instance {iid} (--keep). Terminate it with `spotfleet cleanup`.")
            return
        provider.terminate_instance(iid)
        set_instance_fields(iid, status="terminated", job_id=None)
        print(f"Instance {iid} terminated.")

    claimed = claim_job(job["job_id"], instance_id)
    if claimed is None:
        print(f"Job {job['job_id']} was claimed elsewhere.", file=sys.stderr)
        release(instance_id)
        return EXIT_FAILED

    executor = JobExecutor(get_transport(inst), inst)
    outcome = executor.process(claimed, {
        "instance_id": instance_id,
        "hourly_rate": inst.get("hourly_rate") or 0.0,
        "tier": claimed.get("tier"),
        "claimed_at": claimed.get("claimed_at"),
        "release": release,
    })
    print(f"Job {job['job_id']}: {'COMPLETED' if outcome['success'] else 'FAILED'}")
    print(f"  GPU seconds: {outcome['gpu_seconds']:.1f}")
    print(f"  Cost:        ${outcome['cost_usd']:.6f}")
    if outcome["error"]:
        print(f"  Error:       {outcome['error']}")
    return EXIT_OK if outcome["success"] else EXIT_FAILED


def cmd_capacity(args):
    """List what the marketplace has right now."""
    if not provider_mod.PROVIDER_API_KEY:
        print("Config error: SPOTFLEET_PROVIDER_API_KEY is not set", file=sys.stderr)
        return EXIT_USAGE
    criteria = _criteria(args)
    criteria["limit"] = args.limit
    try:
        offers = get_provider().search_offers(criteria)
    except ProviderError as e:
        print(f"Offer search failed: {e}", file=sys.stderr)
        return EXIT_FAILED
    if args.json:
        print(json.dumps(offers, indent=2))
        return EXIT_OK
    if not offers:
        print("No offers match.")
        return EXIT_OK
    for o in offers[: args.limit]:
        vram = f"{o['vram_gb']:.0f}GB" if o.get("vram_gb") else "?"
        print(f"  {o['offer_id']} | {o.get('gpu_type') or '?'} x{o.get('num_gpus', 1)} | {vram} "
              f"| ${o['hourly_rate']:.3f}/h | {o.get('region') or '?'}")
    return EXIT_OK


# ── Cleanup ───────────────────────────────────────────────────────────


def cmd_cleanup(args):
    """Report (default) or terminate leaked instances."""
    if not provider_mod.PROVIDER_API_KEY:
        print("Config error: SPOTFLEET_PROVIDER_API_KEY is not set", file=sys.stderr)
        return EXIT_USAGE
    if args.terminate_all and not args.force:
        print("--terminate-all requires --force", file=sys.stderr)
        return EXIT_USAGE

    provider = get_provider()
    sweeper = InstanceSweeper(provider=provider)

    if args.terminate_all:
        try:
            ours = [i for i in provider.list_instances()
                    if (i.get("label") or "").startswith(LABEL_PREFIX)]
        except ProviderError as e:
            print(f"Listing instances failed: {e}", file=sys.stderr)
            return EXIT_FAILED
        failed = 0
        for inst in ours:
            try:
                outcome = sweeper.terminate(inst["instance_id"], "manual")
                print(f"  terminated {inst['instance_id']} ({inst.get('label')}) [{outcome}]")
            except RetryExhausted as e:
                failed += 1
                print(f"  FAILED {inst['instance_id']}: {e}", file=sys.stderr)
        print(f"{len(ours) - failed}/{len(ours)} instances terminated.")
        return EXIT_FAILED if failed else EXIT_OK

    report = sweeper.sweep(dry_run=not args.force)
    findings = report["terminated"] if args.force else report["would_terminate"]
    verb = "terminated" if args.force else "would terminate"
    print(f"Checked {report['instances_checked']} instances.")
    for f in findings:
        print(f"  {verb} {f['instance_id']} [{f['reason']}] {f['detail']}")
    for e in report["errors"]:
        print(f"  error {e.get('instance_id') or '-'}: {e['error']}", file=sys.stderr)
    if not findings:
        print("Nothing to clean up.")
    elif not args.force:
        print("Dry run. Re-run with --force to terminate.")
    return EXIT_FAILED if report["errors"] else EXIT_OK


def cmd_sweep(args):
    """One-shot sweep, JSON report."""
    if not provider_mod.PROVIDER_API_KEY:
        print("Config error: SPOTFLEET_PROVIDER_API_KEY is not set", file=sys.stderr)
        return EXIT_USAGE
    report = InstanceSweeper(provider=get_provider()).sweep(dry_run=args.dry_run)
    print(json.dumps(report, indent=2, default=str))
    return EXIT_FAILED if report.get("errors") else EXIT_OK


# ── Datasets ──────────────────────────────────────────────────────────


def cmd_dataset_validate(args):
    try:
        report = validate_dataset(args.dir, min_images=args.min_images)
    except DatasetError as e:
        print(f"Dataset error: {e}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Images: {report['image_count']} | Captions: {report['caption_count']} "
          f"| Files: {report['file_count']}")
    if report["missing_captions"]:
        print(f"  {len(report['missing_captions'])} images without captions:")
        for name in report["missing_captions"][:20]:
            print(f"    {name}")
    for err in report["errors"]:
        print(f"  ERROR: {err}", file=sys.stderr)
    print("OK" if report["ok"] else "INVALID")
    return EXIT_OK if report["ok"] else EXIT_FAILED


def cmd_dataset_pack_upload(args):
    """Pack a dataset and push it to a running instance, verified against the manifest."""
    if not _require_provider_config():
        return EXIT_USAGE
    try:
        status = get_provider().get_instance_status(args.instance)
        host, port, user = endpoint_of(status)
    except (ProviderError, TransportError) as e:
        print(f"Instance {args.instance} unavailable: {e}", file=sys.stderr)
        return EXIT_FAILED

    transport = SshTransport(host, port=port, user=user)
    executor = JobExecutor(transport, status)
    executor.job_root = args.remote_dir.rstrip("/")
    try:
        prepare_remote_dir(transport, executor.job_root)
        with tempfile.TemporaryDirectory(prefix="spotfleet-pack-") as staging:
            executor.upload_dataset(args.dir, staging)
    except (DatasetError, ExecutionError, TransportError, RetryExhausted) as e:
        print(f"Upload failed: {e}", file=sys.stderr)
        return EXIT_FAILED
    print(f"Dataset uploaded to {host}:{executor.job_root}/dataset")
    return EXIT_OK


# ── Pool / usage / server ─────────────────────────────────────────────


def cmd_pool(args):
    """Instances as last recorded (the live pool belongs to the worker process)."""
    instances = list_instances(status=args.status)
    if not args.all and not args.status:
        instances = [i for i in instances if i.get("status") != "terminated"]
    if not instances:
        print("No instances.")
        return EXIT_OK
    for i in instances:
        print(f"  [{i.get('status', '?'):>12}] {i['instance_id']} | {i.get('workload_type') or '—'} "
              f"| job: {i.get('job_id') or '—'} | ${float(i.get('hourly_rate') or 0):.3f}/h")
    return EXIT_OK


def cmd_usage(args):
    print(json.dumps(get_usage_summary(), indent=2))
    return EXIT_OK


def cmd_serve(args):
    """Start the ops API server."""
    import uvicorn
    from api import app
    print(f"Starting Spotfleet API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        prog="spotfleet",
        description="Spotfleet: spot GPU fleet orchestrator",
    )
    sub = parser.add_subparsers(dest="subcommand")

    def offer_filters(p):
        p.add_argument("--gpu", help="GPU name substring (e.g. 4090)")
        p.add_argument("--max-price", type=float, help="Max $/hour")
        p.add_argument("--min-vram", type=float, help="Min VRAM (GB)")
        p.add_argument("--allow-fractional", action="store_true", help="Accept fractional GPUs")

    # spotfleet submit
    p_submit = sub.add_parser("submit", help="Queue a job")
    p_submit.add_argument("--type", required=True, help="Request type (training, image-gen, ...)")
    p_submit.add_argument("--priority", type=int, default=0)
    p_submit.add_argument("--tier", default=None, help="Billing tier (free, holder, premium)")
    p_submit.add_argument("--model", default=None, help="Model affinity key")
    p_submit.add_argument("--command", default=None, help="Workload command to run remotely")
    p_submit.add_argument("--dataset", default=None, help="Local dataset dir (training)")
    p_submit.add_argument("--image", default=None, help="Container image")
    offer_filters(p_submit)
    p_submit.set_defaults(func=cmd_submit)

    # spotfleet jobs
    p_jobs = sub.add_parser("jobs", help="List jobs")
    p_jobs.add_argument("--status", help="Filter by status")
    p_jobs.set_defaults(func=cmd_jobs)

    # spotfleet job <id>
    p_job = sub.add_parser("job", help="Show one job")
    p_job.add_argument("job_id")
    p_job.set_defaults(func=cmd_job)

    # spotfleet run
    p_run = sub.add_parser("run", help="Provision an instance and run one job on it")
    p_run.add_argument("--job-id", default=None, help="Run an already queued job")
    p_run.add_argument("--type", default=None, help="Request type for a new job")
    p_run.add_argument("--command", default=None)
    p_run.add_argument("--dataset", default=None)
    p_run.add_argument("--model", default=None)
    p_run.add_argument("--image", default=None)
    p_run.add_argument("--tier", default=None)
    p_run.add_argument("--keep", action="store_true", help="Do not terminate the instance afterwards")
    offer_filters(p_run)
    p_run.set_defaults(func=cmd_run)

    # spotfleet capacity
    p_cap = sub.add_parser("capacity", help="List available GPU offers")
    offer_filters(p_cap)
    p_cap.add_argument("--limit", type=int, default=20)
    p_cap.add_argument("--json", action="store_true")
    p_cap.set_defaults(func=cmd_capacity)

    # spotfleet cleanup
    p_clean = sub.add_parser("cleanup", help="Find and terminate leaked instances")
    p_clean.add_argument("--dry-run", action="store_true", default=True,
                         help="Report only (default)")
    p_clean.add_argument("--force", action="store_true", help="Actually terminate")
    p_clean.add_argument("--terminate-all", action="store_true",
                         help=f"Terminate every instance labelled {LABEL_PREFIX}-* (needs --force)")
    p_clean.set_defaults(func=cmd_cleanup)

    # spotfleet sweep
    p_sweep = sub.add_parser("sweep", help="Run one sweeper pass and print the report")
    p_sweep.add_argument("--dry-run", action="store_true")
    p_sweep.set_defaults(func=cmd_sweep)

    # spotfleet dataset-validate
    p_dv = sub.add_parser("dataset-validate", help="Check a training dataset directory")
    p_dv.add_argument("dir")
    p_dv.add_argument("--min-images", type=int, default=1)
    p_dv.set_defaults(func=cmd_dataset_validate)

    # spotfleet dataset-pack-upload
    p_dpu = sub.add_parser("dataset-pack-upload", help="Pack a dataset and upload it to an instance")
    p_dpu.add_argument("dir")
    p_dpu.add_argument("--instance", required=True, help="Instance ID")
    p_dpu.add_argument("--remote-dir", default="/workspace/dataset-upload")
    p_dpu.set_defaults(func=cmd_dataset_pack_upload)

    # spotfleet pool
    p_pool = sub.add_parser("pool", help="List recorded instances")
    p_pool.add_argument("--status", default=None)
    p_pool.add_argument("--all", action="store_true", help="Include terminated")
    p_pool.set_defaults(func=cmd_pool)

    # spotfleet usage
    p_usage = sub.add_parser("usage", help="Spend summary")
    p_usage.set_defaults(func=cmd_usage)

    # spotfleet serve
    p_serve = sub.add_parser("serve", help="Start the ops API")
    p_serve.add_argument("--bind", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.subcommand:
        parser.print_help()
        return EXIT_USAGE
    rc = args.func(args)
    return EXIT_OK if rc is None else rc


if __name__ == "__main__":
    sys.exit(main())
