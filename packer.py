# Spotfleet Dataset Packer
# Turns a local training dataset directory into one upload:
#   dataset.tar.gz         every file, flat relative names
#   dataset_manifest.json  name/size/sha256 per file + captions
# The manifest is what the remote side is checked against after extraction.

import hashlib
import json
import logging
import os
import tarfile
import time

log = logging.getLogger("spotfleet")

ARCHIVE_NAME = "dataset.tar.gz"
MANIFEST_NAME = "dataset_manifest.json"
MANIFEST_VERSION = 1
READY_MARKER = ".ready"

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".bmp")
CAPTION_EXTENSION = ".txt"


class DatasetError(Exception):
    """Dataset directory missing, empty or unreadable."""


def _sha256(path, chunk_size=1 << 20):
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def list_dataset_files(source_dir):
    """Relative paths of every packable file, sorted. Hidden files excluded."""
    if not os.path.isdir(source_dir):
        raise DatasetError(f"dataset directory not found: {source_dir}")
    files = []
    for root, dirs, names in os.walk(source_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in names:
            if name.startswith(".") or name == READY_MARKER:
                continue
            full = os.path.join(root, name)
            files.append(os.path.relpath(full, source_dir).replace(os.sep, "/"))
    return sorted(files)


def _read_captions(source_dir, files):
    captions = {}
    for rel in files:
        stem, ext = os.path.splitext(rel)
        if ext.lower() != CAPTION_EXTENSION:
            continue
        with open(os.path.join(source_dir, rel), encoding="utf-8", errors="replace") as f:
            text = f.read().strip()
        if text:
            captions[stem] = text
    return captions


def validate_dataset(source_dir, min_images=1):
    """
    Pre-flight check before anything is rented. Returns a report; does not
    raise for content problems, only for a missing directory.
    """
    files = list_dataset_files(source_dir)
    images = [f for f in files if os.path.splitext(f)[1].lower() in IMAGE_EXTENSIONS]
    captions = _read_captions(source_dir, files)
    missing = [f for f in images if os.path.splitext(f)[0] not in captions]

    errors = []
    if not files:
        errors.append("dataset directory is empty")
    if len(images) < min_images:
        errors.append(f"found {len(images)} images, need at least {min_images}")
    for rel in files:
        if os.path.getsize(os.path.join(source_dir, rel)) == 0:
            errors.append(f"empty file: {rel}")

    report = {
        "ok": not errors,
        "file_count": len(files),
        "image_count": len(images),
        "caption_count": len(captions),
        "missing_captions": missing,
        "errors": errors,
    }
    log.info("DATASET VALIDATE %s images=%d captions=%d missing=%d ok=%s",
             source_dir, len(images), len(captions), len(missing), report["ok"])
    return report


def build_manifest(source_dir, files=None):
    files = files if files is not None else list_dataset_files(source_dir)
    entries = []
    total = 0
    for rel in files:
        full = os.path.join(source_dir, rel)
        size = os.path.getsize(full)
        total += size
        entries.append({"name": rel, "size": size, "sha256": _sha256(full)})
    return {
        "version": MANIFEST_VERSION,
        "created_at": time.time(),
        "file_count": len(entries),
        "total_bytes": total,
        "files": entries,
        "captions": _read_captions(source_dir, files),
    }


def pack(source_dir, output_dir=None):
    """Archive + manifest. Returns {"archive_path", "manifest_path", "manifest"}."""
    files = list_dataset_files(source_dir)
    if not files:
        raise DatasetError(f"dataset directory is empty: {source_dir}")

    output_dir = output_dir or os.path.join(os.path.dirname(os.path.abspath(source_dir)), "transfer")
    os.makedirs(output_dir, exist_ok=True)
    archive_path = os.path.join(output_dir, ARCHIVE_NAME)
    manifest_path = os.path.join(output_dir, MANIFEST_NAME)

    manifest = build_manifest(source_dir, files)
    with tarfile.open(archive_path, "w:gz") as tar:
        for rel in files:
            tar.add(os.path.join(source_dir, rel), arcname=rel, recursive=False)
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    log.info("DATASET PACKED %s -> %s files=%d bytes=%d",
             source_dir, archive_path, manifest["file_count"], manifest["total_bytes"])
    return {"archive_path": archive_path, "manifest_path": manifest_path, "manifest": manifest}


def load_manifest(path):
    with open(path) as f:
        return json.load(f)


def verify_manifest(manifest, listing):
    """
    Compare a remote listing {name: size} against the manifest.
    Returns {"ok", "missing", "size_mismatch", "extra"}.
    """
    expected = {e["name"]: e["size"] for e in manifest.get("files", [])}
    missing = sorted(n for n in expected if n not in listing)
    mismatch = sorted(
        n for n, size in expected.items()
        if n in listing and listing[n] is not None and int(listing[n]) != int(size)
    )
    extra = sorted(n for n in listing if n not in expected)
    return {
        "ok": not missing and not mismatch,
        "missing": missing,
        "size_mismatch": mismatch,
        "extra": extra,
    }


def parse_remote_listing(output):
    """Parse `find . -type f -printf '%P %s\\n'` output into {name: size}."""
    listing = {}
    for line in (output or "").splitlines():
        line = line.strip()
        if not line:
            continue
        name, _, size = line.rpartition(" ")
        if not name:
            continue
        try:
            listing[name] = int(size)
        except ValueError:
            listing[line] = None
    return listing


def wait_for_ready_marker(source_dir, timeout=300, interval=1.0, sleep=time.sleep,
                          clock=time.monotonic):
    """
    Block until an upstream downloader drops the `.ready` marker (JSON with
    counts). Returns the marker contents.
    """
    marker = os.path.join(source_dir, READY_MARKER)
    deadline = clock() + timeout
    while True:
        if os.path.exists(marker):
            try:
                with open(marker) as f:
                    return json.load(f)
            except ValueError:
                return {}
        if clock() >= deadline:
            raise DatasetError(f"timed out after {timeout}s waiting for {marker}")
        sleep(interval)
