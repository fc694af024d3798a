#!/usr/bin/env python3
"""Check a mirrored source tree against the manifest written by vercel_mirror."""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
from pathlib import Path
from typing import Any, Iterable, Sequence


def load_manifest(path: Path) -> dict[str, tuple[int, str]]:
    """Return {relative path: (size, sha256)} from a manifest file."""
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    entries: dict[str, tuple[int, str]] = {}
    files = data.get("files") if isinstance(data, dict) else None
    if not isinstance(files, list):
        raise ValueError(f"manifest has no file list: {path}")

    for item in files:
        if not isinstance(item, dict) or not isinstance(item.get("path"), str):
            continue
        try:
            size = int(item.get("size"))
        except (TypeError, ValueError):
            continue
        norm = item["path"].replace("\\", "/").lstrip("/")
        entries[norm] = (size, str(item.get("sha256") or ""))

    return entries


def iter_files(root: Path, exclude: Path) -> Iterable[Path]:
    for path in root.rglob("*"):
        if path.is_file() and path.resolve() != exclude.resolve():
            yield path


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def resolve_root(manifest_path: Path, root: Path | None) -> Path:
    if root is not None:
        return root
    with manifest_path.open("r", encoding="utf-8") as f:
        data: Any = json.load(f)
    destination = data.get("destination") if isinstance(data, dict) else None
    if not isinstance(destination, str) or not destination:
        raise ValueError("manifest does not name a destination; pass --root")
    return Path(destination)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify a mirrored deployment against its manifest")
    parser.add_argument("--manifest", type=Path, default=Path("manifest.json"), help="Manifest written by vercel-mirror")
    parser.add_argument("--root", type=Path, default=None, help="Mirror directory (defaults to the manifest destination)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    ng_count = 0
    ok_count = 0

    if not args.manifest.exists():
        print(f"[NG] manifest not found: {args.manifest}")
        print("OK: 0")
        print("NG: 1")
        return 1

    try:
        manifest_entries = load_manifest(args.manifest)
        root = resolve_root(args.manifest, args.root)
    except (OSError, ValueError) as e:
        print(f"[NG] failed to load manifest: {e}")
        print("OK: 0")
        print("NG: 1")
        return 1

    if not root.is_dir():
        print(f"[NG] mirror directory not found: {root}")
        print("OK: 0")
        print("NG: 1")
        return 1

    actual_entries: dict[str, Path] = {}
    for file_path in iter_files(root, args.manifest):
        actual_entries[file_path.relative_to(root).as_posix()] = file_path

    for rel, (expected_size, expected_sha) in sorted(manifest_entries.items()):
        file_path = actual_entries.get(rel)
        if file_path is None:
            ng_count += 1
            print(f"[NG] missing file: {rel}")
            continue

        actual_size = file_path.stat().st_size
        if actual_size != expected_size:
            ng_count += 1
            print(f"[NG] size mismatch: {rel} (expected={expected_size}, actual={actual_size})")
        elif expected_sha and sha256_of(file_path) != expected_sha:
            ng_count += 1
            print(f"[NG] checksum mismatch: {rel}")
        else:
            ok_count += 1

    extra_files = sorted(set(actual_entries) - set(manifest_entries))
    for rel in extra_files:
        ng_count += 1
        print(f"[NG] extra file not in manifest: {rel}")

    print(f"OK: {ok_count}")
    print(f"NG: {ng_count}")

    return 1 if ng_count > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
