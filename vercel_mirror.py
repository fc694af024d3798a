#!/usr/bin/env python3
"""Mirror the source tree of a Vercel deployment into a local directory.

Phases:
A) Resolve the user-supplied URL, domain or deployment ID to a deployment ID.
B) Load the deployment file tree and keep only the "src" subtree.
C) Flatten the subtree into an ordered list of directory/file entries.
D) Create directories and download all files concurrently, skipping paths
   that already exist locally.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import binascii
import hashlib
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import quote, urlsplit

import aiohttp
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.theme import Theme

API_BASE = "https://api.vercel.com"
DEPLOYMENT_ID_PREFIX = "dpl_"
SOURCE_ROOT = "src"
FILE = "file"
DIRECTORY = "directory"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

USAGE_EXAMPLES = (
    "e.g: vercel-mirror example-5ik51k4n7.vercel.app\n"
    "e.g: vercel-mirror dpl_6CR1uw9hBdpWgrMvPkncsTGRC18A"
)

console = Console(
    theme=Theme(
        {
            "info": "cyan",
            "success": "bold green",
            "warning": "yellow",
            "error": "bold red",
        }
    )
)


class MirrorError(Exception):
    """Base error for remote and mirroring failures."""


class ConfigError(MirrorError):
    """Missing or invalid configuration."""


class ApiError(MirrorError):
    """Non-success response from the Vercel API."""

    def __init__(self, status: int, path: str, message: str = "") -> None:
        self.status = status
        self.path = path
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"HTTP {status} for {path}{detail}")


class UnauthorizedError(ApiError):
    """The token was rejected or lacks access to the deployment."""


class NotFoundError(ApiError):
    """The deployment or file does not exist."""


class ResponseFormatError(MirrorError):
    """The API answered with a payload we cannot interpret."""


class SourceTreeNotFoundError(MirrorError):
    """The deployment file tree has no top-level "src" entry."""


class UnsafePathError(MirrorError):
    """A remote entry name would resolve outside the destination."""


@dataclass(slots=True)
class Config:
    """Runtime configuration, read once at startup."""

    token: str = ""
    team: str = ""
    api_base: str = API_BASE
    concurrency: int = 12
    timeout_sec: int = 60


@dataclass(frozen=True, slots=True)
class TreeNode:
    """One entry of the remote file tree as returned by the API."""

    name: str
    type: str
    uid: str | None = None
    children: tuple[TreeNode, ...] = ()

    @classmethod
    def from_json(cls, data: Any) -> TreeNode:
        """Build a node (and its descendants) from decoded API JSON."""
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ResponseFormatError(f"Invalid tree node: {data!r}")
        children = data.get("children") or []
        if not isinstance(children, list):
            raise ResponseFormatError(f"Invalid children for {data['name']}")
        uid = data.get("uid")
        return cls(
            name=data["name"],
            type=str(data.get("type", "")),
            uid=uid if isinstance(uid, str) and uid else None,
            children=tuple(cls.from_json(child) for child in children),
        )


@dataclass(frozen=True, slots=True)
class FlatEntry:
    """A tree node with its full '/'-joined path from the source root."""

    path: str
    type: str
    uid: str | None = None


@dataclass(slots=True)
class TaskResult:
    path: str
    ok: bool
    size: int = 0
    error: str | None = None


@dataclass(slots=True)
class MirrorReport:
    """Outcome of one mirror run."""

    destination: str
    written: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    failed: list[TaskResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def record(self, result: TaskResult) -> None:
        if result.ok:
            self.written.append(result.path)
        else:
            self.failed.append(result)


def is_deployment_id(value: str) -> bool:
    return value.startswith(DEPLOYMENT_ID_PREFIX)


def resolve_identifier(value: str) -> str:
    """Return a deployment ID or a bare domain for a user-supplied value.

    Deployment IDs and bare domains are returned unchanged; http(s) URLs are
    reduced to their hostname. A URL that cannot be parsed falls back to the
    original value.
    """
    if is_deployment_id(value):
        return value
    if not value.startswith(("http://", "https://")):
        return value
    try:
        hostname = urlsplit(value).hostname
    except ValueError as exc:
        logging.warning("Invalid URL format: %s (%s)", value, exc)
        return value
    if not hostname:
        logging.warning("Invalid URL format: %s (no hostname)", value)
        return value
    return hostname


def error_for_status(status: int, path: str, body: bytes) -> ApiError:
    """Map an HTTP error response to the matching ApiError subclass."""
    message = ""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or error.get("code") or "")
        elif isinstance(error, str):
            message = error
    if status in (401, 403):
        return UnauthorizedError(status, path, message)
    if status == 404:
        return NotFoundError(status, path, message)
    return ApiError(status, path, message)


class VercelClient:
    """Authenticated access to the deployment endpoints of the Vercel API.

    Every request is issued exactly once; failures surface to the caller.
    """

    def __init__(self, session: aiohttp.ClientSession, config: Config) -> None:
        self.session = session
        self.config = config

    def url_for(self, path: str) -> str:
        return f"{self.config.api_base.rstrip('/')}{path}"

    def params(self) -> dict[str, str] | None:
        if self.config.team:
            return {"teamId": self.config.team}
        return None

    async def get_bytes(self, path: str) -> bytes:
        """GET an API path and return the raw body."""
        headers = {"Authorization": f"Bearer {self.config.token}"}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        logging.debug("GET %s", path)
        async with self.session.get(
            self.url_for(path),
            params=self.params(),
            headers=headers,
            timeout=timeout,
        ) as resp:
            body = await resp.read()
            if resp.status >= 400:
                raise error_for_status(resp.status, path, body)
            return body

    async def get_json(self, path: str) -> Any:
        body = await self.get_bytes(path)
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ResponseFormatError(f"Invalid JSON at {path}: {exc}") from exc

    async def lookup_deployment_id(self, domain: str) -> str:
        path = f"/v13/deployments/{quote(domain, safe='')}"
        deployment = await self.get_json(path)
        deployment_id = deployment.get("id") if isinstance(deployment, dict) else None
        if not isinstance(deployment_id, str) or not deployment_id:
            raise ResponseFormatError(f"No deployment id in response for {domain}")
        return deployment_id

    async def fetch_source_tree(self, deployment_id: str) -> TreeNode:
        """Return the "src" subtree of a deployment's file listing."""
        path = f"/v6/deployments/{quote(deployment_id, safe='')}/files"
        files = await self.get_json(path)
        if not isinstance(files, list):
            raise ResponseFormatError(f"Expected a list of files at {path}")
        for item in files:
            if isinstance(item, dict) and item.get("name") == SOURCE_ROOT:
                return TreeNode.from_json(item)
        raise SourceTreeNotFoundError(f'No "{SOURCE_ROOT}" directory in deployment {deployment_id}')

    async def fetch_file_bytes(self, deployment_id: str, uid: str) -> bytes:
        path = f"/v7/deployments/{quote(deployment_id, safe='')}/files/{quote(uid, safe='')}"
        envelope = await self.get_json(path)
        encoded = envelope.get("data") if isinstance(envelope, dict) else None
        if not isinstance(encoded, str):
            raise ResponseFormatError(f"No data field in response for {path}")
        try:
            return base64.b64decode(encoded)
        except (binascii.Error, ValueError) as exc:
            raise ResponseFormatError(f"Invalid base64 payload at {path}: {exc}") from exc


def flatten_tree(node: TreeNode) -> list[FlatEntry]:
    """Flatten a tree into entries with full paths.

    The node's immediate children come first, in order, followed by the
    flattened descendants of each child in the same order. Directory
    creation relies on this: a parent always precedes its children.
    """
    named = [replace(child, name=f"{node.name}/{child.name}") for child in node.children]
    entries = [FlatEntry(path=child.name, type=child.type, uid=child.uid) for child in named]
    for child in named:
        entries.extend(flatten_tree(child))
    return entries


def local_path_for(entry_path: str, destination: str | Path) -> Path:
    """Map "src/a/b.txt" to "<destination>/a/b.txt"."""
    parts = entry_path.split("/")
    rest = parts[1:]
    if not rest or any(part in ("", ".", "..") or "\x00" in part for part in rest):
        raise UnsafePathError(f"Refusing to write unsafe path: {entry_path}")
    return Path(destination, *rest)


async def mirror_entries(
    client: VercelClient,
    deployment_id: str,
    entries: Sequence[FlatEntry],
    destination: str | Path,
    concurrency: int = 12,
    on_result: Callable[[TaskResult], None] | None = None,
) -> MirrorReport:
    """Create directories and download files for the flattened entries.

    Existing paths are skipped. Directories are created while scheduling,
    files are downloaded concurrently. A failing download never cancels the
    others; every outcome ends up in the returned report.
    """
    root = Path(destination)
    root.mkdir(parents=True, exist_ok=True)
    report = MirrorReport(destination=str(root))
    sem = asyncio.Semaphore(max(1, concurrency))

    async def worker(entry: FlatEntry, out_path: Path) -> TaskResult:
        try:
            async with sem:
                data = await client.fetch_file_bytes(deployment_id, entry.uid or "")
            out_path.write_bytes(data)
        except (MirrorError, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            logging.error("Failed to download %s: %s", out_path, exc)
            result = TaskResult(path=str(out_path), ok=False, error=str(exc) or type(exc).__name__)
        else:
            logging.debug("Downloaded %s (%s bytes)", out_path, len(data))
            result = TaskResult(path=str(out_path), ok=True, size=len(data))
        if on_result is not None:
            on_result(result)
        return result

    tasks: list[asyncio.Task[TaskResult]] = []
    task_paths: list[Path] = []
    for entry in entries:
        try:
            out_path = local_path_for(entry.path, root)
        except UnsafePathError as exc:
            logging.error("%s", exc)
            report.failed.append(TaskResult(path=entry.path, ok=False, error=str(exc)))
            continue

        if out_path.exists():
            report.skipped.append(str(out_path))
            continue

        if entry.type == DIRECTORY:
            try:
                out_path.mkdir()
            except (OSError, ValueError) as exc:
                logging.error("Failed to create directory %s: %s", out_path, exc)
                report.failed.append(TaskResult(path=str(out_path), ok=False, error=str(exc)))
            else:
                report.directories.append(str(out_path))
        elif entry.type == FILE:
            if not entry.uid:
                report.failed.append(TaskResult(path=str(out_path), ok=False, error="missing file uid"))
                continue
            tasks.append(asyncio.create_task(worker(entry, out_path)))
            task_paths.append(out_path)
        else:
            logging.debug("Ignoring %s entry %s", entry.type or "untyped", entry.path)
            report.ignored.append(entry.path)

    # one task's unexpected error must not drop the other results
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    for out_path, outcome in zip(task_paths, outcomes):
        if isinstance(outcome, TaskResult):
            report.record(outcome)
        elif isinstance(outcome, Exception):
            logging.error("Failed to download %s: %r", out_path, outcome)
            report.record(TaskResult(path=str(out_path), ok=False, error=repr(outcome)))
        else:
            raise outcome

    logging.info(
        "Mirror complete: written=%s directories=%s skipped=%s ignored=%s failed=%s",
        len(report.written),
        len(report.directories),
        len(report.skipped),
        len(report.ignored),
        len(report.failed),
    )
    return report


def write_manifest(report: MirrorReport, deployment_id: str, manifest_path: Path) -> int:
    """Write a JSON manifest of every file under the destination. Return entry count."""
    root = Path(report.destination)
    manifest_entries: list[dict[str, Any]] = []
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        if path.resolve() == manifest_path.resolve():
            continue
        data = path.read_bytes()
        manifest_entries.append(
            {
                "path": path.relative_to(root).as_posix(),
                "size": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }
        )

    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    manifest_path.write_text(
        json.dumps(
            {
                "deployment_id": deployment_id,
                "destination": str(root),
                "generated_at": int(time.time()),
                "files": manifest_entries,
                "failed": [result.path for result in report.failed],
            },
            ensure_ascii=False,
            indent=2,
        ),
        encoding="utf-8",
    )
    logging.info("Wrote %s manifest entries to %s", len(manifest_entries), manifest_path)
    return len(manifest_entries)


def load_config(
    config_path: Path | None,
    environ: Mapping[str, str],
    team: str | None = None,
    concurrency: int | None = None,
) -> Config:
    """Build the configuration from an optional YAML file, the environment and CLI overrides."""
    data: Any = {}
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"config file not found: {config_path}")
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must be a mapping")

    token = environ.get("VERCEL_TOKEN", "")
    if not token:
        raise ConfigError("Missing VERCEL_TOKEN in environment or .env file.")

    try:
        config = Config(
            token=token,
            team=str(team or environ.get("VERCEL_TEAM") or data.get("team") or ""),
            api_base=str(data.get("api_base", API_BASE)).rstrip("/"),
            concurrency=int(concurrency if concurrency is not None else data.get("concurrency", 12)),
            timeout_sec=int(data.get("timeout_sec", 60)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid configuration value: {exc}") from exc
    if config.concurrency < 1:
        raise ConfigError("concurrency must be at least 1")
    return config


def print_error(message: str) -> None:
    console.print(message, style="error", markup=False, highlight=False)


async def run(
    config: Config,
    deployment: str,
    destination: str,
    manifest_path: Path | None = None,
    strict: bool = False,
) -> int:
    """Execute all phases. Return process exit code."""
    target = resolve_identifier(deployment)
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))

    async with aiohttp.ClientSession(connector=connector) as session:
        client = VercelClient(session, config)

        if is_deployment_id(target):
            deployment_id = target
        else:
            with console.status("Getting deployment id", spinner="dots"):
                deployment_id = await client.lookup_deployment_id(target)
        logging.info("Deployment id: %s", deployment_id)

        with console.status("Loading source files tree", spinner="dots"):
            tree = await client.fetch_source_tree(deployment_id)
        entries = flatten_tree(tree)
        file_count = sum(1 for entry in entries if entry.type == FILE)
        logging.info("Found %s entries (%s files)", len(entries), file_count)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("Downloading", total=file_count)

            def advance(result: TaskResult) -> None:
                progress.update(task_id, advance=1, description=f"Downloading {escape(result.path)}")

            report = await mirror_entries(
                client,
                deployment_id,
                entries,
                destination,
                concurrency=config.concurrency,
                on_result=advance,
            )

    if manifest_path is not None:
        write_manifest(report, deployment_id, manifest_path)

    console.print(
        f"Mirrored into {report.destination}: {len(report.written)} written, "
        f"{len(report.skipped)} skipped, {len(report.ignored)} ignored, {len(report.failed)} failed",
        style="success" if report.ok else "warning",
        markup=False,
    )
    for result in report.failed:
        print_error(f"Failed: {result.path} ({result.error})")

    if strict and not report.ok:
        return EXIT_FAILURE
    return EXIT_OK


async def run_reporting_errors(
    config: Config,
    deployment: str,
    destination: str,
    manifest_path: Path | None = None,
    strict: bool = False,
) -> int:
    """Like run(), but print fatal remote errors and return EXIT_FAILURE."""
    try:
        return await run(config, deployment, destination, manifest_path, strict)
    except (MirrorError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
        print_error(f"{type(exc).__name__}: {exc}")
        return EXIT_FAILURE


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(
        prog="vercel-mirror",
        description="Download the source files of a Vercel deployment",
        epilog=USAGE_EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("deployment", nargs="?", help="Deployment URL, domain or id (dpl_...)")
    parser.add_argument("destination", nargs="?", help="Output directory (defaults to the deployment argument)")
    parser.add_argument("--config", type=Path, default=None, help="Path to an optional config YAML file")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="dotenv file to load (default: .env)")
    parser.add_argument("--team", default=None, help="Team id (overrides VERCEL_TEAM)")
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum parallel downloads")
    parser.add_argument("--manifest", type=Path, default=None, help="Write a JSON manifest of the mirror to this path")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero if any file fails to download")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every request and download")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if args.env_file.exists():
        load_dotenv(args.env_file, override=False)

    try:
        config = load_config(args.config, os.environ, team=args.team, concurrency=args.concurrency)
    except ConfigError as exc:
        print_error(f"{exc}\n\nLook at README for more information")
        return EXIT_CONFIG

    if not args.deployment:
        print_error("Missing deployment URL or id")
        console.print(USAGE_EXAMPLES, markup=False, highlight=False)
        return EXIT_CONFIG

    destination = args.destination or args.deployment
    return asyncio.run(run_reporting_errors(config, args.deployment, destination, args.manifest, args.strict))


if __name__ == "__main__":
    sys.exit(main())
