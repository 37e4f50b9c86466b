"""CLI commands for scanning workspaces and applying change-sets."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_NAME, ConfigError, EngineSettings, load_settings
from .models import ChangeSetProducer, ChangeSetRejected, ProducerError, StaticChangeSetProducer, parse_change_set
from .orchestrator import Orchestrator
from .progress import NdjsonSink, ProgressEmitter
from .structured import FileSnapshot
from .tools.diff import parse_unified_diff
from .tools.patch import ContentPolicy
from .tools.snapshot import scan_workspace
from .tools.transaction import ChangeSetTransaction, TransactionReport
from .tools.workspace import LocalWorkspace

APP_HELP = "Change-set engine CLI entry point."

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for diagnostics on stderr."),
) -> None:
    """Configure logging before any command runs."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _settings(config: Optional[str], root: Optional[str]) -> EngineSettings:
    config_path = Path(config) if config else Path(DEFAULT_CONFIG_NAME)
    try:
        settings = load_settings(config_path, required=config is not None)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    if root:
        settings.workspace.root = Path(root).resolve()
    return settings


def _load_json(path: Path, label: str) -> Any:
    if not path.exists():
        raise typer.BadParameter(f"{label} not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        typer.echo(f"Failed to parse {label}: {error}")
        raise typer.Exit(code=1) from error


def _load_snapshots(path: Path) -> Dict[str, FileSnapshot]:
    data = _load_json(path, "snapshot file")
    entries = data.get("files", data) if isinstance(data, dict) else data
    if isinstance(entries, dict):
        entries = list(entries.values())
    snapshots: Dict[str, FileSnapshot] = {}
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict):
            continue
        file_path = entry.get("path") or entry.get("filePath")
        checksum = entry.get("checksum")
        if isinstance(file_path, str) and isinstance(checksum, str):
            snapshots[file_path] = FileSnapshot(path=file_path, content=str(entry.get("content", "")), checksum=checksum)
    return snapshots


def _render_report(report: TransactionReport) -> None:
    for outcome in report.outcomes:
        marker = "ok" if outcome.succeeded else "FAILED"
        line = f"[{marker}] {outcome.operation} {outcome.path}"
        if outcome.reason:
            code = f"{outcome.error_code.value}: " if outcome.error_code else ""
            line = f"{line} ({code}{outcome.reason})"
        typer.echo(line)
    typer.echo(f"Succeeded: {len(report.succeeded)} | Failed: {len(report.failed)}")


@app.command()
def scan(
    root: Optional[str] = typer.Option(None, "--root", "-r", help="Workspace root (overrides config)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the engine configuration file."),
    as_json: bool = typer.Option(False, "--json", help="Emit snapshots as JSON (usable with apply --snapshot)."),
) -> None:
    """Snapshot the workspace and list file checksums."""
    settings = _settings(config, root)
    storage = LocalWorkspace(settings.workspace.root)
    try:
        snapshots = scan_workspace(
            storage,
            include=settings.workspace.include,
            exclude=settings.workspace.exclude,
            max_file_bytes=settings.workspace.max_file_bytes,
        )
    except OSError as error:
        typer.echo(f"Failed to scan workspace: {error}")
        raise typer.Exit(code=1) from error
    if as_json:
        payload = {"files": [{"path": s.path, "checksum": s.checksum} for s in snapshots.values()]}
        typer.echo(json.dumps(payload, indent=2))
        return
    for snapshot in snapshots.values():
        typer.echo(f"{snapshot.checksum[:12]}  {snapshot.path}")
    typer.echo(f"{len(snapshots)} file(s) scanned.")


@app.command("parse-diff")
def parse_diff(
    diff_file: Path = typer.Argument(..., help="Unified diff to parse."),
) -> None:
    """Print the hunks of a unified diff as JSON."""
    if not diff_file.exists():
        raise typer.BadParameter(f"Diff file not found: {diff_file}")
    hunks = parse_unified_diff(diff_file.read_text(encoding="utf-8"))
    typer.echo(json.dumps([hunk.to_dict() for hunk in hunks], indent=2))


@app.command()
def apply(
    changeset: Path = typer.Argument(..., help="JSON change-set to apply."),
    root: Optional[str] = typer.Option(None, "--root", "-r", help="Workspace root (overrides config)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the engine configuration file."),
    snapshot: Optional[Path] = typer.Option(
        None, "--snapshot", "-s", help="Snapshot JSON from `cse scan --json` used for staleness checks."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Allow create/move to replace existing files."),
    lenient: bool = typer.Option(False, "--lenient", help="Apply hunks by position without verifying line text."),
    workers: Optional[int] = typer.Option(None, "--workers", min=1, help="Apply independent files in parallel."),
) -> None:
    """Apply a change-set to the workspace and report per-operation results."""
    settings = _settings(config, root)
    data = _load_json(changeset, "change-set")
    try:
        change_set = parse_change_set(data)
    except (ValidationError, ChangeSetRejected) as error:
        typer.echo(f"Invalid change-set: {error}")
        raise typer.Exit(code=1) from error

    snapshots = _load_snapshots(snapshot) if snapshot else {}
    transaction = ChangeSetTransaction(
        LocalWorkspace(settings.workspace.root),
        snapshots,
        policy=ContentPolicy.LENIENT if lenient else settings.apply.content_policy,
        require_snapshot=settings.apply.require_snapshot,
        allow_overwrite=overwrite or settings.apply.allow_overwrite,
        max_workers=workers or settings.apply.max_workers,
    )
    report = transaction.apply(change_set.changes, label=changeset.name)
    _render_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def run(
    prompt: str = typer.Argument(..., help="Description of the change to request."),
    root: Optional[str] = typer.Option(None, "--root", "-r", help="Workspace root (overrides config)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the engine configuration file."),
    changeset: Optional[Path] = typer.Option(
        None, "--changeset", help="Replay a stored change-set instead of calling the producer endpoint."
    ),
    stream: bool = typer.Option(False, "--stream", help="Write progress events to stdout as NDJSON."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch the change-set without applying it."),
) -> None:
    """Run a full job: scan, request a change-set and apply it."""
    settings = _settings(config, root)

    producer: Optional[ChangeSetProducer] = None
    if changeset is not None:
        if not changeset.exists():
            raise typer.BadParameter(f"Change-set not found: {changeset}")
        producer = StaticChangeSetProducer.from_file(changeset)
    elif not settings.producer.url:
        typer.echo("No producer URL configured. Set producer.url, CSE_PRODUCER_URL or pass --changeset.")
        raise typer.Exit(code=1)

    try:
        orchestrator = Orchestrator.from_settings(settings, producer=producer)
    except (ValueError, ProducerError) as error:
        typer.echo(f"Failed to configure producer: {error}")
        raise typer.Exit(code=1) from error

    emitter = ProgressEmitter(capacity=settings.progress.capacity)
    if stream:
        emitter.add_listener(NdjsonSink(_EchoWriter()))

    result = asyncio.run(orchestrator.run(prompt, emitter=emitter, apply=not dry_run))

    if stream:
        record = {"type": "result", "data": result.to_dict()}
        typer.echo(json.dumps(record, separators=(",", ":")))
    else:
        if result.summary:
            typer.echo(result.summary)
        if result.report is not None:
            _render_report(result.report)
        if result.error is not None:
            typer.echo(f"Error [{result.error.code.value}]: {result.error.user_message}")

    failed = result.error is not None or (result.report is not None and not result.report.ok)
    if failed:
        raise typer.Exit(code=1)


class _EchoWriter:
    """Byte writer that forwards NDJSON records through ``typer.echo``."""

    def write(self, data: bytes) -> None:
        typer.echo(data.decode("utf-8"), nl=False)


if __name__ == "__main__":
    app()
