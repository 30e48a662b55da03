"""
Command-line interface for appshift.
"""

import json
import logging
import os
import sys
import time
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from appshift import __version__
from appshift.advisory import KeywordAdvisor, get_advice
from appshift.config import (
    DEFAULT_SETTINGS_PATH,
    ExecutionMode,
    load_settings,
    save_settings,
    setting_names,
    update_setting,
)
from appshift.discovery import compute_size_label, describe_folder, scan_folders
from appshift.engine import RelocationEngine
from appshift.exceptions import AppshiftError, SafetyCheckError
from appshift.models import MoveStep, RelocationOptions, Severity
from appshift.progress import CopyProgressDisplay
from appshift.reparse import inspect_path

console = Console()
logger = logging.getLogger("appshift")

_LOG_SETUP = False
_LOG_PATH = None

SEVERITY_STYLE = {
    Severity.INFO: ("ℹ️ ", None),
    Severity.SUCCESS: ("✅", "green"),
    Severity.WARNING: ("⚠️ ", "yellow"),
    Severity.ERROR: ("❌", "red"),
    Severity.COMMAND: ("$ ", "cyan"),
}

STEP_LABELS = {
    MoveStep.MKDIR: "Safety checks / create target directory",
    MoveStep.BULK_COPY: "Moving files",
    MoveStep.REPLACE_WITH_JUNCTION: "Creating junction",
    MoveStep.REMOVE_JUNCTION: "Verifying and removing junction",
    MoveStep.BULK_COPY_BACK: "Moving files back",
    MoveStep.DONE: "Done",
    MoveStep.FAILED: "Failed",
}


def _setup_master_log() -> None:
    """Append everything logged under 'appshift' to the master log file."""
    global _LOG_SETUP, _LOG_PATH
    if _LOG_SETUP:
        return
    _LOG_SETUP = True
    if os.environ.get("APPSHIFT_LOG_DISABLED") == "1":
        return
    log_file = os.environ.get("APPSHIFT_LOG_FILE")
    if log_file:
        log_path = Path(os.path.expanduser(log_file))
    else:
        log_dir = os.environ.get("APPSHIFT_LOG_DIR")
        base_dir = Path(log_dir) if log_dir else (Path.home() / ".logs" / "appshift")
        log_path = base_dir / "appshift.log"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as e:
        click.echo(f"⚠️  Could not open log file {log_path}: {e}", err=True)
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    _LOG_PATH = log_path


def _emit_run_header() -> None:
    timestamp = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    console.print(f"🧾 appshift v{__version__} @ {timestamp}", highlight=False)
    if _LOG_PATH:
        console.print(f"🧾 log: {_LOG_PATH}", highlight=False)


def print_log(message: str, severity: Severity) -> None:
    """Log callback: console line plus master log record."""
    icon, style = SEVERITY_STYLE.get(severity, ("", None))
    console.print(f"{icon} {message}", style=style, markup=False, highlight=False)
    level = logging.ERROR if severity is Severity.ERROR else (
        logging.WARNING if severity is Severity.WARNING else logging.INFO)
    logger.log(level, "[%s] %s", severity.value, message)


def print_step(step: MoveStep) -> None:
    console.print(f"▶ {STEP_LABELS.get(step, step.value)}", style="bold", highlight=False)


def _build_engine(settings, mode: str = None) -> RelocationEngine:
    execution_mode = ExecutionMode(mode) if mode else settings.mode
    return RelocationEngine(
        mode=execution_mode,
        log=print_log,
        poll_interval=settings.poll_interval,
        size_scan_budget=settings.size_scan_budget,
    )


@click.group()
@click.version_option(__version__)
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False),
              default=str(DEFAULT_SETTINGS_PATH), show_default=True, help="Settings file.")
@click.pass_context
def cli(ctx, settings_path):
    """appshift - move application data to another drive behind a junction."""
    _setup_master_log()
    ctx.ensure_object(dict)
    ctx.obj["settings_path"] = Path(settings_path)
    try:
        ctx.obj["settings"] = load_settings(Path(settings_path))
    except AppshiftError as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()


@cli.command("scan")
@click.argument("root", required=False, type=click.Path(file_okay=False))
@click.option("--sizes", is_flag=True, help="Compute folder sizes (slow on large trees).")
@click.option("--limit", type=int, default=None, help="Maximum folders to list.")
@click.pass_context
def scan_cmd(ctx, root, sizes, limit):
    """List candidate folders under ROOT (default: roaming AppData)."""
    settings = ctx.obj["settings"]
    folders = scan_folders(Path(root) if root else None, limit=limit or settings.scan_limit)
    if sizes:
        for folder in folders:
            compute_size_label(folder, time_budget=settings.size_scan_budget)

    table = Table(title=f"{len(folders)} candidate folder(s)")
    table.add_column("Name")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    for folder in folders:
        status = f"→ {folder.link_target}" if folder.is_junction else "ready"
        table.add_row(folder.name, str(folder.source_path), folder.size_label, status)
    console.print(table)


@cli.command("inspect")
@click.argument("path", type=click.Path())
@click.option("--json", "as_json", is_flag=True, help="Print as JSON.")
def inspect_cmd(path, as_json):
    """Show whether PATH is a junction and where it points."""
    info = inspect_path(path)
    if as_json:
        click.echo(json.dumps({"path": path, "is_junction": info.is_junction,
                               "target": str(info.target) if info.target else None}))
        return
    if info.is_junction:
        click.echo(f"🔗 {path} -> {info.target}")
    else:
        click.echo(f"📁 {path} is not a junction")


@cli.command("advise")
@click.argument("path", type=click.Path())
def advise_cmd(path):
    """Show a risk assessment for moving PATH."""
    folder = describe_folder(path)
    advice = get_advice(KeywordAdvisor(), folder.name, folder.source_path)
    severity = Severity.SUCCESS if advice.is_safe else Severity.WARNING
    print_log(f"Risk level: {advice.risk_level.value} (score {advice.safety_score})", severity)
    print_log(f"Reason: {advice.reason}", Severity.INFO)
    print_log(f"Recommendation: {advice.recommended_action}", Severity.INFO)


@cli.command("move")
@click.argument("path", type=click.Path())
@click.option("--target", "-t", type=click.Path(file_okay=False), default=None,
              help="Target root; data lands in TARGET/<folder name>.")
@click.option("--verify/--no-verify", default=None, help="Verify file count and bytes after copy.")
@click.option("--purge/--no-purge", default=None, help="Pass /PURGE to the copy tool.")
@click.option("--compress/--no-compress", default=None, help="NTFS-compress the target folder.")
@click.option("--mode", type=click.Choice([m.value for m in ExecutionMode]), default=None,
              help="Execution mode (default from settings).")
@click.option("--dry-run", is_flag=True, help="Show the steps without running them.")
@click.pass_context
def move_cmd(ctx, path, target, verify, purge, compress, mode, dry_run):
    """Move PATH to another drive and leave a junction behind."""
    settings = ctx.obj["settings"]
    target = target or settings.target_root
    if not target:
        click.echo("❌ No target root: pass --target or set target_root", err=True)
        raise click.Abort()

    options = RelocationOptions(
        verify_after_copy=settings.verify_copy if verify is None else verify,
        purge_source=settings.purge_source if purge is None else purge,
        enable_compression=settings.compression if compress is None else compress,
    )
    engine = _build_engine(settings, mode)
    folder = describe_folder(path, engine.inspector)
    _emit_run_header()

    if dry_run:
        script = engine.plan_relocation(folder, Path(target), options)
        console.print("🔍 DRY-RUN MODE", highlight=False)
        for i, descriptor in enumerate(script.steps, 1):
            console.print(f"  {i}. [{descriptor.step.value}] {descriptor.describe()}",
                          markup=False, highlight=False)
        return

    with CopyProgressDisplay() as display:
        result = engine.relocate(folder, Path(target), options,
                                 on_step=print_step, on_progress=display.update)
    if not result.success:
        click.echo(f"❌ Move failed: {result.failure.value} (reached {result.furthest_step.value})",
                   err=True)
        sys.exit(1)
    click.echo(f"✅ {folder.source_path} -> {folder.link_target}")


@cli.command("restore")
@click.argument("path", type=click.Path())
@click.option("--mode", type=click.Choice([m.value for m in ExecutionMode]), default=None,
              help="Execution mode (default from settings).")
@click.option("--dry-run", is_flag=True, help="Show the steps without running them.")
@click.pass_context
def restore_cmd(ctx, path, mode, dry_run):
    """Remove the junction at PATH and move the data back."""
    settings = ctx.obj["settings"]
    engine = _build_engine(settings, mode)
    folder = describe_folder(path, engine.inspector)
    _emit_run_header()

    if dry_run:
        try:
            script = engine.plan_restore(folder)
        except SafetyCheckError as e:
            click.echo(f"❌ {e.kind.value}: {e}", err=True)
            sys.exit(1)
        console.print("🔍 DRY-RUN MODE", highlight=False)
        for i, descriptor in enumerate(script.steps, 1):
            console.print(f"  {i}. [{descriptor.step.value}] {descriptor.describe()}",
                          markup=False, highlight=False)
        return

    with CopyProgressDisplay(prefix="Restoring") as display:
        result = engine.restore(folder, on_step=print_step, on_progress=display.update)
    if not result.success:
        click.echo(f"❌ Restore failed: {result.failure.value} (reached {result.furthest_step.value})",
                   err=True)
        sys.exit(1)
    click.echo(f"✅ {folder.source_path} restored")


@cli.group("config")
def config_group():
    """Show or change settings."""


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    click.echo(json.dumps(ctx.obj["settings"].to_dict(), indent=2))


@config_group.command("set")
@click.argument("name", type=click.Choice(setting_names()))
@click.argument("value")
@click.pass_context
def config_set(ctx, name, value):
    """Set NAME to VALUE in the settings file."""
    settings = ctx.obj["settings"]
    try:
        update_setting(settings, name, value)
    except AppshiftError as e:
        click.echo(f"❌ {e}", err=True)
        raise click.Abort()
    path = save_settings(settings, ctx.obj["settings_path"])
    click.echo(f"✅ {name} = {settings.to_dict()[name]} ({path})")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
