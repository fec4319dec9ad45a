"""CLI for dumpstream (Typer + Rich)."""

import signal
import logging
import threading
from contextlib import contextmanager
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from dumpstream import __version__, configure_logging
from dumpstream.config import Config, build_job_spec
from dumpstream.errors import BackupError, ConfigError, EXIT_CONFIG, EXIT_FAILURE
from dumpstream.backup.executor import run_backup, run_cleanup
from dumpstream.backup.storage import create_storage
from dumpstream.backup.transfer import TransferLimiter
from dumpstream.scheduler import init_scheduler, start_scheduler, stop_scheduler
from dumpstream.utils.units import format_size


app = typer.Typer(
    name="dumpstream",
    help="Streaming database backups to object storage.",
    no_args_is_help=True,
)
console = Console()

logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"dumpstream {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    configure_logging(Config())


@contextmanager
def _cancel_on_signals(cancel_event: threading.Event):
    """Set cancel_event on SIGTERM/SIGINT while the block runs."""
    def handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling backup")
        cancel_event.set()

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield cancel_event
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


# ── backup run ──────────────────────────────────────────────────────────


@app.command()
def run() -> None:
    """Run one backup now. Exit 0 on success or skip, 1 on config error, 2 on failure."""
    config = Config()

    with _cancel_on_signals(threading.Event()) as cancel_event:
        report = run_backup(config, cancel_event=cancel_event)

    if report.error:
        console.print(f"[red]Failed:[/] {report.error}")
    elif report.object_key:
        console.print(f"[green]Stored:[/] {report.object_key} ({format_size(report.bytes_transferred)})")

    raise typer.Exit(report.exit_code)


# ── retention ───────────────────────────────────────────────────────────


@app.command()
def cleanup(
    dry_run: Annotated[
        Optional[bool],
        typer.Option("--dry-run/--no-dry-run", help="Only list what would be deleted"),
    ] = None,
) -> None:
    """Delete backups older than BACKUP_RETENTION_DAYS."""
    config = Config()

    try:
        result = run_cleanup(config, dry_run=dry_run)
    except BackupError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(e.exit_code)

    if result.dry_run:
        for key in result.candidates:
            console.print(f"  would delete {key}")
        console.print(f"[yellow]Dry run:[/] {len(result.candidates)} backup(s) past retention")
    else:
        console.print(f"Deleted {result.count_deleted} of {result.attempted} expired backup(s)")
        for key in result.failed:
            console.print(f"  [red]failed:[/] {key}")


# ── scheduling ──────────────────────────────────────────────────────────


def _stop_on_signal(signum, frame):
    """Shut the scheduler down and cancel the backup in progress, if any."""
    logger.warning(f"Received {signal.Signals(signum).name}, stopping scheduler")
    stop_scheduler()


@app.command()
def schedule() -> None:
    """Run backups on CRON_SCHEDULE until stopped."""
    config = Config()

    try:
        init_scheduler(config)
    except ConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(EXIT_CONFIG)

    previous = signal.signal(signal.SIGTERM, _stop_on_signal)
    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()
    finally:
        signal.signal(signal.SIGTERM, previous)


@app.command()
def start() -> None:
    """Container entry point: schedule when automated, otherwise back up once."""
    config = Config()

    if config.automated:
        logger.info("Starting in automated mode")
        schedule()
    else:
        logger.info("Starting in manual mode - single backup execution")
        run()


# ── diagnostics ─────────────────────────────────────────────────────────


@app.command()
def check() -> None:
    """Validate configuration and test the destination."""
    config = Config()

    try:
        spec = build_job_spec(config)
        storage = create_storage(spec.destination, config)
    except ConfigError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(EXIT_CONFIG)

    policy = spec.transfer
    table = Table(title="Transfer policy")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    table.add_row("Requests per second", f"{policy.tps_limit:g}" if policy.tps_limit else "unlimited")
    table.add_row("Chunk size", format_size(policy.chunk_size))
    table.add_row("Upload cutoff", format_size(policy.upload_cutoff))
    table.add_row("Concurrent transfers", str(policy.transfers))
    table.add_row("Checkers", str(policy.checkers))
    table.add_row("Max transfer per run", format_size(policy.max_transfer) if policy.max_transfer else "unlimited")
    table.add_row("Retries", f"{policy.retries} (sleep {policy.retry_sleep:g}s)")
    table.add_row("Requests per GiB", str((1024 ** 3 + policy.chunk_size - 1) // policy.chunk_size + 2))
    console.print(table)

    console.print(f"Database: {spec.describe()}")
    console.print(f"Destination: {storage.describe()}")

    try:
        TransferLimiter(policy).call("connection test", storage.test_connection)
    except BackupError as e:
        console.print(f"[red]Connection failed:[/] {e}")
        raise typer.Exit(EXIT_FAILURE)

    console.print("[green]Destination reachable[/]")


def main():
    app()


if __name__ == "__main__":
    main()
