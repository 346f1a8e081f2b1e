#!/usr/bin/env python3
"""
Operator sweep for temp buckets left behind by abandoned or crashed jobs.

  python tools/sweep_temp_buckets.py --dry-run
  python tools/sweep_temp_buckets.py --older-than-hours 6
  python tools/sweep_temp_buckets.py --bucket nsfw-temp-ab12cd34-1700000000000 --force
"""
import argparse
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

# project root
sys.path.append(str(Path(__file__).resolve().parents[1]))
from apps.common.log import setup_logging
from apps.common.settings import load_settings
from services.ingestion.ephemeral import EphemeralStorageManager
from services.ingestion.storage import LocalObjectStore
from services.jobs.job_store import JobStore

console = Console()


def main() -> None:
    ap = argparse.ArgumentParser(description="Delete stale moderation temp buckets.")
    ap.add_argument("--config", type=str, default=None, help="Path to app.yaml (default: MOD_CONFIG_PATH or config/app.yaml).")
    ap.add_argument("--older-than-hours", type=float, default=24.0)
    ap.add_argument("--bucket", action="append", default=None, help="Only consider this bucket (repeatable).")
    ap.add_argument("--force", action="store_true", help="Ignore age and active-job checks.")
    ap.add_argument("--dry-run", action="store_true", help="Report what would be deleted without deleting.")
    ap.add_argument("--log-level", type=str, default="WARNING")
    args = ap.parse_args()

    setup_logging(args.log_level)
    settings = load_settings(args.config)
    storage = EphemeralStorageManager(LocalObjectStore(root_dir=str(settings.storage_root)))
    jobs = JobStore(root_dir=str(settings.job_root))

    def is_active(bucket: str) -> bool:
        job = jobs.find_by_bucket(bucket)
        return job is not None and not job.is_terminal

    report = storage.sweep_stale_buckets(
        older_than_hours=args.older_than_hours,
        is_active=is_active,
        force=args.force,
        only=args.bucket,
        dry_run=args.dry_run,
    )

    if not args.dry_run:
        for bucket in report.deleted:
            job = jobs.find_by_bucket(bucket)
            if job is not None and not job.cleaned_up_at:
                jobs.mark_cleaned_up(job.id)

    title = "Temp bucket sweep (dry run)" if args.dry_run else "Temp bucket sweep"
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Bucket")
    table.add_column("Action")
    table.add_column("Reason")
    for b in report.deleted:
        table.add_row(b, "[yellow]would delete[/yellow]" if args.dry_run else "[green]deleted[/green]", "")
    for b, reason in report.skipped:
        table.add_row(b, "[dim]skipped[/dim]", reason)
    console.print(table)

    for err in report.errors:
        console.print(f"[red]{err}[/red]")

    console.print(
        f"{len(report.deleted)} {'eligible' if args.dry_run else 'deleted'}, "
        f"{len(report.skipped)} skipped, {len(report.errors)} errors"
    )
    if report.errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
