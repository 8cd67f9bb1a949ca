"""Command-line interface for RecordMerge."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from ..core.errors import RecordMergeError, ValidationError
from ..core.models import MergeJob
from ..data.configuration_loader import ConfigurationResolver
from ..jobs.schedule import ScheduleManager
from ..backends.local import LocalScheduler
from ..merge.conflict_resolver import MergePreview
from ..session import MergeSession
from ..state.store import SessionStore
from ..utils.audit_trail import DateRange, MergeAuditTrail
from ..utils.config import EngineConfig


def print_job_summary(job: MergeJob) -> None:
    """Print the outcome of a job.

    Args:
        job: Job in a terminal state
    """
    print("\n" + "=" * 60)
    print(f"{job.job_type_label.upper()} {job.id}")
    print("=" * 60)
    print(f"Configuration:          {job.config_id}")
    print(f"Status:                 {job.status.value}")
    print(f"Records Processed:      {job.records_processed:,}")
    print(f"Duplicates Found:       {job.duplicates_found:,}")
    if not job.is_dry_run:
        print(f"Records Merged:         {job.records_merged:,}")
    if job.error_messages:
        print()
        print(f"Errors ({len(job.error_messages)}):")
        for message in job.error_messages:
            print(f"  - {message}")
    print("=" * 60 + "\n")


def print_preview(preview: MergePreview) -> None:
    """Print the field resolutions of one group."""
    group = preview.group
    print(f"\nGROUP {group.id} (score {group.match_score:.0f}, master {preview.master_id})")
    print("-" * 60)
    for resolution in preview.resolutions:
        value = resolution.chosen_value if resolution.chosen_value is not None else ""
        print(f"{resolution.label:<20} {str(value):<25} [{resolution.status.value}]")
        if resolution.candidate_values:
            others = ", ".join(str(v) for v in resolution.candidate_values)
            print(f"{'':<20} also: {others}")
    print("-" * 60)
    if preview.has_conflicts:
        print(preview.conflict_summary())


def _engine_config(args: argparse.Namespace) -> EngineConfig:
    # CLI runs are one-shot: deliver notifications immediately
    return EngineConfig(data_dir=Path(args.data_dir), throttle_window=0)


async def _run_job(args: argparse.Namespace, is_dry_run: bool) -> int:
    session = MergeSession.local(args.configs, args.records, config=_engine_config(args))
    try:
        await session.load_configurations()
        session.select_configuration(args.config_id)
        session.jobs.save_draft(args.config_id, batch_size=args.batch_size)
        job = await session.jobs.submit(is_dry_run)
        job = await session.jobs.watch(job.id, interval=0)
        print_job_summary(job)

        if not is_dry_run and job.records_merged:
            session.record_store.save(args.records)
            print(f"Merged dataset written to {args.records}")

        if is_dry_run and args.preview:
            fields = args.fields.split(',') if args.fields else None
            for group in session.store.get_state().groups.items:
                print_preview(await session.preview_group(group.id, fields))
        return 0
    finally:
        session.close()


def job_command(args: argparse.Namespace, is_dry_run: bool) -> int:
    """Execute the dry-run or merge command.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    for path in (args.configs, args.records):
        if not Path(path).exists():
            print(f"Error: File not found: {path}", file=sys.stderr)
            return 1
    return asyncio.run(_run_job(args, is_dry_run))


def configs_command(args: argparse.Namespace) -> int:
    """List active matching configurations."""
    configurations = ConfigurationResolver(args.configs).list_active_configurations()
    if not configurations:
        print("No active matching configurations.")
        return 0

    print(f"\n{'ID':<25} {'LABEL':<25} {'OBJECT':<10} STRATEGY")
    print("-" * 75)
    for c in configurations:
        print(f"{c.id:<25} {c.label:<25} {c.object_type:<10} {c.master_strategy.value}")
        print(f"{'':<25} match on: {', '.join(c.match_fields)} (batch {c.batch_size})")
    print()
    return 0


def _schedule_manager(config: EngineConfig) -> ScheduleManager:
    return ScheduleManager(SessionStore(config=config), LocalScheduler(state_file=config.schedules_path))


async def _schedule(args: argparse.Namespace) -> int:
    config = _engine_config(args)
    resolver = ConfigurationResolver(args.configs)
    resolver.get_configuration(args.config_id)

    manager = _schedule_manager(config)
    scheduled = await manager.schedule_daily(
        args.config_id, args.hour, args.name,
        is_dry_run=not args.merge, batch_size=args.batch_size,
    )
    print(f"Scheduled '{scheduled.job_name}' as {scheduled.id}")
    print(f"  Cron expression: {scheduled.cron_expression}")
    print(f"  Mode:            {'Dry Run (Find Only)' if scheduled.is_dry_run else 'Merge Operation'}")
    return 0


def schedule_command(args: argparse.Namespace) -> int:
    """Validate and register a daily job."""
    return asyncio.run(_schedule(args))


async def _schedules(args: argparse.Namespace) -> int:
    manager = _schedule_manager(_engine_config(args))
    if args.delete:
        await manager.delete_schedule(args.delete)
        print(f"Deleted schedule {args.delete}")
        return 0

    schedules = await manager.refresh_schedules(force=True)
    if not schedules:
        print("No scheduled jobs.")
        return 0

    print(f"\n{'ID':<12} {'NAME':<20} {'CONFIGURATION':<20} {'CRON':<16} MODE")
    print("-" * 80)
    for s in schedules:
        mode = 'Dry Run' if s.is_dry_run else 'Merge'
        print(f"{s.id:<12} {s.job_name:<20} {s.config_id:<20} {s.cron_expression:<16} {mode}")
    print()
    return 0


def schedules_command(args: argparse.Namespace) -> int:
    """List or delete scheduled jobs."""
    return asyncio.run(_schedules(args))


def logs_command(args: argparse.Namespace) -> int:
    """Show a page of merge logs."""
    db_path = Path(args.db) if args.db else _engine_config(args).audit_db_path
    if not db_path.exists():
        print(f"Error: Audit database not found: {db_path}", file=sys.stderr)
        return 1

    with MergeAuditTrail(db_path) as audit:
        page = audit.list_merge_logs(
            object_type=args.object_type,
            config_id=args.config_id,
            page_size=args.page_size,
            page_number=args.page,
            date_range=args.range,
        )

    print(f"\nMERGE LOGS ({page.total_records} total, page {page.page_number}/{max(page.total_pages, 1)})")
    print("-" * 60)
    for log in page.records:
        print(
            f"{log.execution_time:%Y-%m-%d %H:%M}  {log.object_type:<10} "
            f"{log.master_id} <- {', '.join(log.merged_ids)}  ({log.initiator})"
        )
    print("-" * 60 + "\n")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog='recordmerge',
        description='Find, preview and merge duplicate business records.',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s 0.1.0'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    parser.add_argument(
        '--data-dir',
        default='.recordmerge',
        help='Directory for the draft file and audit database (default: .recordmerge)'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        help='Available commands'
    )

    configs_parser = subparsers.add_parser(
        'configs',
        help='List active matching configurations'
    )
    configs_parser.add_argument('configs', help='Path to the configurations JSON file')

    for name, help_text in (
        ('dry-run', 'Find duplicates without merging'),
        ('merge', 'Find duplicates and merge them'),
    ):
        job_parser = subparsers.add_parser(name, help=help_text)
        job_parser.add_argument('configs', help='Path to the configurations JSON file')
        job_parser.add_argument('records', help='Path to the records JSON dataset')
        job_parser.add_argument('-c', '--config-id', required=True, help='Configuration to run')
        job_parser.add_argument('-b', '--batch-size', type=int, default=None,
                                help='Records per batch (default: configuration value)')
        if name == 'dry-run':
            job_parser.add_argument('-p', '--preview', action='store_true',
                                    help='Show the merge preview of every group found')
            job_parser.add_argument('-f', '--fields', default=None,
                                    help='Comma-separated fields to preview')

    schedule_parser = subparsers.add_parser(
        'schedule',
        help='Schedule a daily job'
    )
    schedule_parser.add_argument('configs', help='Path to the configurations JSON file')
    schedule_parser.add_argument('-c', '--config-id', required=True, help='Configuration to run')
    schedule_parser.add_argument('--hour', type=int, required=True, help='Hour of day (0-23)')
    schedule_parser.add_argument('-n', '--name', required=True, help='Job name')
    schedule_parser.add_argument('--merge', action='store_true',
                                 help='Merge instead of dry run')
    schedule_parser.add_argument('-b', '--batch-size', type=int, default=200,
                                 help='Records per batch (default: 200)')

    schedules_parser = subparsers.add_parser(
        'schedules',
        help='List scheduled jobs'
    )
    schedules_parser.add_argument('--delete', default=None, metavar='ID',
                                  help='Delete the scheduled job with this id')

    logs_parser = subparsers.add_parser(
        'logs',
        help='Show merge audit logs'
    )
    logs_parser.add_argument('--db', default=None, help='Audit database (default: in data dir)')
    logs_parser.add_argument('--object-type', default=None, help='Filter by object type')
    logs_parser.add_argument('--config-id', default=None, help='Filter by configuration')
    logs_parser.add_argument('--range', default='ALL', choices=[r.value for r in DateRange],
                             help='Date range (default: ALL)')
    logs_parser.add_argument('--page', type=int, default=1, help='Page number (default: 1)')
    logs_parser.add_argument('--page-size', type=int, default=10, help='Rows per page (default: 10)')

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        'configs': configs_command,
        'dry-run': lambda a: job_command(a, is_dry_run=True),
        'merge': lambda a: job_command(a, is_dry_run=False),
        'schedule': schedule_command,
        'schedules': schedules_command,
        'logs': logs_command,
    }

    try:
        return commands[args.command](args)
    except ValidationError as e:
        fields = f" ({', '.join(e.missing_fields)})" if e.missing_fields else ""
        print(f"Error: {e.message}{fields}", file=sys.stderr)
        return 1
    except RecordMergeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
