#!/usr/bin/env python3
"""
CLI Interface for the PropTx Listing Sync Pipeline

Provides commands for:
- Syncing one building, one municipality or every building
- Running the nightly incremental sync
- Discovering the geographic hierarchy from the feed
- Viewing sync history and summaries
- Sealing stale runs left by crashed processes

Usage:
    python listing_sync_cli.py sync --building <id> --mode full
    python listing_sync_cli.py sync --municipality <id> --type freehold
    python listing_sync_cli.py sync --all --mode incremental
    python listing_sync_cli.py nightly
    python listing_sync_cli.py geography
    python listing_sync_cli.py history --limit 20
    python listing_sync_cli.py summary --days 14
    python listing_sync_cli.py stale
    python listing_sync_cli.py test-connection
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime

from dotenv import load_dotenv
from supabase import create_client, Client, ClientOptions

from config.sync_config import SyncConfig, load_config
from services.geography_sync_service import GeographySyncService
from services.listing_store import ListingStore
from services.nightly_sync_service import NightlySyncService
from services.provider_client import ProviderClient
from services.sync_orchestrator import ListingSyncOrchestrator, SyncRequest, SyncReport
from services.sync_run_recorder import SyncRunRecorder

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(config: SyncConfig):
    """Stream and file logging at the configured level."""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file)
        ]
    )


def get_supabase_client(config: SyncConfig) -> Client:
    """Create and return a Supabase client."""
    url = os.getenv('SUPABASE_URL')
    # Service role key is needed for writes; anon key works for read-only commands
    key = os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_KEY')

    if not url or not key:
        print("Error: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY environment variables required")
        sys.exit(1)

    return create_client(url, key, options=ClientOptions(postgrest_client_timeout=config.store_timeout))


def create_services(config: SyncConfig):
    """
    Create all required service instances.

    Args:
        config: Loaded configuration
    """
    supabase = get_supabase_client(config)

    try:
        provider = ProviderClient(config.provider, pool_size=config.enrichment.batch_size * 3)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    orchestrator = ListingSyncOrchestrator(supabase, config, provider)

    return {
        'config': config,
        'supabase': supabase,
        'provider': provider,
        'orchestrator': orchestrator,
        'nightly': NightlySyncService(orchestrator),
        'geography': GeographySyncService(orchestrator.store, orchestrator.fetcher),
    }


def create_recorder(config: SyncConfig) -> SyncRunRecorder:
    """Run history access for store-only commands; no provider credentials needed"""
    return SyncRunRecorder(ListingStore(get_supabase_client(config), config), config)


def install_cancel_handler(orchestrator: ListingSyncOrchestrator):
    """First Ctrl+C stops new work; committed work stands."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        loop.add_signal_handler(signal.SIGTERM, orchestrator.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")


def print_report(report: SyncReport):
    status_icon = {'completed': '✅', 'partial': '⚠️', 'failed': '❌'}.get(report.status, '❓')

    print("\n" + "-" * 60)
    print("RESULTS:")
    print("-" * 60)
    print(f"Scope: {report.scope_type} {report.scope_name or report.scope_id or ''}")
    print(f"Mode: {report.mode}")
    print(f"Status: {status_icon} {report.status}")
    print(f"Duration: {report.duration_seconds:.1f} seconds")
    print(f"Found: {report.found}")
    print(f"Added: {report.added}")
    print(f"Updated: {report.updated}")
    print(f"Removed: {report.removed}")
    print(f"Unchanged: {report.unchanged}")
    print(f"Skipped: {report.skipped}")
    print(f"Media / Rooms / Open Houses: {report.media_saved} / {report.rooms_saved} / {report.open_houses_saved}")

    if report.children:
        failed = [c for c in report.children if c.status == 'failed']
        print(f"Buildings: {len(report.children)} ({len(failed)} failed)")

    if report.errors:
        print("\nErrors:")
        for error in report.errors:
            print(f"  - {error}")

    print()


async def cmd_sync(args):
    """Run a building, municipality or fleet sync."""
    config = load_config(args.config)
    services = create_services(config)
    orchestrator = services['orchestrator']

    request = SyncRequest(
        scope=args.building or 'all',
        property_type=args.type,
        mode=args.mode,
        triggered_by=args.triggered_by,
        municipality_id=args.municipality,
    )

    print(f"\n{'=' * 60}")
    print(f"LISTING SYNC ({request.mode.upper()})")
    print(f"{'=' * 60}")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    install_cancel_handler(orchestrator)
    try:
        report = await orchestrator.run(request)
        print_report(report)
        if report.status == 'failed':
            sys.exit(1)
    except ValueError as e:
        print(f"\nError: {e}")
        sys.exit(2)
    except Exception as e:
        print(f"\nError running sync: {e}")
        logger.exception("Sync error")
        sys.exit(1)
    finally:
        services['provider'].close()


async def cmd_nightly(args):
    """Run the nightly incremental sync."""
    config = load_config(args.config)
    services = create_services(config)
    nightly = services['nightly']

    print("\n" + "=" * 60)
    print("NIGHTLY SYNC")
    print("=" * 60)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    install_cancel_handler(services['orchestrator'])
    try:
        result = await nightly.run(
            property_type=args.type,
            include_municipalities=not args.buildings_only,
        )

        print(f"\nStatus: {result.status}")
        print(f"Duration: {result.duration_seconds:.1f} seconds")
        print(f"Stale Runs Sealed: {result.stale_runs_sealed}")
        if result.baseline:
            print(f"Baseline: {result.baseline}")
            print(f"Final: {result.final}")
        if result.fleet:
            print_report(result.fleet)
        for report in result.municipalities:
            print_report(report)
        for warning in result.warnings:
            print(f"⚠️  {warning}")
        if result.errors:
            print("\nErrors:")
            for error in result.errors:
                print(f"  - {error}")
        print()

        if result.status == 'failed':
            sys.exit(1)
    except Exception as e:
        print(f"\nError running nightly sync: {e}")
        logger.exception("Nightly sync error")
        sys.exit(1)
    finally:
        services['provider'].close()


async def cmd_geography(args):
    """Discover areas, municipalities and communities from the feed."""
    config = load_config(args.config)
    services = create_services(config)

    print("\n" + "=" * 60)
    print("GEOGRAPHY SYNC")
    print("=" * 60)

    try:
        result = await services['geography'].sync_geography()

        print(f"\nRecords Scanned: {result.records_scanned:,} ({'complete' if result.complete else 'partial'})")
        print(f"{'':<16} {'Feed':>8} {'Before':>8} {'Inserted':>9} {'After':>8}")
        for level in ('areas', 'municipalities', 'communities'):
            print(f"{level:<16} {getattr(result.feed, level):>8} {getattr(result.before, level):>8} "
                  f"{getattr(result.inserted, level):>9} {getattr(result.after, level):>8}")

        if result.errors:
            print("\nErrors:")
            for error in result.errors:
                print(f"  - {error}")
        print()
    except Exception as e:
        print(f"\nError running geography sync: {e}")
        logger.exception("Geography sync error")
        sys.exit(1)
    finally:
        services['provider'].close()


async def cmd_history(args):
    """Show sync run history."""
    print("\n" + "=" * 60)
    print("SYNC RUN HISTORY")
    print("=" * 60)

    config = load_config(args.config)
    recorder = create_recorder(config)

    try:
        history = await recorder.get_history(args.scope_type, args.limit)

        if not history:
            print("\nNo sync runs found.")
        else:
            print(f"\nShowing {len(history)} most recent runs:")
            print("-" * 100)
            print(f"{'Scope':<34} {'Started':<20} {'Status':<12} {'Mode':<12} {'Duration':<10} {'+/~/-':<12}")
            print("-" * 100)

            for run in history:
                scope = f"{run.get('scope_type', '?')}: {run.get('scope_name') or run.get('scope_id') or ''}"[:33]
                started = (run.get('started_at') or '')[:19].replace('T', ' ')
                status = run.get('sync_status', 'unknown')
                duration = run.get('duration_seconds')
                duration = f"{duration:.1f}s" if duration is not None else '-'
                changes = (f"{run.get('listings_created') or 0}/{run.get('listings_updated') or 0}/"
                           f"{run.get('listings_removed') or 0}")

                status_icon = {
                    'completed': '✅',
                    'partial': '⚠️',
                    'failed': '❌',
                    'running': '🔄',
                }.get(status, '❓')

                print(f"{scope:<34} {started:<20} {status_icon} {status:<10} {run.get('sync_type', ''):<12} "
                      f"{duration:<10} {changes:<12}")

        print("-" * 100)
        print()

    except Exception as e:
        print(f"\nError getting history: {e}")
        logger.exception("History error")
        sys.exit(1)


async def cmd_summary(args):
    """Show sync summary statistics."""
    config = load_config(args.config)
    days = args.days or config.runs.summary_days

    print("\n" + "=" * 60)
    print(f"SYNC SUMMARY (Last {days} days)")
    print("=" * 60)

    recorder = create_recorder(config)

    try:
        summary = await recorder.get_summary(days)

        if not summary:
            print("\nNo data available.")
        else:
            print(f"\nTotal Runs: {summary.get('total_runs', 0)}")
            print(f"  Completed: {summary.get('completed_runs', 0)}")
            print(f"  Partial: {summary.get('partial_runs', 0)}")
            print(f"  Failed: {summary.get('failed_runs', 0)}")
            print(f"  Running: {summary.get('running_runs', 0)}")
            print(f"\nListings Created: {summary.get('total_created', 0):,}")
            print(f"Listings Updated: {summary.get('total_updated', 0):,}")
            print(f"Listings Removed: {summary.get('total_removed', 0):,}")
            print(f"\nAvg Duration: {summary.get('average_duration_seconds', 0):.1f} seconds")

            if summary.get('by_scope_type'):
                print("\nBy Scope:")
                print("-" * 50)
                for scope_type, stats in summary['by_scope_type'].items():
                    print(f"  {scope_type}:")
                    print(f"    Runs: {stats.get('runs', 0)} ({stats.get('completed', 0)} completed)")
                    print(f"    Created: {stats.get('created', 0):,}, Updated: {stats.get('updated', 0):,}, "
                          f"Removed: {stats.get('removed', 0):,}")

        print()

    except Exception as e:
        print(f"\nError getting summary: {e}")
        logger.exception("Summary error")
        sys.exit(1)


async def cmd_stale(args):
    """Seal runs left 'running' by crashed processes."""
    config = load_config(args.config)
    recorder = create_recorder(config)

    sealed = await recorder.seal_stale_runs()
    print(f"\nSealed {sealed} stale run(s) older than {config.runs.stale_after_minutes} minutes.\n")


async def cmd_test_connection(args):
    """Check provider credentials and store reachability."""
    config = load_config(args.config)
    services = create_services(config)

    errors = await services['nightly'].preflight()
    if errors:
        for error in errors:
            print(f"❌ {error}")
        sys.exit(1)
    print("\n✅ Provider and store reachable.\n")


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description='PropTx Listing Sync CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s sync --building <id> --mode full      Full sync of one building
  %(prog)s sync --municipality <id> --type all   Incremental sync of a municipality
  %(prog)s sync --all                            Incremental sync of every building
  %(prog)s nightly                               Nightly incremental run
  %(prog)s geography                             Discover areas/municipalities/communities
  %(prog)s history --limit 20                    Show last 20 sync runs
  %(prog)s summary --days 14                     Show 14-day summary
  %(prog)s stale                                 Seal stale running rows
        """
    )
    parser.add_argument('--config', help='Path to a sync_config.yaml file')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Sync command
    sync_parser = subparsers.add_parser('sync', help='Sync a building, a municipality or every building')
    scope = sync_parser.add_mutually_exclusive_group()
    scope.add_argument('--building', help='Building id')
    scope.add_argument('--municipality', help='Municipality id')
    scope.add_argument('--all', action='store_true', help='Every building (default)')
    sync_parser.add_argument('--type', default='all', help='Property type filter: condo, freehold or all')
    sync_parser.add_argument('--mode', choices=['full', 'incremental'], default='incremental', help='Sync mode')
    sync_parser.add_argument('--triggered-by', default='manual', help='Recorded on the run row')
    sync_parser.set_defaults(func=cmd_sync)

    # Nightly command
    nightly_parser = subparsers.add_parser('nightly', help='Run the nightly incremental sync')
    nightly_parser.add_argument('--type', default='all', help='Property type filter: condo, freehold or all')
    nightly_parser.add_argument('--buildings-only', action='store_true', help='Skip municipality runs')
    nightly_parser.set_defaults(func=cmd_nightly)

    # Geography command
    geography_parser = subparsers.add_parser('geography', help='Discover the geographic hierarchy from the feed')
    geography_parser.set_defaults(func=cmd_geography)

    # History command
    history_parser = subparsers.add_parser('history', help='Show sync run history')
    history_parser.add_argument('--scope-type', choices=['building', 'municipality', 'all', 'nightly'],
                                help='Filter by scope type')
    history_parser.add_argument('--limit', type=int, default=10, help='Number of records to show')
    history_parser.set_defaults(func=cmd_history)

    # Summary command
    summary_parser = subparsers.add_parser('summary', help='Show sync summary statistics')
    summary_parser.add_argument('--days', type=int, help='Number of days to include')
    summary_parser.set_defaults(func=cmd_summary)

    # Stale command
    stale_parser = subparsers.add_parser('stale', help='Seal runs left running by crashed processes')
    stale_parser.set_defaults(func=cmd_stale)

    # Test connection command
    test_parser = subparsers.add_parser('test-connection', help='Check provider and store access')
    test_parser.set_defaults(func=cmd_test_connection)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(load_config(args.config))

    # Run the async command
    asyncio.run(args.func(args))


if __name__ == '__main__':
    main()
