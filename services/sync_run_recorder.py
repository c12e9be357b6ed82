"""
Sync Run Recorder

One sync_history row per pipeline execution. A row is inserted as
'running' and sealed exactly once as 'completed', 'partial' or 'failed'.
A row left 'running' past the stale threshold belongs to a crashed process;
it is sealed as failed rather than treated as a lock.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from config.sync_config import SyncConfig
from .listing_models import parse_timestamp
from .listing_store import ListingStore

logger = logging.getLogger(__name__)

STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_PARTIAL = 'partial'
STATUS_FAILED = 'failed'

COUNT_COLUMNS = (
    'listings_found',
    'listings_created',
    'listings_updated',
    'listings_unchanged',
    'listings_removed',
    'listings_skipped',
    'media_saved',
    'rooms_saved',
    'open_houses_saved',
)


def derive_status(errors: List[str], succeeded: bool = True) -> str:
    """completed with no errors, partial with some, failed with no usable result"""
    if not succeeded:
        return STATUS_FAILED
    return STATUS_PARTIAL if errors else STATUS_COMPLETED


class SyncRunRecorder:
    """
    Writes and queries the sync_history audit trail
    """

    def __init__(self, store: ListingStore, config: SyncConfig):
        self.store = store
        self.config = config
        self.stale_after = timedelta(minutes=config.runs.stale_after_minutes)

    async def start_run(self, scope_type: str, scope_id: Optional[str], sync_type: str,
                        triggered_by: str = 'manual', property_type: Optional[str] = None,
                        scope_name: Optional[str] = None,
                        parent_run_id: Optional[str] = None) -> Dict:
        """
        Insert a running row, sealing stale rows for the same scope first.

        Returns:
            The inserted row (id, started_at, ...)
        """
        await self.seal_stale_runs(scope_type, scope_id)

        row = {
            'scope_type': scope_type,
            'scope_id': scope_id,
            'scope_name': scope_name,
            'property_type': property_type,
            'sync_type': sync_type,
            'sync_status': STATUS_RUNNING,
            'triggered_by': triggered_by,
            'parent_run_id': parent_run_id,
            'started_at': datetime.now(timezone.utc).isoformat(),
        }
        try:
            run = await self.store.insert_run(row)
        except Exception as e:
            logger.error(f"Error creating sync run for {scope_type} {scope_id}: {e}")
            raise
        logger.info(f"Started {sync_type} sync run {run['id']} for {scope_type} {scope_name or scope_id or ''}")
        return run

    async def seal_run(self, run: Dict, status: str, counts: Optional[Dict[str, int]] = None,
                       errors: Optional[List[str]] = None) -> bool:
        """
        Record the terminal state of a run. Only the first seal takes effect.

        Args:
            run: Row returned by start_run
            status: completed, partial or failed
            counts: Values for COUNT_COLUMNS
            errors: Error messages for error_details

        Returns:
            True if this call sealed the run
        """
        if status not in (STATUS_COMPLETED, STATUS_PARTIAL, STATUS_FAILED):
            raise ValueError(f"Invalid terminal status: {status}")

        completed_at = datetime.now(timezone.utc)
        started_at = parse_timestamp(run.get('started_at')) or completed_at
        update_data = {
            'sync_status': status,
            'completed_at': completed_at.isoformat(),
            'duration_seconds': round((completed_at - started_at).total_seconds(), 1),
            'error_details': [{'message': message} for message in (errors or [])] or None,
        }
        for column in COUNT_COLUMNS:
            if counts and column in counts:
                update_data[column] = counts[column]

        try:
            sealed = await self.store.update_running_run(run['id'], update_data)
        except Exception as e:
            logger.error(f"Error sealing sync run {run['id']}: {e}")
            return False

        if not sealed:
            logger.warning(f"Sync run {run['id']} was already sealed; ignoring {status}")
            return False

        logger.info(f"Sync run {run['id']} {status} in {update_data['duration_seconds']}s")
        return True

    async def seal_stale_runs(self, scope_type: Optional[str] = None,
                              scope_id: Optional[str] = None) -> int:
        """Seal runs still 'running' after the stale threshold as failed"""
        cutoff = datetime.now(timezone.utc) - self.stale_after
        try:
            stale = await self.store.find_stale_runs(cutoff, scope_type, scope_id)
        except Exception as e:
            logger.error(f"Error looking up stale sync runs: {e}")
            return 0

        sealed = 0
        minutes = int(self.stale_after.total_seconds() // 60)
        for run in stale:
            update_data = {
                'sync_status': STATUS_FAILED,
                'completed_at': datetime.now(timezone.utc).isoformat(),
                'error_details': [{
                    'error': 'interrupted',
                    'message': f"Run still marked running after {minutes} minutes",
                }],
            }
            if await self.store.update_running_run(run['id'], update_data):
                sealed += 1
                logger.warning(f"Sealed stale sync run {run['id']} "
                               f"({run.get('scope_type')} {run.get('scope_id')}, started {run.get('started_at')})")
        return sealed

    async def last_successful_start(self, scope_type: str, scope_id: Optional[str],
                                    property_type: Optional[str] = None) -> Optional[datetime]:
        """Start time of the most recent completed run for a scope"""
        runs = await self.store.find_runs(
            status=STATUS_COMPLETED, scope_type=scope_type, scope_id=scope_id,
            property_type=property_type, limit=1,
        )
        if not runs:
            return None
        return parse_timestamp(runs[0].get('started_at'))

    async def get_history(self, scope_type: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        """Most recent runs, newest first"""
        try:
            return await self.store.find_runs(scope_type=scope_type, limit=limit or self.config.runs.history_limit)
        except Exception as e:
            logger.error(f"Error getting sync history: {e}")
            return []

    async def get_summary(self, days: Optional[int] = None) -> Dict:
        """
        Summary of sync activity over a period.

        Args:
            days: Number of days to look back

        Returns:
            Dictionary with summary statistics
        """
        days = days or self.config.runs.summary_days
        try:
            since = datetime.now(timezone.utc) - timedelta(days=days)
            runs = await self.store.find_runs(since=since)
        except Exception as e:
            logger.error(f"Error getting sync summary: {e}")
            return {}

        finished = [r for r in runs if r.get('duration_seconds') is not None]
        summary = {
            'period_days': days,
            'total_runs': len(runs),
            'completed_runs': len([r for r in runs if r.get('sync_status') == STATUS_COMPLETED]),
            'partial_runs': len([r for r in runs if r.get('sync_status') == STATUS_PARTIAL]),
            'failed_runs': len([r for r in runs if r.get('sync_status') == STATUS_FAILED]),
            'running_runs': len([r for r in runs if r.get('sync_status') == STATUS_RUNNING]),
            'total_created': sum(r.get('listings_created') or 0 for r in runs),
            'total_updated': sum(r.get('listings_updated') or 0 for r in runs),
            'total_removed': sum(r.get('listings_removed') or 0 for r in runs),
            'average_duration_seconds': (
                sum(r['duration_seconds'] for r in finished) / len(finished) if finished else 0
            ),
            'by_scope_type': {},
        }

        for run in runs:
            scope = summary['by_scope_type'].setdefault(run.get('scope_type') or 'unknown', {
                'runs': 0, 'completed': 0, 'created': 0, 'updated': 0, 'removed': 0,
            })
            scope['runs'] += 1
            scope['completed'] += 1 if run.get('sync_status') == STATUS_COMPLETED else 0
            scope['created'] += run.get('listings_created') or 0
            scope['updated'] += run.get('listings_updated') or 0
            scope['removed'] += run.get('listings_removed') or 0

        return summary
