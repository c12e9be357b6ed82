"""
Nightly Sync Service

Unattended nightly run:

1. Seal stale runs left by crashed processes
2. Pre-flight: provider connection and store reachability
3. Baseline counts (listings, building-linked listings, buildings)
4. Incremental fleet run over every building
5. Incremental runs for municipalities synced before
6. Post-run verification against the baseline
7. Summary row in sync_history (scope_type 'nightly')
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .listing_store import BUILDINGS, LISTINGS
from .reconciliation_engine import MODE_INCREMENTAL
from .sync_orchestrator import SCOPE_MUNICIPALITY, ListingSyncOrchestrator, SyncReport
from .sync_run_recorder import STATUS_COMPLETED, STATUS_FAILED, derive_status

logger = logging.getLogger(__name__)

SCOPE_NIGHTLY = 'nightly'


@dataclass
class NightlyResult:
    """Result of a nightly run"""
    status: str = STATUS_FAILED
    preflight_errors: List[str] = field(default_factory=list)
    baseline: Dict[str, int] = field(default_factory=dict)
    final: Dict[str, int] = field(default_factory=dict)
    fleet: Optional[SyncReport] = None
    municipalities: List[SyncReport] = field(default_factory=list)
    stale_runs_sealed: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    run_id: Optional[str] = None


class NightlySyncService:
    """
    Runs the nightly incremental sync across buildings and municipalities
    """

    def __init__(self, orchestrator: ListingSyncOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.recorder = orchestrator.recorder
        self._running = False

    def is_running(self) -> bool:
        return self._running

    async def preflight(self) -> List[str]:
        """Errors preventing a run (empty when everything is reachable)"""
        errors = []
        try:
            await asyncio.to_thread(self.orchestrator.provider.test_connection)
        except Exception as e:
            errors.append(f"Provider connection failed: {e}")
        try:
            await self.store.ping()
        except Exception as e:
            errors.append(f"Store unreachable: {e}")
        return errors

    async def baseline(self) -> Dict[str, int]:
        """Counts used to verify a run did not lose data"""
        return {
            'listings': await self.store.count_rows(LISTINGS),
            'linked_listings': await self.store.count_listings(not_null=['building_id']),
            'buildings': await self.store.count_rows(BUILDINGS),
        }

    async def run(self, property_type: str = 'all', triggered_by: str = 'nightly',
                  include_municipalities: bool = True) -> NightlyResult:
        """
        Execute the nightly sync.

        Args:
            property_type: Property type filter name
            triggered_by: Recorded on every run row
            include_municipalities: Also run municipalities with a previous completed sync

        Returns:
            NightlyResult
        """
        result = NightlyResult()
        if self._running:
            result.errors.append("Nightly sync already running in this process")
            return result

        self._running = True
        started = time.time()
        try:
            return await self._run(result, property_type, triggered_by, include_municipalities, started)
        finally:
            self._running = False

    async def _run(self, result: NightlyResult, property_type: str, triggered_by: str,
                   include_municipalities: bool, started: float) -> NightlyResult:
        result.stale_runs_sealed = await self.recorder.seal_stale_runs()

        run = await self.recorder.start_run(SCOPE_NIGHTLY, None, MODE_INCREMENTAL, triggered_by,
                                            property_type=property_type, scope_name='nightly sync')
        result.run_id = run['id']

        result.preflight_errors = await self.preflight()
        if result.preflight_errors:
            logger.error(f"Pre-flight failed: {'; '.join(result.preflight_errors)}")
            result.errors.extend(result.preflight_errors)
            return await self._finish(run, result, started, succeeded=False)

        result.baseline = await self.baseline()
        logger.info(f"Baseline: {result.baseline}")

        result.fleet = await self.orchestrator.sync_all(MODE_INCREMENTAL, property_type, triggered_by)
        if result.fleet.status != STATUS_COMPLETED:
            result.errors.append(f"Building fleet run {result.fleet.status}")

        if include_municipalities:
            for municipality_id in await self._previously_synced_municipalities(property_type):
                if self.orchestrator.is_cancelled():
                    result.errors.append("Cancelled before all municipalities ran")
                    break
                report = await self.orchestrator.sync_municipality(
                    municipality_id, MODE_INCREMENTAL, property_type, triggered_by
                )
                result.municipalities.append(report)
                if report.status != STATUS_COMPLETED:
                    result.errors.append(f"Municipality {report.scope_name or municipality_id} {report.status}")

        result.final = await self.baseline()
        result.warnings = self._verify(result.baseline, result.final)
        for warning in result.warnings:
            logger.warning(warning)

        reports = [result.fleet] + result.municipalities
        succeeded = any(r.status != STATUS_FAILED for r in reports)
        return await self._finish(run, result, started, succeeded=succeeded)

    async def _previously_synced_municipalities(self, property_type: str) -> List[str]:
        runs = await self.store.find_runs(
            status=STATUS_COMPLETED, scope_type=SCOPE_MUNICIPALITY, property_type=property_type,
        )
        ids = []
        for run in runs:
            if run.get('scope_id') and run['scope_id'] not in ids:
                ids.append(run['scope_id'])
        return ids

    @staticmethod
    def _verify(baseline: Dict[str, int], final: Dict[str, int]) -> List[str]:
        warnings = []
        for key in ('linked_listings', 'buildings'):
            before, after = baseline.get(key, 0), final.get(key, 0)
            if after < before:
                warnings.append(f"{key} decreased from {before} to {after}")
        return warnings

    async def _finish(self, run: Dict, result: NightlyResult, started: float, succeeded: bool) -> NightlyResult:
        result.status = derive_status(result.errors, succeeded=succeeded)
        result.duration_seconds = time.time() - started

        counts: Dict[str, int] = {}
        for report in filter(None, [result.fleet] + result.municipalities):
            for column, value in report.counts().items():
                counts[column] = counts.get(column, 0) + value

        await self.recorder.seal_run(run, result.status, counts, result.errors + result.warnings)
        logger.info(f"Nightly sync {result.status} in {result.duration_seconds:.1f}s")
        return result
