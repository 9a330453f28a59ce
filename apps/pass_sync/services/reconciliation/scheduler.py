# apps/pass_sync/services/reconciliation/scheduler.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from apps.pass_sync.services.errors import PassSyncError
from apps.pass_sync.services.reconciliation.jobs import ReconciliationJobs

log = logging.getLogger("pass_sync.scheduler")

CLEANUP_JOB_ID = "subscription_cleanup"
RESYNC_JOB_ID = "balance_resync"


class ReconciliationScheduler:
    """
    Interval ticker for the two reconciliation jobs.

    - max_instances=1: a job never overlaps a run of itself
    - the two jobs may overlap each other
    - coalesce=True: missed ticks collapse into one run
    """

    def __init__(
        self,
        jobs: ReconciliationJobs,
        *,
        cleanup_interval_seconds: int = 86400,
        resync_interval_seconds: int = 3600,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.jobs = jobs
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.resync_interval_seconds = resync_interval_seconds
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._inflight: Set[asyncio.Task] = set()

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_cleanup,
            "interval",
            seconds=self.cleanup_interval_seconds,
            id=CLEANUP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_resync,
            "interval",
            seconds=self.resync_interval_seconds,
            id=RESYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

        log.info(
            f"[SCHEDULER] started: cleanup every {self.cleanup_interval_seconds}s, "
            f"resync every {self.resync_interval_seconds}s"
        )

    async def run_cleanup(self) -> Optional[Dict[str, Any]]:
        return await self._tracked("cleanup", self.jobs.cleanup_stale_subscriptions)

    async def run_resync(self) -> Optional[Dict[str, Any]]:
        return await self._tracked("resync", self.jobs.resync_balances)

    async def _tracked(self, name: str, job) -> Optional[Dict[str, Any]]:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            result = await job()
            return result.to_dict()
        except PassSyncError as e:
            # abort this run; the next tick retries
            log.error(f"[SCHEDULER] {name} run aborted: {e}")
            return None
        finally:
            if task is not None:
                self._inflight.discard(task)

    def pause(self) -> None:
        self.scheduler.pause()

    def resume(self) -> None:
        self.scheduler.resume()

    def describe(self) -> List[Dict[str, Any]]:
        out = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            out.append({"id": job.id, "next_run_time": next_run.isoformat() if next_run else None})
        return out

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop ticking, then give in-flight runs up to `timeout` to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        pending = [t for t in self._inflight if not t.done()]
        if pending:
            _, still = await asyncio.wait(pending, timeout=timeout)
            for t in still:
                t.cancel()
            if still:
                log.warning(f"[SCHEDULER] cancelled {len(still)} unfinished runs at shutdown")
        log.info("[SCHEDULER] stopped")
