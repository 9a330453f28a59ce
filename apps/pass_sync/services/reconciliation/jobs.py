"""
Reconciliation Jobs
===================

cleanup_stale_subscriptions
- Deletes subscriptions whose last_updated is older than the retention window.
- The cutoff is fixed when the run starts, so a record touched while the job is
  running can never fall outside the window.

resync_balances
- For every subscribed serial: read the balance straight from the ledger,
  compare with the stored pass state, upsert + fan out when they differ.
- Heals anything the event consumer missed (dropped events, downtime).
- A store failure aborts the run (next tick retries); a ledger failure for one
  account skips that account only.

Both are idempotent and safe to run alongside live event consumption.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from apps.pass_sync.services.errors import LedgerUnavailableError, NotFoundError
from apps.pass_sync.services.ledger.client import LedgerClient
from apps.pass_sync.services.ledger.models import account_from_serial, format_amount
from apps.pass_sync.services.passes.fanout import FanoutDispatcher
from apps.pass_sync.services.passes.pass_state_repository import (
    PassStateRepository,
    PassStateUpdate,
)
from apps.pass_sync.services.passes.subscription_repository import SubscriptionRepository
from apps.pass_sync.utils.clock import utcnow

log = logging.getLogger("pass_sync.reconciliation")


@dataclass
class CleanupResult:
    cutoff: datetime
    deleted: int

    def to_dict(self) -> Dict[str, Any]:
        return {"cutoff": self.cutoff.isoformat(), "deleted": self.deleted}


@dataclass
class ResyncResult:
    checked: int = 0
    updated: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"checked": self.checked, "updated": self.updated, "skipped": self.skipped}


class ReconciliationJobs:
    def __init__(
        self,
        ledger: LedgerClient,
        pass_states: PassStateRepository,
        subscriptions: SubscriptionRepository,
        dispatcher: FanoutDispatcher,
        *,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.pass_states = pass_states
        self.subscriptions = subscriptions
        self.dispatcher = dispatcher
        self.retention = timedelta(days=retention_days)
        self.clock = clock

    async def cleanup_stale_subscriptions(self) -> CleanupResult:
        cutoff = self.clock() - self.retention
        log.info(f"[CLEANUP] removing subscriptions not updated since {cutoff.isoformat()}")
        deleted = await self.subscriptions.delete_stale(cutoff)
        log.info(f"[CLEANUP] removed {deleted} expired subscriptions")
        return CleanupResult(cutoff=cutoff, deleted=deleted)

    async def resync_balances(self) -> ResyncResult:
        result = ResyncResult()
        subs = await self.subscriptions.list_all()
        serials = sorted({s.serial_number for s in subs})
        log.info(f"[RESYNC] checking {len(serials)} passes")

        stored = {r.serial_number: r for r in await self.pass_states.get_many(serials)}

        for serial in serials:
            result.checked += 1
            try:
                account = account_from_serial(serial)
                balance = format_amount(await self.ledger.get_balance(account))
            except (ValueError, NotFoundError, LedgerUnavailableError) as e:
                log.error(f"[RESYNC] cannot read balance for {serial}: {e}")
                result.skipped[serial] = str(e)
                continue

            current = stored.get(serial)
            if current is not None and current.balance == balance:
                continue

            update = PassStateUpdate(serial_number=serial, updated_at=self.clock(), balance=balance)
            if not await self.pass_states.upsert(update):
                log.info(f"[RESYNC] {serial} already has a newer state; not pushing")
                continue
            result.updated.append(serial)
            await self.dispatcher.dispatch(serial, update.changed_fields())

        log.info(f"[RESYNC] completed: {len(result.updated)} updated, {len(result.skipped)} skipped")
        return result
