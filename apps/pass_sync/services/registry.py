# apps/pass_sync/services/registry.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.access.access_engine import AccessEngine
from apps.pass_sync.services.ledger.client import LedgerClient
from apps.pass_sync.services.passes.event_consumer import LedgerEventConsumer
from apps.pass_sync.services.passes.fanout import FanoutDispatcher, FanoutQueue
from apps.pass_sync.services.passes.pass_builder import PassBuilder
from apps.pass_sync.services.passes.pass_state_repository import PassStateRepository
from apps.pass_sync.services.passes.push import PushSender
from apps.pass_sync.services.passes.subscription_repository import SubscriptionRepository
from apps.pass_sync.services.reconciliation.jobs import ReconciliationJobs
from apps.pass_sync.services.reconciliation.scheduler import ReconciliationScheduler


@dataclass
class PassServices:
    """Everything the routes and the lifespan need, wired once per process."""
    settings: Settings
    ledger: LedgerClient
    pass_states: PassStateRepository
    subscriptions: SubscriptionRepository
    push: PushSender
    dispatcher: FanoutDispatcher
    fanout: FanoutQueue
    access: AccessEngine
    consumer: LedgerEventConsumer
    jobs: ReconciliationJobs
    scheduler: ReconciliationScheduler
    pass_builder: Optional[PassBuilder] = None

    @classmethod
    def wire(
        cls,
        settings: Settings,
        *,
        ledger: LedgerClient,
        pass_states: PassStateRepository,
        subscriptions: SubscriptionRepository,
        push: PushSender,
        pass_builder: Optional[PassBuilder] = None,
    ) -> "PassServices":
        dispatcher = FanoutDispatcher(subscriptions, push)
        fanout = FanoutQueue(
            dispatcher,
            maxsize=settings.fanout_queue_size,
            workers=settings.fanout_workers,
        )
        jobs = ReconciliationJobs(
            ledger,
            pass_states,
            subscriptions,
            dispatcher,
            retention_days=settings.subscription_retention_days,
        )
        return cls(
            settings=settings,
            ledger=ledger,
            pass_states=pass_states,
            subscriptions=subscriptions,
            push=push,
            dispatcher=dispatcher,
            fanout=fanout,
            access=AccessEngine(ledger, max_history_depth=settings.transaction_history_limit),
            consumer=LedgerEventConsumer(ledger, pass_states, fanout),
            jobs=jobs,
            scheduler=ReconciliationScheduler(
                jobs,
                cleanup_interval_seconds=settings.cleanup_interval_seconds,
                resync_interval_seconds=settings.resync_interval_seconds,
            ),
            pass_builder=pass_builder,
        )
