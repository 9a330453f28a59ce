from fastapi import APIRouter, Depends

from apps.pass_sync.routes.deps import get_services
from apps.pass_sync.services.registry import PassServices

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_root(services: PassServices = Depends(get_services)):
    consumer = services.consumer
    return {
        "ok": True,
        "version": services.settings.version,
        "consumer": {
            "enabled": services.settings.ledger_consumer_enabled,
            "state": consumer.state.value,
            "eventsApplied": consumer.events_applied,
            "lastPosition": list(consumer.last_position) if consumer.last_position else None,
        },
        "fanout": {
            "running": services.fanout.running,
            "queued": services.fanout.queue.qsize(),
            "recent": [r.to_dict() for r in services.fanout.recent_reports],
        },
        "scheduler": {
            "enabled": services.settings.reconciliation_enabled,
            "jobs": services.scheduler.describe(),
        },
    }
