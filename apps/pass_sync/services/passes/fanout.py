"""
Fan-out
=======

FanoutDispatcher
- dispatch(serial_number, fields) -> DispatchReport
- One delivery attempt per subscribed device, concurrently and independently.
- Zero subscribers is a normal, empty report.
- No per-device retry here; the hourly resync re-pushes anything still stale.

FanoutQueue
- Bounded in-process queue between the event consumer and the dispatcher.
- enqueue() never blocks; a full queue raises asyncio.QueueFull.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from apps.pass_sync.services.errors import PushDeliveryError
from apps.pass_sync.services.passes.push import PushSender
from apps.pass_sync.services.passes.subscription_repository import (
    SubscriptionRecord,
    SubscriptionRepository,
)

log = logging.getLogger("pass_sync.fanout")


@dataclass(frozen=True)
class DeliveryFailure:
    device_id: str
    reason: str


@dataclass
class DispatchReport:
    serial_number: str
    attempted: int = 0
    succeeded: int = 0
    failed: List[DeliveryFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serialNumber": self.serial_number,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": [{"deviceId": f.device_id, "reason": f.reason} for f in self.failed],
        }


class FanoutDispatcher:
    def __init__(self, subscriptions: SubscriptionRepository, push: PushSender) -> None:
        self.subscriptions = subscriptions
        self.push = push

    async def dispatch(self, serial_number: str, fields: Dict[str, Any]) -> DispatchReport:
        report = DispatchReport(serial_number=serial_number)

        subs = await self.subscriptions.list_for_serial(serial_number)
        if not subs:
            return report

        outcomes = await asyncio.gather(*(self._deliver(sub, fields) for sub in subs))

        report.attempted = len(subs)
        for sub, error in zip(subs, outcomes):
            if error is None:
                report.succeeded += 1
            else:
                report.failed.append(DeliveryFailure(device_id=sub.device_id, reason=error))

        if report.failed:
            log.warning(
                f"[FANOUT] {serial_number}: {report.succeeded}/{report.attempted} delivered, "
                f"{len(report.failed)} failed"
            )
        else:
            log.info(f"[FANOUT] {serial_number}: {report.succeeded}/{report.attempted} delivered")
        return report

    async def _deliver(self, sub: SubscriptionRecord, fields: Dict[str, Any]) -> Optional[str]:
        try:
            await self.push.send(sub.push_address, sub.pass_type_id, fields)
            return None
        except PushDeliveryError as e:
            log.warning(f"[FANOUT] push to device {sub.device_id} for {sub.serial_number} failed: {e.reason}")
            return e.reason
        except Exception as e:
            log.exception(f"[FANOUT] unexpected push error for device {sub.device_id}")
            return str(e) or e.__class__.__name__


class FanoutQueue:
    def __init__(
        self,
        dispatcher: FanoutDispatcher,
        *,
        maxsize: int = 1000,
        workers: int = 4,
        keep_reports: int = 50,
    ) -> None:
        self.dispatcher = dispatcher
        self.queue: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = asyncio.Queue(maxsize=maxsize)
        self.worker_count = max(1, int(workers))
        self.recent_reports: Deque[DispatchReport] = deque(maxlen=keep_reports)
        self._workers: List[asyncio.Task] = []
        self._accepting = False

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"fanout-worker-{i}")
            for i in range(self.worker_count)
        ]
        log.info(f"[FANOUT] {self.worker_count} workers started")

    def enqueue(self, serial_number: str, fields: Dict[str, Any]) -> None:
        if not self._accepting:
            raise RuntimeError("Fan-out queue is not accepting work")
        self.queue.put_nowait((serial_number, dict(fields)))

    async def drain(self) -> None:
        await self.queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting work, let queued and in-flight deliveries finish, then cancel workers."""
        self._accepting = False
        try:
            await asyncio.wait_for(self.queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(f"[FANOUT] {self.queue.qsize()} jobs still queued at shutdown")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log.info("[FANOUT] workers stopped")

    async def _worker(self, n: int) -> None:
        while True:
            serial_number, fields = await self.queue.get()
            try:
                report = await self.dispatcher.dispatch(serial_number, fields)
                self.recent_reports.append(report)
            except Exception:
                log.exception(f"[FANOUT] worker {n} failed to dispatch {serial_number}")
            finally:
                self.queue.task_done()
