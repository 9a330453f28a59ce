"""
Ledger Event Consumer
=====================

Single logical subscription to the ledger event stream.

    DISCONNECTED -> SUBSCRIBING -> STREAMING
                                -> (stream fault) RECONNECTING -> STREAMING
    any -> STOPPED on stop()

Per event:
1) translate to a partial PassStateUpdate (observed time + ledger position)
2) upsert the pass state store (retried on PersistenceError)
3) enqueue fan-out for the changed fields

Fan-out is for latency only. If enqueue fails the stored state is still right
and the next resync pass re-pushes it.

Reconnects resume from the last applied block and skip positions already
applied. Duplicate deliveries are harmless: upserts are idempotent by value.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from apps.pass_sync.services.errors import (
    LedgerUnavailableError,
    NotFoundError,
    PersistenceError,
)
from apps.pass_sync.services.ledger.client import LedgerClient
from apps.pass_sync.services.ledger.models import (
    LedgerEvent,
    LedgerEventType,
    format_amount,
)
from apps.pass_sync.services.passes.pass_state_repository import (
    PassStateRepository,
    PassStateUpdate,
)
from apps.pass_sync.utils.clock import to_iso, utcnow

log = logging.getLogger("pass_sync.consumer")


class ConsumerState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class FanoutSink(Protocol):
    def enqueue(self, serial_number: str, fields: Dict[str, Any]) -> None:
        ...


class LedgerEventConsumer:
    def __init__(
        self,
        ledger: LedgerClient,
        pass_states: PassStateRepository,
        fanout: FanoutSink,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        backoff_initial_seconds: float = 1.0,
        backoff_max_seconds: float = 60.0,
        upsert_retries: int = 3,
    ) -> None:
        self.ledger = ledger
        self.pass_states = pass_states
        self.fanout = fanout
        self.clock = clock
        self.sleep = sleep
        self.backoff_initial_seconds = backoff_initial_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.upsert_retries = max(1, int(upsert_retries))

        self.state = ConsumerState.DISCONNECTED
        self.events_applied = 0
        self.last_position: Optional[Tuple[int, int]] = None
        self._last_observed: Optional[datetime] = None
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="ledger-event-consumer")
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        self._stopping = True
        if self._task is not None and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
        self.state = ConsumerState.STOPPED
        log.info(f"[CONSUMER] stopped after {self.events_applied} events")

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_max_seconds, self.backoff_initial_seconds * (2 ** max(0, attempt - 1)))

    async def run(self) -> None:
        attempt = 0
        try:
            while not self._stopping:
                self.state = ConsumerState.SUBSCRIBING if attempt == 0 else ConsumerState.RECONNECTING
                from_block = self.last_position[0] if self.last_position else None
                try:
                    async for event in self.ledger.subscribe_events(from_block=from_block):
                        if self.state != ConsumerState.STREAMING:
                            self.state = ConsumerState.STREAMING
                            attempt = 0
                            log.info("[CONSUMER] streaming ledger events")
                        await self.handle_event(event)
                        if self._stopping:
                            break
                    else:
                        if not self._stopping:
                            log.warning("[CONSUMER] ledger stream ended; reconnecting")
                except LedgerUnavailableError as e:
                    log.warning(f"[CONSUMER] ledger stream fault: {e}")

                if self._stopping:
                    break
                attempt += 1
                self.state = ConsumerState.RECONNECTING
                delay = self.backoff_delay(attempt)
                log.info(f"[CONSUMER] reconnecting in {delay:.1f}s (attempt {attempt})")
                await self.sleep(delay)
        finally:
            self.state = ConsumerState.STOPPED

    # -----------------------------
    # Per-event handling
    # -----------------------------
    async def handle_event(self, event: LedgerEvent) -> Optional[PassStateUpdate]:
        """
        Apply one ledger event. Returns the update that was stored, or None when the
        event was skipped (already applied, or not translatable).
        """
        if self._already_applied(event):
            log.debug(f"[CONSUMER] skipping replayed event at {event.position}")
            return None

        try:
            update = await self.translate(event)
        except NotFoundError as e:
            log.error(f"[CONSUMER] cannot translate {event.type.value} for {event.serial_number}: {e}")
            self._mark_applied(event)
            return None
        except LedgerUnavailableError:
            # left unmarked so the resubscribe redelivers it
            log.warning(f"[CONSUMER] ledger unavailable translating {event.type.value} at {event.position}")
            raise

        if not await self._upsert_with_retry(update):
            self._mark_applied(event)
            return None

        self._mark_applied(event)
        self.events_applied += 1

        fields = update.changed_fields()
        try:
            self.fanout.enqueue(update.serial_number, fields)
        except Exception as e:
            log.warning(f"[CONSUMER] fan-out enqueue failed for {update.serial_number}: {e!r}")
        return update

    async def translate(self, event: LedgerEvent) -> PassStateUpdate:
        payload = event.payload or {}
        common = dict(
            serial_number=event.serial_number,
            updated_at=self._observed_time(),
            ledger_block=event.block_number,
            ledger_log_index=event.log_index,
        )

        if event.type == LedgerEventType.BALANCE_UPDATED:
            return PassStateUpdate(balance=format_amount(payload["new_balance"]), **common)

        if event.type == LedgerEventType.TRANSACTION_RECORDED:
            return PassStateUpdate(
                last_transaction={
                    "amount": format_amount(payload["amount"]),
                    "kind": str(payload.get("transaction_type", "")).upper(),
                    "timestamp": to_iso(payload.get("timestamp")) or to_iso(common["updated_at"]),
                },
                **common,
            )

        event_details = await self.ledger.get_event(str(payload["event_id"]))
        return PassStateUpdate(upcoming_event=event_details.to_dict(), **common)

    async def _upsert_with_retry(self, update: PassStateUpdate) -> bool:
        for attempt in range(1, self.upsert_retries + 1):
            try:
                await self.pass_states.upsert(update)
                return True
            except PersistenceError as e:
                log.error(
                    f"[CONSUMER] upsert {update.serial_number} failed (attempt {attempt}/{self.upsert_retries}): {e}"
                )
                if attempt < self.upsert_retries:
                    await self.sleep(self.backoff_delay(attempt))
        log.error(f"[CONSUMER] giving up on {update.serial_number}; resync will heal it")
        return False

    def _observed_time(self) -> datetime:
        # strictly increasing locally, even if the wall clock steps back
        now = self.clock()
        if self._last_observed is not None and now <= self._last_observed:
            now = self._last_observed + timedelta(microseconds=1)
        self._last_observed = now
        return now

    def _already_applied(self, event: LedgerEvent) -> bool:
        if event.block_number is None or self.last_position is None:
            return False
        return event.position <= self.last_position

    def _mark_applied(self, event: LedgerEvent) -> None:
        if event.block_number is None:
            return
        if self.last_position is None or event.position > self.last_position:
            self.last_position = event.position
