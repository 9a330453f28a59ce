"""
Access Engine (Derived Ticket State)
====================================

Purpose:
- Reconstruct ticket eligibility for (account, event) from raw ledger records.
- Pure derivation: no cache, no writes. The ledger is the only source of truth.

Derivation:
- purchased = number of purchase records for the event
- used      = zero-amount PAYMENT transactions tagged as a check-in for the event
- remaining = purchased - used, clamped so that 0 <= used <= purchased

Check-in:
- Re-derives immediately before writing, then submits ticket number used + 1.
- There is no atomic derive-then-write on the ledger. Two concurrent attempts
  with one ticket left can both pass the check; the ledger append is the only
  serialization point. Duplicate ticket numbers are reported, never rewritten.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from apps.pass_sync.services.errors import (
    InsufficientAccessError,
    NoRemainingTicketsError,
    NotFoundError,
    UnauthorizedOperatorError,
)
from apps.pass_sync.services.ledger.checkin_tag import is_check_in_for, parse_check_in_tag
from apps.pass_sync.services.ledger.client import LedgerClient
from apps.pass_sync.services.ledger.models import (
    PurchaseRecord,
    TransactionKind,
    TransactionRecord,
)
from apps.pass_sync.utils.clock import utcnow

log = logging.getLogger("pass_sync.access")


@dataclass(frozen=True)
class DerivedAccessState:
    event_id: str
    account: str
    purchased: int
    used: int
    remaining: int
    can_check_in: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "account": self.account,
            "purchased": self.purchased,
            "used": self.used,
            "remaining": self.remaining,
            "canCheckIn": self.can_check_in,
        }


@dataclass(frozen=True)
class CheckInResult:
    account: str
    event_id: str
    ticket_number: int
    total_tickets: int
    remaining_tickets: int
    tx_hash: str
    block_number: Optional[int]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "eventId": self.event_id,
            "ticketNumber": self.ticket_number,
            "totalTickets": self.total_tickets,
            "remainingTickets": self.remaining_tickets,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp.isoformat(),
        }


def is_check_in(tx: TransactionRecord, event_id: str) -> bool:
    return (
        tx.kind == TransactionKind.PAYMENT
        and Decimal(tx.amount) == 0
        and is_check_in_for(tx.note, event_id)
    )


def count_purchased(purchases: Iterable[PurchaseRecord], event_id: str) -> int:
    return sum(1 for p in purchases if p.event_id == str(event_id))


def count_used(transactions: Iterable[TransactionRecord], event_id: str) -> int:
    return sum(1 for tx in transactions if is_check_in(tx, event_id))


def duplicate_ticket_numbers(transactions: Iterable[TransactionRecord], event_id: str) -> List[int]:
    """Ticket numbers written more than once for the event."""
    numbers: Counter = Counter()
    for tx in transactions:
        if not is_check_in(tx, event_id):
            continue
        parsed = parse_check_in_tag(tx.note)
        if parsed:
            numbers[parsed[1]] += 1
    return sorted(n for n, c in numbers.items() if c > 1)


def derive_from_records(
    account: str,
    event_id: str,
    purchases: Iterable[PurchaseRecord],
    transactions: Iterable[TransactionRecord],
) -> DerivedAccessState:
    purchased = count_purchased(purchases, event_id)
    used = min(count_used(transactions, event_id), purchased)
    remaining = purchased - used
    return DerivedAccessState(
        event_id=str(event_id),
        account=str(account),
        purchased=purchased,
        used=used,
        remaining=remaining,
        can_check_in=remaining > 0,
    )


class AccessEngine:
    """
    Ledger contract:
    - account_exists(account) -> bool
    - get_event(event_id) -> EventDetails (raises NotFoundError)
    - query_purchases(account, event_id) -> List[PurchaseRecord]
    - query_transactions(account, limit) -> List[TransactionRecord]
    - is_authorized_operator(operator) -> bool
    - submit_check_in(account, event_id, ticket_number, operator) -> CheckInConfirmation
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        max_history_depth: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.max_history_depth = max_history_depth
        self.clock = clock

    async def derive_access_state(
        self, account: str, event_id: str, *, require_active: bool = False,
    ) -> DerivedAccessState:
        account = str(account)
        event_id = str(event_id)

        if not await self.ledger.account_exists(account):
            raise NotFoundError(f"Unknown account: {account}")
        event = await self.ledger.get_event(event_id)
        if require_active and not event.active:
            raise NotFoundError(f"Event not found or inactive: {event_id}")

        purchases = await self.ledger.query_purchases(account, event_id)
        transactions = await self.ledger.query_transactions(account, self.max_history_depth)

        state = derive_from_records(account, event_id, purchases, transactions)

        dupes = duplicate_ticket_numbers(transactions, event_id)
        if dupes:
            log.warning(
                f"Duplicate check-in ticket numbers {dupes} for account {account} event {event_id}"
            )
        if count_used(transactions, event_id) > state.purchased:
            log.warning(
                f"More check-ins than purchases for account {account} event {event_id}"
            )
        return state

    async def attempt_check_in(self, account: str, event_id: str, operator: str) -> CheckInResult:
        account = str(account)
        event_id = str(event_id)

        state = await self.derive_access_state(account, event_id, require_active=True)

        if not await self.ledger.is_authorized_operator(operator):
            raise UnauthorizedOperatorError(
                "Operator not authorized to perform check-ins",
                details={"operator": operator},
            )

        if state.purchased == 0:
            raise InsufficientAccessError(
                "Account does not have access to this event",
                details={"account": account, "eventId": event_id, "purchased": 0, "used": 0},
            )

        if not state.can_check_in:
            raise NoRemainingTicketsError(
                state.purchased, state.used, account=account, eventId=event_id
            )

        ticket_number = state.used + 1
        confirmation = await self.ledger.submit_check_in(account, event_id, ticket_number, operator)

        log.info(
            f"Check-in ticket {ticket_number}/{state.purchased} for account {account} "
            f"event {event_id} tx {confirmation.tx_hash}"
        )
        return CheckInResult(
            account=account,
            event_id=event_id,
            ticket_number=ticket_number,
            total_tickets=state.purchased,
            remaining_tickets=state.remaining - 1,
            tx_hash=confirmation.tx_hash,
            block_number=confirmation.block_number,
            timestamp=self.clock(),
        )
