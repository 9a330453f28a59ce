"""LedgerClient protocol - the only surface through which the ledger is read or written.

Implementations: Web3LedgerClient (production), in-memory fakes (tests).
"""

from __future__ import annotations

from decimal import Decimal
from typing import AsyncIterator, List, Optional, Protocol, runtime_checkable

from apps.pass_sync.services.ledger.models import (
    CheckInConfirmation,
    EventDetails,
    LedgerEvent,
    PurchaseRecord,
    TransactionRecord,
)


@runtime_checkable
class LedgerClient(Protocol):

    async def ping(self) -> None:
        """Raise LedgerUnavailableError when the ledger cannot be reached."""
        ...

    async def account_exists(self, account: str) -> bool:
        ...

    async def get_balance(self, account: str) -> Decimal:
        ...

    async def get_event(self, event_id: str) -> EventDetails:
        """Raise NotFoundError for unknown events."""
        ...

    async def query_transactions(
        self, account: str, limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        """Most recent `limit` transactions, oldest first."""
        ...

    async def query_purchases(
        self, account: str, event_id: Optional[str] = None,
    ) -> List[PurchaseRecord]:
        ...

    async def is_authorized_operator(self, operator: str) -> bool:
        ...

    async def submit_check_in(
        self, account: str, event_id: str, ticket_number: int, operator: str,
    ) -> CheckInConfirmation:
        ...

    def subscribe_events(self, from_block: Optional[int] = None) -> AsyncIterator[LedgerEvent]:
        """Pull-based stream of ledger events in (block, logIndex) order."""
        ...


__all__ = ["LedgerClient"]
