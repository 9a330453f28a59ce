"""
Ledger Records (read-only mirror)
=================================

Purpose:
- Typed views of what the external ledger returns.
- The ledger owns these; this service never mutates them.

Amounts are already scaled to token units (Decimal) by the ledger adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

SERIAL_PREFIX = "TOKEN-"


class TransactionKind(str, Enum):
    TOPUP = "TOPUP"
    PAYMENT = "PAYMENT"
    # EVENT_PURCHASE and anything else the contract records
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw) -> "TransactionKind":
        try:
            return cls(str(raw).upper())
        except ValueError:
            return cls.OTHER


class LedgerEventType(str, Enum):
    BALANCE_UPDATED = "BalanceUpdated"
    TRANSACTION_RECORDED = "TransactionRecorded"
    EVENT_PURCHASED = "EventPurchased"


def serial_for_account(account: str) -> str:
    return f"{SERIAL_PREFIX}{account}"


def account_from_serial(serial_number: str) -> str:
    if not serial_number.startswith(SERIAL_PREFIX) or len(serial_number) == len(SERIAL_PREFIX):
        raise ValueError(f"Not a pass serial number: {serial_number!r}")
    return serial_number[len(SERIAL_PREFIX):]


def format_amount(value: Any) -> str:
    """
    Plain decimal string: no exponent, no trailing zeros.
    Decimal("1000") -> "1000", Decimal("12.500000") -> "12.5"
    """
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    if d == d.to_integral_value():
        return format(d.quantize(Decimal(1)), "f")
    return format(d.normalize(), "f")


@dataclass(frozen=True)
class TransactionRecord:
    index: int
    timestamp: Optional[datetime]
    counterparty: Optional[str]
    amount: Decimal
    kind: TransactionKind
    note: str = ""


@dataclass(frozen=True)
class PurchaseRecord:
    account: str
    event_id: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class EventDetails:
    event_id: str
    name: str
    active: bool = True
    date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "name": self.name,
            "date": self.date.isoformat() if self.date else None,
        }


@dataclass(frozen=True)
class LedgerEvent:
    """
    One decoded ledger log.

    payload by type:
        BalanceUpdated       -> new_balance: Decimal, update_type: str
        TransactionRecorded  -> transaction_type: str, amount: Decimal, timestamp?: datetime
        EventPurchased       -> event_id: str
    """
    type: LedgerEventType
    account: str
    payload: Dict[str, Any] = field(default_factory=dict)
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    @property
    def serial_number(self) -> str:
        return serial_for_account(self.account)

    @property
    def position(self) -> tuple:
        return (self.block_number or 0, self.log_index or 0)


@dataclass(frozen=True)
class CheckInConfirmation:
    tx_hash: str
    block_number: Optional[int] = None
