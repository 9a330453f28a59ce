"""
Pass State Repository (Supabase/Postgres Adapter)
=================================================

Purpose:
- Last known visible fields of every pass, keyed by serial number.
- Upsert-only. Rows are never deleted by this service.

Expected objects (see apps/pass_sync/sql/001_pass_tables.sql):
1) public.pass_states
   - serial_number text primary key ("TOKEN-<account>")
   - account text
   - balance text null            (plain decimal string)
   - last_transaction jsonb null  ({amount, kind, timestamp})
   - upcoming_event jsonb null    ({id, name, date})
   - updated_at timestamptz
   - ledger_block bigint null, ledger_log_index int null

2) public.upsert_pass_state(...) -> boolean
   Merges non-null fields; applies only when (updated_at, block, log_index)
   is not older than the stored row. Concurrent writers converge on the newest.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from postgrest.exceptions import APIError

from apps.pass_sync.services.errors import PersistenceError
from apps.pass_sync.services.ledger.models import account_from_serial
from apps.pass_sync.utils.clock import parse_ts, to_iso

log = logging.getLogger("pass_sync.pass_states")


@dataclass(frozen=True)
class PassStateRecord:
    serial_number: str
    balance: Optional[str]
    last_transaction: Optional[Dict[str, Any]]
    upcoming_event: Optional[Dict[str, Any]]
    updated_at: datetime
    ledger_block: Optional[int] = None
    ledger_log_index: Optional[int] = None

    @property
    def account(self) -> str:
        return account_from_serial(self.serial_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serialNumber": self.serial_number,
            "balance": self.balance,
            "lastTransaction": self.last_transaction,
            "upcomingEvent": self.upcoming_event,
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class PassStateUpdate:
    """
    Partial upsert. None means "leave the stored value alone".
    """
    serial_number: str
    updated_at: datetime
    balance: Optional[str] = None
    last_transaction: Optional[Dict[str, Any]] = None
    upcoming_event: Optional[Dict[str, Any]] = None
    ledger_block: Optional[int] = None
    ledger_log_index: Optional[int] = None

    def changed_fields(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.balance is not None:
            out["balance"] = self.balance
        if self.last_transaction is not None:
            out["lastTransaction"] = self.last_transaction
        if self.upcoming_event is not None:
            out["upcomingEvent"] = self.upcoming_event
        return out

    def sort_key(self) -> tuple:
        return (
            parse_ts(self.updated_at),
            -1 if self.ledger_block is None else self.ledger_block,
            -1 if self.ledger_log_index is None else self.ledger_log_index,
        )


class PassStateRepository(Protocol):
    async def upsert(self, update: PassStateUpdate) -> bool:
        """Returns True when the write was applied (not superseded by a newer row)."""
        ...

    async def get(self, serial_number: str) -> Optional[PassStateRecord]:
        ...

    async def get_many(self, serial_numbers: Sequence[str]) -> List[PassStateRecord]:
        ...


class SupabasePassStateRepository:
    def __init__(
        self,
        supabase_client: Any,
        *,
        table: str = "pass_states",
        upsert_fn: str = "upsert_pass_state",
    ) -> None:
        self.sb = supabase_client
        self.table = table
        self.upsert_fn = upsert_fn

    async def upsert(self, update: PassStateUpdate) -> bool:
        params = {
            "p_serial_number": update.serial_number,
            "p_account": account_from_serial(update.serial_number),
            "p_balance": update.balance,
            "p_last_transaction": update.last_transaction,
            "p_upcoming_event": update.upcoming_event,
            "p_updated_at": to_iso(update.updated_at),
            "p_ledger_block": update.ledger_block,
            "p_ledger_log_index": update.ledger_log_index,
        }
        try:
            r = await self.sb.rpc(self.upsert_fn, params).execute()
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceError(f"Pass state upsert failed ({update.serial_number}): {e}") from e

        data = getattr(r, "data", None)
        # rpc returning a scalar may come back as bare value or single-item list
        if isinstance(data, list):
            data = data[0] if data else False
        applied = bool(data)
        if not applied:
            log.debug(f"Pass state write for {update.serial_number} superseded by newer row")
        return applied

    async def get(self, serial_number: str) -> Optional[PassStateRecord]:
        rows = await self._select(lambda q: q.eq("serial_number", serial_number).limit(1))
        return rows[0] if rows else None

    async def get_many(self, serial_numbers: Sequence[str]) -> List[PassStateRecord]:
        serials = sorted(set(serial_numbers))
        if not serials:
            return []
        return await self._select(lambda q: q.in_("serial_number", serials))

    async def _select(self, refine) -> List[PassStateRecord]:
        try:
            r = await refine(self.sb.table(self.table).select("*")).execute()
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceError(f"Pass state query failed: {e}") from e
        rows = getattr(r, "data", None) or []
        return [self._row_to_record(row) for row in rows if isinstance(row, dict)]

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> PassStateRecord:
        return PassStateRecord(
            serial_number=str(row.get("serial_number")),
            balance=row.get("balance"),
            last_transaction=row.get("last_transaction") if isinstance(row.get("last_transaction"), dict) else None,
            upcoming_event=row.get("upcoming_event") if isinstance(row.get("upcoming_event"), dict) else None,
            updated_at=parse_ts(row.get("updated_at")),
            ledger_block=row.get("ledger_block"),
            ledger_log_index=row.get("ledger_log_index"),
        )
