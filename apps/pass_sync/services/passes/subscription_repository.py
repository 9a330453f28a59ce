"""
Subscription Repository (Supabase/Postgres Adapter)
===================================================

One row per (device_id, pass_type_id, serial_number). Re-registration updates
push_address / last_updated in place; created_at is set once by the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from postgrest.exceptions import APIError

from apps.pass_sync.services.errors import PersistenceError
from apps.pass_sync.utils.clock import parse_ts, to_iso

log = logging.getLogger("pass_sync.subscriptions")

UNIQUE_KEY = "device_id,pass_type_id,serial_number"


@dataclass(frozen=True)
class SubscriptionRecord:
    device_id: str
    pass_type_id: str
    serial_number: str
    push_address: str
    created_at: Optional[datetime]
    last_updated: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "passTypeId": self.pass_type_id,
            "serialNumber": self.serial_number,
            "pushAddress": self.push_address,
            "createdAt": to_iso(self.created_at),
            "lastUpdated": to_iso(self.last_updated),
        }


class SubscriptionRepository(Protocol):
    async def register(
        self, device_id: str, pass_type_id: str, serial_number: str, push_address: str, now: datetime,
    ) -> bool:
        """Returns True when a new record was created, False when an existing one was updated."""
        ...

    async def unregister(self, device_id: str, pass_type_id: str, serial_number: str) -> bool:
        ...

    async def list_for_serial(self, serial_number: str) -> List[SubscriptionRecord]:
        ...

    async def list_for_device(self, device_id: str, pass_type_id: str) -> List[SubscriptionRecord]:
        ...

    async def list_all(self) -> List[SubscriptionRecord]:
        ...

    async def delete_stale(self, cutoff: datetime) -> int:
        """Delete every record with last_updated strictly before cutoff."""
        ...


class SupabaseSubscriptionRepository:
    PAGE_SIZE = 1000

    def __init__(self, supabase_client: Any, *, table: str = "pass_subscriptions") -> None:
        self.sb = supabase_client
        self.table = table

    async def register(
        self, device_id: str, pass_type_id: str, serial_number: str, push_address: str, now: datetime,
    ) -> bool:
        existing = await self._find(device_id, pass_type_id, serial_number)

        payload = {
            "device_id": device_id,
            "pass_type_id": pass_type_id,
            "serial_number": serial_number,
            "push_address": push_address,
            "last_updated": to_iso(now),
        }
        await self._run(
            self.sb.table(self.table).upsert(payload, on_conflict=UNIQUE_KEY),
            f"register {device_id}/{serial_number}",
        )
        return existing is None

    async def unregister(self, device_id: str, pass_type_id: str, serial_number: str) -> bool:
        r = await self._run(
            self.sb.table(self.table)
            .delete()
            .eq("device_id", device_id)
            .eq("pass_type_id", pass_type_id)
            .eq("serial_number", serial_number),
            f"unregister {device_id}/{serial_number}",
        )
        return bool(getattr(r, "data", None))

    async def list_for_serial(self, serial_number: str) -> List[SubscriptionRecord]:
        r = await self._run(
            self.sb.table(self.table).select("*").eq("serial_number", serial_number),
            f"list serial {serial_number}",
        )
        return self._rows(r)

    async def list_for_device(self, device_id: str, pass_type_id: str) -> List[SubscriptionRecord]:
        r = await self._run(
            self.sb.table(self.table)
            .select("*")
            .eq("device_id", device_id)
            .eq("pass_type_id", pass_type_id),
            f"list device {device_id}",
        )
        return self._rows(r)

    async def list_all(self) -> List[SubscriptionRecord]:
        out: List[SubscriptionRecord] = []
        start = 0
        while True:
            r = await self._run(
                self.sb.table(self.table)
                .select("*")
                .order("serial_number")
                .range(start, start + self.PAGE_SIZE - 1),
                "list all",
            )
            page = self._rows(r)
            out.extend(page)
            if len(page) < self.PAGE_SIZE:
                return out
            start += self.PAGE_SIZE

    async def delete_stale(self, cutoff: datetime) -> int:
        r = await self._run(
            self.sb.table(self.table).delete().lt("last_updated", to_iso(cutoff)),
            "delete stale",
        )
        return len(getattr(r, "data", None) or [])

    # -----------------------------
    # Helpers
    # -----------------------------
    async def _find(self, device_id: str, pass_type_id: str, serial_number: str) -> Optional[SubscriptionRecord]:
        r = await self._run(
            self.sb.table(self.table)
            .select("*")
            .eq("device_id", device_id)
            .eq("pass_type_id", pass_type_id)
            .eq("serial_number", serial_number)
            .limit(1),
            f"find {device_id}/{serial_number}",
        )
        rows = self._rows(r)
        return rows[0] if rows else None

    @staticmethod
    async def _run(query: Any, label: str) -> Any:
        try:
            return await query.execute()
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceError(f"Subscription store {label} failed: {e}") from e

    def _rows(self, r: Any) -> List[SubscriptionRecord]:
        rows = getattr(r, "data", None) or []
        return [self._row_to_record(row) for row in rows if isinstance(row, dict)]

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> SubscriptionRecord:
        return SubscriptionRecord(
            device_id=str(row.get("device_id")),
            pass_type_id=str(row.get("pass_type_id")),
            serial_number=str(row.get("serial_number")),
            push_address=str(row.get("push_address")),
            created_at=parse_ts(row.get("created_at")),
            last_updated=parse_ts(row.get("last_updated")),
        )
