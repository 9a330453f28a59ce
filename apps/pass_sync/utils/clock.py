from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """ISO string / datetime from the store -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return parse_ts(value).isoformat()


def to_update_tag(value: datetime) -> str:
    """`lastUpdated` tag for Wallet: Z suffix, nothing that needs URL encoding."""
    return parse_ts(value).isoformat().replace("+00:00", "Z")


def parse_update_tag(value: Optional[str]) -> Optional[datetime]:
    # an unencoded "+00:00" reaches us as " 00:00"
    if value is None:
        return None
    return parse_ts(value.strip().replace(" ", "+"))
