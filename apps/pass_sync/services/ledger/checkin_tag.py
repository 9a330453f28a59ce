"""
Check-in tags live inside the free-text note of a zero-amount PAYMENT:

    EVENT_<eventId>_CHECKIN_<ticketNumber>

Everything that knows this convention is in this module.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

_TAG = re.compile(r"^EVENT_(?P<event>[^_\s]+)_CHECKIN_(?P<ticket>\d+)$")


def format_check_in_tag(event_id: str, ticket_number: int) -> str:
    if ticket_number < 1:
        raise ValueError("ticket_number starts at 1")
    return f"EVENT_{event_id}_CHECKIN_{int(ticket_number)}"


def parse_check_in_tag(note: Optional[str]) -> Optional[Tuple[str, int]]:
    """
    Returns (event_id, ticket_number) or None when the note is not a check-in tag.
    """
    if not note:
        return None
    m = _TAG.match(note.strip())
    if not m:
        return None
    return m.group("event"), int(m.group("ticket"))


def is_check_in_for(note: Optional[str], event_id: str) -> bool:
    parsed = parse_check_in_tag(note)
    return parsed is not None and parsed[0] == str(event_id)
