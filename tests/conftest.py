"""Shared fakes for the pass sync tests.

Everything here is in-memory and deterministic: a scripted ledger, both
stores, a recording push sender and a Supabase query-builder double that
records the chained calls each adapter makes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.errors import (
    LedgerUnavailableError,
    NotFoundError,
    PersistenceError,
    PushDeliveryError,
)
from apps.pass_sync.services.ledger.checkin_tag import format_check_in_tag
from apps.pass_sync.services.ledger.models import (
    CheckInConfirmation,
    EventDetails,
    PurchaseRecord,
    TransactionKind,
    TransactionRecord,
)
from apps.pass_sync.services.passes.pass_builder import PassSigner
from apps.pass_sync.services.passes.pass_state_repository import PassStateRecord
from apps.pass_sync.services.passes.subscription_repository import SubscriptionRecord

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class FakeLedger:
    """Scripted ledger. stream_batches: one list per subscribe call; an
    Exception inside a batch is raised at that point of the stream."""

    def __init__(self):
        self.balances: Dict[str, Decimal] = {}
        self.events: Dict[str, EventDetails] = {}
        self.purchases: List[PurchaseRecord] = []
        self.transactions: Dict[str, List[TransactionRecord]] = {}
        self.operators = set()
        self.submitted: List[tuple] = []
        self.stream_batches: List[list] = []
        self.subscribe_calls: List[Optional[int]] = []
        self.unavailable_balances = set()
        self.ping_error: Optional[Exception] = None
        self.get_event_calls = 0
        self.get_event_errors: List[Exception] = []

    # setup helpers
    def add_account(self, account: str, balance: Any = "0") -> None:
        self.balances[account] = Decimal(str(balance))
        self.transactions.setdefault(account, [])

    def add_event(self, event_id: str, name: str = "Gala", active: bool = True) -> None:
        self.events[event_id] = EventDetails(event_id=event_id, name=name, active=active)

    def add_purchases(self, account: str, event_id: str, count: int = 1) -> None:
        for _ in range(count):
            self.purchases.append(PurchaseRecord(account=account, event_id=event_id))

    def add_transaction(self, account: str, amount: Any, kind: TransactionKind, note: str = "") -> None:
        txs = self.transactions.setdefault(account, [])
        txs.append(TransactionRecord(
            index=len(txs),
            timestamp=T0,
            counterparty="0xmerchant",
            amount=Decimal(str(amount)),
            kind=kind,
            note=note,
        ))

    def add_check_in(self, account: str, event_id: str, ticket_number: int) -> None:
        self.add_transaction(account, 0, TransactionKind.PAYMENT, format_check_in_tag(event_id, ticket_number))

    # LedgerClient
    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def account_exists(self, account: str) -> bool:
        return account in self.balances

    async def get_balance(self, account: str) -> Decimal:
        if account in self.unavailable_balances:
            raise LedgerUnavailableError(f"ledger timeout reading {account}")
        if account not in self.balances:
            raise NotFoundError(f"Unknown account: {account}")
        return self.balances[account]

    async def get_event(self, event_id: str) -> EventDetails:
        self.get_event_calls += 1
        if self.get_event_errors:
            raise self.get_event_errors.pop(0)
        if event_id not in self.events:
            raise NotFoundError(f"Unknown event: {event_id}")
        return self.events[event_id]

    async def query_transactions(self, account: str, limit: Optional[int] = None) -> List[TransactionRecord]:
        txs = self.transactions.get(account, [])
        return list(txs[-limit:]) if limit else list(txs)

    async def query_purchases(self, account: str, event_id: Optional[str] = None) -> List[PurchaseRecord]:
        return [
            p for p in self.purchases
            if p.account == account and (event_id is None or p.event_id == event_id)
        ]

    async def is_authorized_operator(self, operator: str) -> bool:
        return operator in self.operators

    async def submit_check_in(self, account: str, event_id: str, ticket_number: int, operator: str) -> CheckInConfirmation:
        self.submitted.append((account, event_id, ticket_number, operator))
        self.add_check_in(account, event_id, ticket_number)
        n = len(self.submitted)
        return CheckInConfirmation(tx_hash=f"0x{n:064x}", block_number=1000 + n)

    async def subscribe_events(self, from_block: Optional[int] = None):
        self.subscribe_calls.append(from_block)
        if not self.stream_batches:
            return
        for item in self.stream_batches.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class InMemoryPassStates:
    """Same merge + newest-wins rule as the upsert_pass_state SQL function."""

    def __init__(self):
        self.rows: Dict[str, PassStateRecord] = {}
        self._keys: Dict[str, tuple] = {}
        self.upserts: list = []
        self.fail_next = 0

    async def upsert(self, update) -> bool:
        self.upserts.append(update)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise PersistenceError("pass state store unavailable")

        key = update.sort_key()
        current = self.rows.get(update.serial_number)
        if current is not None and key < self._keys[update.serial_number]:
            return False

        self.rows[update.serial_number] = PassStateRecord(
            serial_number=update.serial_number,
            balance=update.balance if update.balance is not None else (current.balance if current else None),
            last_transaction=update.last_transaction if update.last_transaction is not None
            else (current.last_transaction if current else None),
            upcoming_event=update.upcoming_event if update.upcoming_event is not None
            else (current.upcoming_event if current else None),
            updated_at=update.updated_at,
            ledger_block=update.ledger_block if update.ledger_block is not None
            else (current.ledger_block if current else None),
            ledger_log_index=update.ledger_log_index if update.ledger_log_index is not None
            else (current.ledger_log_index if current else None),
        )
        self._keys[update.serial_number] = key
        return True

    async def get(self, serial_number: str) -> Optional[PassStateRecord]:
        return self.rows.get(serial_number)

    async def get_many(self, serial_numbers) -> List[PassStateRecord]:
        return [self.rows[s] for s in sorted(set(serial_numbers)) if s in self.rows]


class InMemorySubscriptions:
    def __init__(self):
        self.rows: Dict[tuple, SubscriptionRecord] = {}
        self.fail_list_all = False

    async def register(self, device_id, pass_type_id, serial_number, push_address, now) -> bool:
        key = (device_id, pass_type_id, serial_number)
        existing = self.rows.get(key)
        self.rows[key] = SubscriptionRecord(
            device_id=device_id,
            pass_type_id=pass_type_id,
            serial_number=serial_number,
            push_address=push_address,
            created_at=existing.created_at if existing else now,
            last_updated=now,
        )
        return existing is None

    async def unregister(self, device_id, pass_type_id, serial_number) -> bool:
        return self.rows.pop((device_id, pass_type_id, serial_number), None) is not None

    async def list_for_serial(self, serial_number) -> List[SubscriptionRecord]:
        return [r for r in self.rows.values() if r.serial_number == serial_number]

    async def list_for_device(self, device_id, pass_type_id) -> List[SubscriptionRecord]:
        return [
            r for r in self.rows.values()
            if r.device_id == device_id and r.pass_type_id == pass_type_id
        ]

    async def list_all(self) -> List[SubscriptionRecord]:
        if self.fail_list_all:
            raise PersistenceError("subscription store unavailable")
        return list(self.rows.values())

    async def delete_stale(self, cutoff) -> int:
        stale = [k for k, r in self.rows.items() if r.last_updated < cutoff]
        for k in stale:
            del self.rows[k]
        return len(stale)


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------

class RecordingPushSender:
    def __init__(self, failing: Optional[Dict[str, str]] = None):
        self.sent: List[tuple] = []
        self.failing = dict(failing or {})
        self.closed = False

    async def send(self, push_address, pass_type_id, fields) -> None:
        self.sent.append((push_address, pass_type_id, dict(fields)))
        if push_address in self.failing:
            raise PushDeliveryError(self.failing[push_address], status=410)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Supabase query builder double
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, client: "FakeSupabase", target: str):
        self.client = client
        self.target = target
        self.ops: List[tuple] = []

    def __getattr__(self, name):
        def op(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return op

    async def execute(self):
        self.client.calls.append((self.target, self.ops))
        outcome = self.client.responses.pop(0) if self.client.responses else []
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


class FakeSupabase:
    """responses: consumed one per execute(); an Exception is raised instead."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: List[tuple] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, fn: str, params: Dict[str, Any]) -> FakeQuery:
        q = FakeQuery(self, f"rpc:{fn}")
        q.ops.append(("rpc", (fn, params), {}))
        return q


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def pass_states():
    return InMemoryPassStates()


@pytest.fixture
def subscriptions():
    return InMemorySubscriptions()


@pytest.fixture
def push():
    return RecordingPushSender()


@pytest.fixture
def settings():
    return Settings(
        pass_auth_secret=None,
        internal_token=None,
        ledger_consumer_enabled=False,
        reconciliation_enabled=False,
    )


def self_signed(common_name: str):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(T0 - timedelta(days=1))
        .not_valid_after(T0 + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture(scope="session")
def pass_signer():
    cert, key = self_signed("Pass Type ID: pass.com.wavex.gold")
    wwdr, _ = self_signed("Apple WWDR")
    return PassSigner(certificate=cert, private_key=key, wwdr=wwdr)
