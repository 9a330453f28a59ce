import logging
from decimal import Decimal

import pytest

from apps.pass_sync.services.access.access_engine import (
    AccessEngine,
    count_used,
    derive_from_records,
)
from apps.pass_sync.services.errors import (
    InsufficientAccessError,
    NoRemainingTicketsError,
    NotFoundError,
    UnauthorizedOperatorError,
)
from apps.pass_sync.services.ledger.models import TransactionKind

OPERATOR = "0xoperator"


@pytest.fixture
def engine(ledger, clock):
    ledger.add_account("42", "1000")
    ledger.add_event("7", name="Summer Gala")
    ledger.operators.add(OPERATOR)
    return AccessEngine(ledger, max_history_depth=100, clock=clock)


class TestDerivation:
    def test_counts_only_tagged_zero_amount_payments(self, ledger):
        ledger.add_account("42")
        ledger.add_check_in("42", "7", 1)
        # non-zero payment carrying a check-in tag
        ledger.add_transaction("42", "5", TransactionKind.PAYMENT, "EVENT_7_CHECKIN_2")
        # zero top-up carrying a check-in tag
        ledger.add_transaction("42", "0", TransactionKind.TOPUP, "EVENT_7_CHECKIN_3")
        # other event
        ledger.add_check_in("42", "70", 1)

        assert count_used(ledger.transactions["42"], "7") == 1

    def test_used_never_exceeds_purchased(self, ledger):
        ledger.add_account("42")
        ledger.add_purchases("42", "7", 1)
        ledger.add_check_in("42", "7", 1)
        ledger.add_check_in("42", "7", 2)

        state = derive_from_records("42", "7", ledger.purchases, ledger.transactions["42"])
        assert (state.purchased, state.used, state.remaining, state.can_check_in) == (1, 1, 0, False)

    def test_no_purchases(self, ledger):
        state = derive_from_records("42", "7", [], [])
        assert state.remaining == 0
        assert state.can_check_in is False


class TestDeriveAccessState:
    @pytest.mark.asyncio
    async def test_one_of_two_tickets_used(self, engine, ledger):
        ledger.add_purchases("42", "7", 2)
        ledger.add_check_in("42", "7", 1)

        state = await engine.derive_access_state("42", "7")

        assert state.to_dict() == {
            "eventId": "7",
            "account": "42",
            "purchased": 2,
            "used": 1,
            "remaining": 1,
            "canCheckIn": True,
        }

    @pytest.mark.asyncio
    async def test_is_idempotent(self, engine, ledger):
        ledger.add_purchases("42", "7", 3)
        ledger.add_check_in("42", "7", 1)

        first = await engine.derive_access_state("42", "7")
        second = await engine.derive_access_state("42", "7")
        assert first == second

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine):
        with pytest.raises(NotFoundError):
            await engine.derive_access_state("999", "7")

    @pytest.mark.asyncio
    async def test_unknown_event(self, engine):
        with pytest.raises(NotFoundError):
            await engine.derive_access_state("42", "8")

    @pytest.mark.asyncio
    async def test_history_window_is_bounded(self, ledger, clock):
        ledger.add_account("42")
        ledger.add_event("7")
        ledger.add_purchases("42", "7", 2)
        ledger.add_check_in("42", "7", 1)
        for _ in range(5):
            ledger.add_transaction("42", "1", TransactionKind.PAYMENT, "coffee")

        engine = AccessEngine(ledger, max_history_depth=3, clock=clock)
        state = await engine.derive_access_state("42", "7")
        assert state.used == 0

    @pytest.mark.asyncio
    async def test_duplicate_ticket_numbers_are_logged(self, engine, ledger, caplog):
        ledger.add_purchases("42", "7", 3)
        ledger.add_check_in("42", "7", 1)
        ledger.add_check_in("42", "7", 1)

        with caplog.at_level(logging.WARNING, logger="pass_sync.access"):
            state = await engine.derive_access_state("42", "7")

        assert state.used == 2
        assert "Duplicate check-in ticket numbers [1]" in caplog.text


class TestAttemptCheckIn:
    @pytest.mark.asyncio
    async def test_second_ticket(self, engine, ledger, clock):
        ledger.add_purchases("42", "7", 2)
        ledger.add_check_in("42", "7", 1)

        result = await engine.attempt_check_in("42", "7", OPERATOR)

        assert ledger.submitted == [("42", "7", 2, OPERATOR)]
        assert ledger.transactions["42"][-1].note == "EVENT_7_CHECKIN_2"
        assert ledger.transactions["42"][-1].amount == Decimal(0)
        assert result.ticket_number == 2
        assert result.total_tickets == 2
        assert result.remaining_tickets == 0
        assert result.timestamp == clock.now

        after = await engine.derive_access_state("42", "7")
        assert (after.used, after.remaining, after.can_check_in) == (2, 0, False)

    @pytest.mark.asyncio
    async def test_three_purchased_one_used(self, engine, ledger):
        ledger.add_purchases("42", "7", 3)
        ledger.add_check_in("42", "7", 1)

        state = await engine.derive_access_state("42", "7")
        assert (state.remaining, state.can_check_in) == (2, True)

        result = await engine.attempt_check_in("42", "7", OPERATOR)
        assert result.ticket_number == 2
        assert result.remaining_tickets == 1

    @pytest.mark.asyncio
    async def test_no_remaining_tickets(self, engine, ledger):
        ledger.add_purchases("42", "7", 1)
        ledger.add_check_in("42", "7", 1)

        with pytest.raises(NoRemainingTicketsError) as exc:
            await engine.attempt_check_in("42", "7", OPERATOR)

        assert exc.value.details["purchased"] == 1
        assert exc.value.details["used"] == 1
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_no_purchase(self, engine, ledger):
        with pytest.raises(InsufficientAccessError):
            await engine.attempt_check_in("42", "7", OPERATOR)
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_unauthorized_operator(self, engine, ledger):
        ledger.add_purchases("42", "7", 1)

        with pytest.raises(UnauthorizedOperatorError):
            await engine.attempt_check_in("42", "7", "0xstranger")
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_inactive_event(self, engine, ledger):
        ledger.add_event("9", active=False)
        ledger.add_purchases("42", "9", 1)

        with pytest.raises(NotFoundError):
            await engine.attempt_check_in("42", "9", OPERATOR)
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_never_writes_more_than_purchased(self, engine, ledger):
        ledger.add_purchases("42", "7", 2)

        await engine.attempt_check_in("42", "7", OPERATOR)
        await engine.attempt_check_in("42", "7", OPERATOR)
        with pytest.raises(NoRemainingTicketsError):
            await engine.attempt_check_in("42", "7", OPERATOR)

        assert [s[2] for s in ledger.submitted] == [1, 2]

    @pytest.mark.asyncio
    async def test_event_is_read_once_per_check_in(self, engine, ledger):
        ledger.add_purchases("42", "7", 1)

        await engine.attempt_check_in("42", "7", OPERATOR)

        assert ledger.get_event_calls == 1
