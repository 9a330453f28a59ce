import httpx
import pytest
from postgrest.exceptions import APIError

from apps.pass_sync.services.errors import PersistenceError
from apps.pass_sync.services.passes.pass_state_repository import (
    PassStateUpdate,
    SupabasePassStateRepository,
)
from apps.pass_sync.services.passes.subscription_repository import SupabaseSubscriptionRepository

from conftest import T0, FakeSupabase

PASS_TYPE = "pass.com.wavex.gold"


def sub_row(device="dev-1", serial="TOKEN-42", push="push-1", last_updated="2026-03-01T12:00:00+00:00"):
    return {
        "device_id": device,
        "pass_type_id": PASS_TYPE,
        "serial_number": serial,
        "push_address": push,
        "created_at": "2026-02-01T00:00:00Z",
        "last_updated": last_updated,
    }


class TestSubscriptionRepository:
    @pytest.mark.asyncio
    async def test_first_registration_is_created(self):
        sb = FakeSupabase(responses=[[], [sub_row()]])
        repo = SupabaseSubscriptionRepository(sb)

        created = await repo.register("dev-1", PASS_TYPE, "TOKEN-42", "push-1", T0)

        assert created is True
        target, ops = sb.calls[1]
        assert target == "pass_subscriptions"
        name, args, kwargs = ops[0]
        assert name == "upsert"
        assert args[0]["last_updated"] == T0.isoformat()
        assert "created_at" not in args[0]
        assert kwargs == {"on_conflict": "device_id,pass_type_id,serial_number"}

    @pytest.mark.asyncio
    async def test_reregistration_updates_in_place(self):
        sb = FakeSupabase(responses=[[sub_row()], [sub_row(push="push-2")]])
        repo = SupabaseSubscriptionRepository(sb)

        created = await repo.register("dev-1", PASS_TYPE, "TOKEN-42", "push-2", T0)

        assert created is False

    @pytest.mark.asyncio
    async def test_rows_are_parsed(self):
        sb = FakeSupabase(responses=[[sub_row(), sub_row(device="dev-2")]])
        repo = SupabaseSubscriptionRepository(sb)

        records = await repo.list_for_serial("TOKEN-42")

        assert [r.device_id for r in records] == ["dev-1", "dev-2"]
        assert records[0].last_updated == T0
        assert records[0].to_dict()["pushAddress"] == "push-1"

    @pytest.mark.asyncio
    async def test_delete_stale_uses_strict_cutoff(self):
        sb = FakeSupabase(responses=[[sub_row(), sub_row(device="dev-2")]])
        repo = SupabaseSubscriptionRepository(sb)

        deleted = await repo.delete_stale(T0)

        assert deleted == 2
        _, ops = sb.calls[0]
        assert ("delete", (), {}) in ops
        assert ("lt", ("last_updated", T0.isoformat()), {}) in ops

    @pytest.mark.asyncio
    async def test_list_all_pages_through_results(self):
        repo = SupabaseSubscriptionRepository(FakeSupabase())
        repo.PAGE_SIZE = 2
        repo.sb.responses = [[sub_row(device="a"), sub_row(device="b")], [sub_row(device="c")]]

        records = await repo.list_all()

        assert [r.device_id for r in records] == ["a", "b", "c"]
        ranges = [op for _, ops in repo.sb.calls for op in ops if op[0] == "range"]
        assert [r[1] for r in ranges] == [(0, 1), (2, 3)]

    @pytest.mark.asyncio
    async def test_store_errors_become_persistence_errors(self):
        sb = FakeSupabase(responses=[httpx.ConnectError("refused")])
        repo = SupabaseSubscriptionRepository(sb)

        with pytest.raises(PersistenceError):
            await repo.list_for_device("dev-1", PASS_TYPE)


class TestPassStateRepository:
    @pytest.mark.asyncio
    async def test_upsert_goes_through_compare_function(self):
        sb = FakeSupabase(responses=[True])
        repo = SupabasePassStateRepository(sb)
        update = PassStateUpdate(
            serial_number="TOKEN-42", updated_at=T0, balance="1000", ledger_block=10, ledger_log_index=2,
        )

        applied = await repo.upsert(update)

        assert applied is True
        target, ops = sb.calls[0]
        assert target == "rpc:upsert_pass_state"
        params = ops[0][1][1]
        assert params["p_account"] == "42"
        assert params["p_balance"] == "1000"
        assert params["p_last_transaction"] is None
        assert params["p_updated_at"] == T0.isoformat()
        assert (params["p_ledger_block"], params["p_ledger_log_index"]) == (10, 2)

    @pytest.mark.asyncio
    async def test_superseded_write_reports_false(self):
        repo = SupabasePassStateRepository(FakeSupabase(responses=[[False]]))
        assert await repo.upsert(PassStateUpdate(serial_number="TOKEN-42", updated_at=T0, balance="1")) is False

    @pytest.mark.asyncio
    async def test_api_error_becomes_persistence_error(self):
        sb = FakeSupabase(responses=[APIError({"message": "function missing", "code": "42883"})])
        repo = SupabasePassStateRepository(sb)

        with pytest.raises(PersistenceError):
            await repo.upsert(PassStateUpdate(serial_number="TOKEN-42", updated_at=T0, balance="1"))

    @pytest.mark.asyncio
    async def test_get_parses_row(self):
        row = {
            "serial_number": "TOKEN-42",
            "balance": "1000",
            "last_transaction": {"amount": "5", "kind": "TOPUP", "timestamp": "2026-03-01T12:00:00+00:00"},
            "upcoming_event": None,
            "updated_at": "2026-03-01T12:00:00Z",
            "ledger_block": 10,
            "ledger_log_index": 0,
        }
        repo = SupabasePassStateRepository(FakeSupabase(responses=[[row]]))

        record = await repo.get("TOKEN-42")

        assert record.balance == "1000"
        assert record.account == "42"
        assert record.updated_at == T0
        assert record.upcoming_event is None

    @pytest.mark.asyncio
    async def test_get_many_skips_empty_query(self):
        sb = FakeSupabase()
        repo = SupabasePassStateRepository(sb)

        assert await repo.get_many([]) == []
        assert sb.calls == []


class TestPassStateUpdate:
    def test_changed_fields_only_lists_provided_values(self):
        update = PassStateUpdate(serial_number="TOKEN-42", updated_at=T0, balance="3")
        assert update.changed_fields() == {"balance": "3"}

    def test_ordering_prefers_time_then_position(self):
        older = PassStateUpdate(serial_number="TOKEN-42", updated_at=T0, ledger_block=9, ledger_log_index=5)
        newer = PassStateUpdate(serial_number="TOKEN-42", updated_at=T0, ledger_block=10, ledger_log_index=0)
        assert older.sort_key() < newer.sort_key()
