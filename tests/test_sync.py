"""Tests for remote-or-local refreshes and the offline ledger."""
import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from newdoli.core.auth import AuthStatus
from newdoli.core.clock import utcnow
from newdoli.core.context import AppContext


@pytest.mark.asyncio
async def test_online_refresh_replaces_the_mirror(logged_in: AppContext, dolibarr) -> None:
    await logged_in.store.add("third_parties", {"id": 99, "name": "Stale Ltd"})

    outcome = await logged_in.sync.refresh("third_parties")

    assert outcome.source == "remote"
    assert outcome.is_online is True
    assert outcome.error is None
    assert outcome.last_sync is not None
    assert logged_in.sync.last_sync == outcome.last_sync

    mirror = await logged_in.store.list("third_parties")
    assert [r.id for r in mirror] == [p["id"] for p in dolibarr.third_parties]
    assert [r.name for r in outcome.items] == ["Boulangerie Dupont", "Soieries Lyonnaises"]


@pytest.mark.asyncio
async def test_products_mirror_carries_status_labels(logged_in: AppContext) -> None:
    outcome = await logged_in.sync.refresh("products")

    assert [(p.ref, p.status_label) for p in outcome.items] == [("BREAD-01", "Active"), ("SRV-DELIV", "Draft")]
    assert outcome.items[0].last_modified is not None


@pytest.mark.asyncio
async def test_offline_refresh_serves_the_mirror_unchanged(logged_in: AppContext, dolibarr) -> None:
    await logged_in.sync.refresh("third_parties")
    before = [(r.id, r.name) for r in await logged_in.store.list("third_parties")]
    dolibarr.calls.clear()

    logged_in.connectivity.set_online(False)
    outcome = await logged_in.sync.refresh("third_parties")

    assert outcome.source == "local"
    assert outcome.is_online is False
    assert outcome.error is None
    assert logged_in.sync.error is None
    assert [(r.id, r.name) for r in outcome.items] == before
    assert [(r.id, r.name) for r in await logged_in.store.list("third_parties")] == before
    assert dolibarr.calls == []


@pytest.mark.asyncio
async def test_offline_with_no_data_yet_is_an_empty_result(ctx: AppContext) -> None:
    ctx.connectivity.set_online(False)

    outcome = await ctx.sync.refresh("products")

    assert outcome.items == []
    assert outcome.error is None


@pytest.mark.asyncio
async def test_missing_credential_falls_back_with_error(ctx: AppContext) -> None:
    await ctx.store.add("products", {"id": 1, "ref": "LOCAL"})

    outcome = await ctx.sync.refresh("products")

    assert outcome.source == "local"
    assert outcome.is_online is True
    assert outcome.error == "No Dolibarr token available"
    assert [p.ref for p in outcome.items] == ["LOCAL"]


@pytest.mark.asyncio
async def test_remote_failure_falls_back_then_recovers(logged_in: AppContext, dolibarr) -> None:
    await logged_in.sync.refresh("products")
    dolibarr.list_status = 500

    failed = await logged_in.sync.refresh("products")

    assert failed.source == "local"
    assert "HTTP 500" in failed.error
    assert logged_in.sync.error == failed.error
    assert logged_in.sync.status("products").error == failed.error
    assert len(failed.items) == 2

    dolibarr.list_status = None
    recovered = await logged_in.sync.refresh("products")

    assert recovered.error is None
    assert logged_in.sync.error is None


@pytest.mark.asyncio
async def test_rejected_credential_tears_down_the_session(logged_in: AppContext, dolibarr) -> None:
    dolibarr.tokens.clear()

    outcome = await logged_in.sync.refresh("third_parties")

    assert outcome.source == "local"
    assert outcome.error == "token invalid"
    assert logged_in.auth.status is AuthStatus.LOGGED_OUT
    assert await logged_in.auth.credential() is None


@pytest.mark.asyncio
async def test_users_and_groups_are_upserted(logged_in: AppContext) -> None:
    await logged_in.store.add("users", {"id": 42, "login": "former-employee"})

    users = await logged_in.sync.refresh("users")
    groups = await logged_in.sync.refresh("groups")

    assert [u.login for u in users.items] == ["toto", "admin", "former-employee"]
    assert [g.name for g in groups.items] == ["Sales", "Stock"]


@pytest.mark.asyncio
async def test_concurrent_refreshes_leave_a_consistent_mirror(logged_in: AppContext, dolibarr) -> None:
    outcomes = await asyncio.gather(*(logged_in.sync.refresh("third_parties") for _ in range(3)))

    assert all(o.error is None for o in outcomes)
    mirror = await logged_in.store.list("third_parties")
    assert [r.id for r in mirror] == [1, 2]
    assert dolibarr.calls.count("third_parties") == 3


@pytest.mark.asyncio
async def test_refresh_all(logged_in: AppContext) -> None:
    outcomes = await logged_in.sync.refresh_all()

    assert set(outcomes) == {"users", "groups", "third_parties", "products"}
    assert all(o.source == "remote" for o in outcomes.values())


@pytest.mark.asyncio
async def test_unknown_entity_type(ctx: AppContext) -> None:
    with pytest.raises(KeyError):
        await ctx.sync.refresh("invoices")


@pytest.mark.asyncio
async def test_offline_changes_are_recorded_in_the_ledger(ctx: AppContext) -> None:
    assert await ctx.sync.record_local_change("third_parties", 1, "update", {"town": "Lyon"}) is None

    ctx.connectivity.set_online(False)
    first = await ctx.sync.record_local_change("third_parties", 1, "update", {"town": "Lyon"})
    second = await ctx.sync.record_local_change("products", 100, "delete")

    status = await ctx.sync.sync_status()
    assert status["pending"] == 2
    assert status["last_pending_at"] == second.created_at
    assert status["is_online"] is False

    assert await ctx.sync.mark_change_synced(first.id) is True
    assert [e.id for e in await ctx.sync.pending_changes()] == [second.id]


@pytest.mark.asyncio
async def test_listing_with_repeated_ids_falls_back_to_the_mirror(logged_in: AppContext, dolibarr) -> None:
    await logged_in.sync.refresh("third_parties")
    dolibarr.list_payload = [{"id": 1, "name": "A"}, {"id": 1, "name": "B"}]

    outcome = await logged_in.sync.refresh("third_parties")

    assert outcome.source == "local"
    assert "more than once" in outcome.error
    assert logged_in.sync.error == outcome.error
    assert [r.name for r in outcome.items] == ["Boulangerie Dupont", "Soieries Lyonnaises"]


@pytest.mark.asyncio
async def test_failed_mirror_write_falls_back_to_the_mirror(logged_in: AppContext, monkeypatch) -> None:
    await logged_in.store.add("products", {"id": 1, "ref": "LOCAL"})

    async def locked(entity_type, rows):
        raise OperationalError("DELETE FROM products", {}, Exception("database is locked"))

    monkeypatch.setattr(logged_in.store, "replace_all", locked)

    outcome = await logged_in.sync.refresh("products")

    assert outcome.source == "local"
    assert "database is locked" in outcome.error
    assert [p.ref for p in outcome.items] == ["LOCAL"]
    assert logged_in.auth.is_authenticated is True


@pytest.mark.asyncio
async def test_timestamps_share_one_utc_clock(logged_in: AppContext) -> None:
    before = utcnow()

    outcome = await logged_in.sync.refresh("groups")
    logged_in.connectivity.set_online(False)
    entry = await logged_in.sync.record_local_change("groups", 10, "update", {"name": "Ventes"})
    user = await logged_in.store.get("users", 1)

    after = utcnow()
    assert before <= outcome.last_sync <= after
    assert before <= logged_in.connectivity.last_check <= after
    assert before <= entry.created_at <= after
    assert user.last_login <= after
    assert outcome.last_sync.tzinfo is None
