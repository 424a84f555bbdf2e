"""
Tests for the connection registry: linking, and the sync claim protocol.
"""
from datetime import datetime, timedelta, timezone

import pytest

from ledgersync.core.security import decrypt_value
from ledgersync.models.connection import (
    ERROR_CODE_MAX_LEN,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_SYNCED,
    STATUS_SYNCING,
    PlaidConnection,
)
from ledgersync.services.errors import NoActiveConnections, SyncConflict, ValidationError
from ledgersync.services.registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry(claim_ttl_seconds=60)


async def reload(db, conn_id):
    return await db.get(PlaidConnection, conn_id, populate_existing=True)


# ── register ─────────────────────────────────────────────────────────────────

class TestRegister:
    async def test_new_item_starts_pending(self, db, user, registry):
        conn = await registry.register(
            db, user.id, "item-1", "access-sandbox-1",
            institution_id="ins_109508", institution_name="First Platypus Bank",
        )
        await db.commit()

        conn = await reload(db, conn.id)
        assert conn.sync_status == STATUS_PENDING
        assert conn.cursor is None
        assert conn.is_active is True
        assert conn.institution_name == "First Platypus Bank"

    async def test_access_token_is_encrypted_at_rest(self, db, user, registry):
        conn = await registry.register(db, user.id, "item-1", "access-sandbox-1")
        assert conn.encrypted_access_token != "access-sandbox-1"
        assert decrypt_value(conn.encrypted_access_token) == "access-sandbox-1"

    async def test_relink_refreshes_credential_and_keeps_cursor(self, db, user, registry, connection_factory):
        existing = await connection_factory(
            user, item_id="item-1", cursor="c-5", sync_status=STATUS_ERROR,
            error_code="ITEM_LOGIN_REQUIRED: login changed", is_active=False,
        )

        conn = await registry.register(db, user.id, "item-1", "access-sandbox-2")
        await db.commit()

        assert conn.id == existing.id
        conn = await reload(db, conn.id)
        assert decrypt_value(conn.encrypted_access_token) == "access-sandbox-2"
        assert conn.cursor == "c-5"
        assert conn.sync_status == STATUS_PENDING
        assert conn.error_code is None
        assert conn.is_active is True

    async def test_accounts_stored_and_replaced_on_relink(self, db, user, registry):
        checking = {"id": "acc-1", "name": "Plaid Checking", "mask": "0000", "type": "depository", "subtype": "checking"}
        savings = {"id": "acc-2", "name": "Plaid Saving", "mask": "1111", "type": "depository", "subtype": "savings"}

        conn = await registry.register(db, user.id, "item-1", "access-sandbox-1", accounts=[checking])
        await db.commit()
        assert (await reload(db, conn.id)).accounts == [checking]

        # A relink without account metadata keeps what was stored
        await registry.register(db, user.id, "item-1", "access-sandbox-2")
        await db.commit()
        assert (await reload(db, conn.id)).accounts == [checking]

        await registry.register(db, user.id, "item-1", "access-sandbox-3", accounts=[checking, savings])
        await db.commit()
        assert (await reload(db, conn.id)).accounts == [checking, savings]

    async def test_item_of_another_user_is_rejected(self, db, user, other_user, registry, connection_factory):
        await connection_factory(other_user, item_id="item-1")
        with pytest.raises(ValidationError):
            await registry.register(db, user.id, "item-1", "access-sandbox-1")


# ── queries / deactivate ─────────────────────────────────────────────────────

class TestQueries:
    async def test_active_for_user_hides_inactive_and_foreign(
        self, db, user, other_user, registry, connection_factory
    ):
        mine = await connection_factory(user, item_id="item-a")
        await connection_factory(user, item_id="item-b", is_active=False)
        await connection_factory(other_user, item_id="item-c")

        assert [c.id for c in await registry.active_for_user(db, user.id)] == [mine.id]

    async def test_active_for_user_by_id(self, db, user, other_user, registry, connection_factory):
        mine = await connection_factory(user, item_id="item-a")
        theirs = await connection_factory(other_user, item_id="item-b")

        assert [c.id for c in await registry.active_for_user(db, user.id, mine.id)] == [mine.id]
        assert await registry.active_for_user(db, user.id, theirs.id) == []

    async def test_list_for_user_includes_inactive(self, db, user, registry, connection_factory):
        await connection_factory(user, item_id="item-a")
        await connection_factory(user, item_id="item-b", is_active=False)
        assert len(await registry.list_for_user(db, user.id)) == 2

    async def test_deactivate(self, db, user, registry, connection_factory):
        conn = await connection_factory(user)
        await registry.deactivate(db, user.id, conn.id)
        await db.commit()

        assert (await reload(db, conn.id)).is_active is False
        with pytest.raises(NoActiveConnections):
            await registry.deactivate(db, user.id, conn.id)

    async def test_deactivate_foreign_connection(self, db, user, other_user, registry, connection_factory):
        conn = await connection_factory(other_user)
        with pytest.raises(NoActiveConnections):
            await registry.deactivate(db, user.id, conn.id)


# ── claim protocol ───────────────────────────────────────────────────────────

class TestClaim:
    async def test_claim_moves_to_syncing(self, db, user, registry, connection_factory):
        conn = await connection_factory(user)
        token = await registry.claim(db, conn.id)

        assert token
        conn = await reload(db, conn.id)
        assert conn.sync_status == STATUS_SYNCING
        assert conn.sync_token == token
        assert conn.sync_started_at is not None

    async def test_second_claim_is_refused(self, db, user, registry, connection_factory):
        conn = await connection_factory(user)
        assert await registry.claim(db, conn.id)
        assert await registry.claim(db, conn.id) is None

    async def test_stale_claim_can_be_taken_over(self, db, user, registry, connection_factory):
        conn = await connection_factory(
            user,
            sync_status=STATUS_SYNCING,
            sync_token="deadbeef",
            sync_started_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        token = await registry.claim(db, conn.id)

        assert token and token != "deadbeef"
        # The crashed run can no longer write
        assert await registry.mark_synced(db, conn.id, "deadbeef") is False
        assert (await reload(db, conn.id)).sync_token == token

    async def test_inactive_connection_cannot_be_claimed(self, db, user, registry, connection_factory):
        conn = await connection_factory(user, is_active=False)
        assert await registry.claim(db, conn.id) is None

    async def test_claim_after_error_or_synced(self, db, user, registry, connection_factory):
        failed = await connection_factory(user, item_id="item-a", sync_status=STATUS_ERROR)
        done = await connection_factory(user, item_id="item-b", sync_status=STATUS_SYNCED)
        assert await registry.claim(db, failed.id)
        assert await registry.claim(db, done.id)


class TestClaimedWrites:
    async def test_advance_cursor_is_not_committed(self, db, user, registry, connection_factory):
        conn_id = (await connection_factory(user, cursor="c-1")).id
        token = await registry.claim(db, conn_id)

        await registry.advance_cursor(db, conn_id, token, "c-2")
        await db.rollback()

        assert (await reload(db, conn_id)).cursor == "c-1"

    async def test_advance_cursor_without_claim_conflicts(self, db, user, registry, connection_factory):
        conn = await connection_factory(user)
        await registry.claim(db, conn.id)
        with pytest.raises(SyncConflict):
            await registry.advance_cursor(db, conn.id, "not-the-token", "c-2")

    async def test_mark_synced_clears_claim(self, db, user, registry, connection_factory):
        conn = await connection_factory(user, error_code="old failure")
        token = await registry.claim(db, conn.id)

        assert await registry.mark_synced(db, conn.id, token) is True
        conn = await reload(db, conn.id)
        assert conn.sync_status == STATUS_SYNCED
        assert conn.error_code is None
        assert conn.sync_token is None
        assert conn.last_synced_at is not None

    async def test_mark_error_truncates_detail(self, db, user, registry, connection_factory):
        conn = await connection_factory(user, cursor="c-3")
        token = await registry.claim(db, conn.id)

        await registry.mark_error(db, conn.id, token, "x" * 1000)
        conn = await reload(db, conn.id)
        assert conn.sync_status == STATUS_ERROR
        assert len(conn.error_code) == ERROR_CODE_MAX_LEN
        assert conn.cursor == "c-3"
        assert conn.sync_token is None

    async def test_release_restores_status(self, db, user, registry, connection_factory):
        conn = await connection_factory(user, sync_status=STATUS_SYNCED)
        token = await registry.claim(db, conn.id)

        await registry.release(db, conn.id, token, STATUS_SYNCED)
        conn = await reload(db, conn.id)
        assert conn.sync_status == STATUS_SYNCED
        assert conn.sync_token is None
        assert await registry.claim(db, conn.id)
