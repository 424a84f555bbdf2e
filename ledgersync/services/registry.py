"""Connection registry: the only writer of a connection's cursor and status.

Concurrent syncs of the same connection are serialized by a status-gated
compare-and-swap: ``claim`` moves the row into ``syncing`` and stamps a fresh
``sync_token``; every later write is conditional on that token still being
the row's token. A claim older than ``sync_claim_ttl_seconds`` is treated as
abandoned (crashed worker) and may be taken over.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.security import encrypt_value
from ledgersync.models.connection import (
    ERROR_CODE_MAX_LEN,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_SYNCED,
    STATUS_SYNCING,
    PlaidConnection,
)
from ledgersync.services.errors import NoActiveConnections, SyncConflict, ValidationError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionRegistry:
    def __init__(self, claim_ttl_seconds: int | None = None):
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds or settings.sync_claim_ttl_seconds)

    # ─── Lifecycle ──────────────────────────────────────────────────────────

    async def register(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        item_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
        accounts: list[dict] | None = None,
    ) -> PlaidConnection:
        """Record a successful credential exchange.

        Re-linking an item the user already has refreshes its credential and
        puts it back to ``pending``; the cursor is kept, and so are institution
        details and accounts the new link did not send.
        """
        result = await db.execute(
            select(PlaidConnection).where(PlaidConnection.item_id == item_id)
        )
        conn = result.scalar_one_or_none()

        if conn and conn.user_id != user_id:
            raise ValidationError("This institution is linked to another user")

        if conn:
            conn.encrypted_access_token = encrypt_value(access_token)
            conn.institution_id = institution_id or conn.institution_id
            conn.institution_name = institution_name or conn.institution_name
            if accounts is not None:
                conn.accounts = accounts
            conn.is_active = True
            conn.error_code = None
            conn.sync_status = STATUS_PENDING
            logger.info("Re-linked connection %s", conn.id)
        else:
            conn = PlaidConnection(
                user_id=user_id,
                item_id=item_id,
                encrypted_access_token=encrypt_value(access_token),
                institution_id=institution_id,
                institution_name=institution_name,
                accounts=accounts,
                sync_status=STATUS_PENDING,
                is_active=True,
            )
            db.add(conn)

        await db.flush()
        return conn

    async def deactivate(self, db: AsyncSession, user_id: uuid.UUID, connection_id: uuid.UUID) -> PlaidConnection:
        result = await db.execute(
            select(PlaidConnection).where(
                PlaidConnection.id == connection_id,
                PlaidConnection.user_id == user_id,
                PlaidConnection.is_active == True,  # noqa: E712
            )
        )
        conn = result.scalar_one_or_none()
        if not conn:
            raise NoActiveConnections("No active connection found")
        conn.is_active = False
        await db.flush()
        return conn

    # ─── Queries ────────────────────────────────────────────────────────────

    async def list_for_user(self, db: AsyncSession, user_id: uuid.UUID) -> list[PlaidConnection]:
        result = await db.execute(
            select(PlaidConnection)
            .where(PlaidConnection.user_id == user_id)
            .order_by(PlaidConnection.created_at.desc())
        )
        return list(result.scalars().all())

    async def active_for_user(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        connection_id: uuid.UUID | None = None,
    ) -> list[PlaidConnection]:
        """Active connections of ``user_id``; foreign or inactive ids match nothing."""
        stmt = select(PlaidConnection).where(
            PlaidConnection.user_id == user_id,
            PlaidConnection.is_active == True,  # noqa: E712
        )
        if connection_id is not None:
            stmt = stmt.where(PlaidConnection.id == connection_id)
        result = await db.execute(stmt.order_by(PlaidConnection.created_at))
        return list(result.scalars().all())

    # ─── Sync state (compare-and-swap on sync_token) ────────────────────────

    async def claim(self, db: AsyncSession, connection_id: uuid.UUID) -> str | None:
        """Move a connection into ``syncing`` unless another live run holds it.

        Commits. Returns the claim token, or None when the connection is
        already being synced or no longer active.
        """
        now = _utcnow()
        token = uuid.uuid4().hex
        result = await db.execute(
            update(PlaidConnection)
            .where(
                PlaidConnection.id == connection_id,
                PlaidConnection.is_active == True,  # noqa: E712
                or_(
                    PlaidConnection.sync_status != STATUS_SYNCING,
                    PlaidConnection.sync_token.is_(None),
                    PlaidConnection.sync_started_at.is_(None),
                    PlaidConnection.sync_started_at < now - self.claim_ttl,
                ),
            )
            .values(sync_status=STATUS_SYNCING, sync_token=token, sync_started_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount != 1:
            return None
        return token

    async def advance_cursor(
        self, db: AsyncSession, connection_id: uuid.UUID, token: str, cursor: str
    ) -> None:
        """Stage the cursor write in the caller's transaction (not committed).

        Raises:
            SyncConflict: the claim was taken over by another run.
        """
        ok = await self._write(db, connection_id, token, cursor=cursor)
        if not ok:
            raise SyncConflict(f"Connection {connection_id} was claimed by another sync")

    async def mark_synced(self, db: AsyncSession, connection_id: uuid.UUID, token: str) -> bool:
        ok = await self._write(
            db, connection_id, token,
            sync_status=STATUS_SYNCED,
            error_code=None,
            last_synced_at=_utcnow(),
            sync_token=None,
            sync_started_at=None,
        )
        await db.commit()
        return ok

    async def mark_error(self, db: AsyncSession, connection_id: uuid.UUID, token: str, detail: str) -> bool:
        """Record a failed run. The cursor stays at its last committed value."""
        ok = await self._write(
            db, connection_id, token,
            sync_status=STATUS_ERROR,
            error_code=detail[:ERROR_CODE_MAX_LEN],
            sync_token=None,
            sync_started_at=None,
        )
        await db.commit()
        return ok

    async def release(self, db: AsyncSession, connection_id: uuid.UUID, token: str, status: str) -> bool:
        """Give up the claim without a verdict, restoring ``status``."""
        ok = await self._write(
            db, connection_id, token,
            sync_status=status,
            sync_token=None,
            sync_started_at=None,
        )
        await db.commit()
        return ok

    async def _write(self, db: AsyncSession, connection_id: uuid.UUID, token: str, **values) -> bool:
        result = await db.execute(
            update(PlaidConnection)
            .where(PlaidConnection.id == connection_id, PlaidConnection.sync_token == token)
            .values(**values)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            logger.warning("Connection %s: claim %s no longer held", connection_id, token[:8])
            return False
        return True
