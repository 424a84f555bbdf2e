"""Plaid transaction sync service: idempotent, incremental and cursor-based.

For each of a user's active connections, sequentially:
  claim the connection (status → syncing)
  → fetch a page from the stored cursor
  → reconcile it and stage the page's cursor, commit both together
  → repeat while Plaid reports more pages
  → mark synced, or mark error on the first failure

A failure is recorded on that connection only; the remaining connections are
still synced and the call itself succeeds with the aggregate counts.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ledgersync.core.config import settings
from ledgersync.core.security import decrypt_value
from ledgersync.models.connection import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_SYNCED,
    STATUS_SYNCING,
    PlaidConnection,
)
from ledgersync.models.user import User
from ledgersync.services.errors import NoActiveConnections, Unauthorized
from ledgersync.services.page_fetcher import PageFetcher
from ledgersync.services.plaid_client import build_plaid_client
from ledgersync.services.reconciler import Reconciler
from ledgersync.services.registry import ConnectionRegistry
from ledgersync.worker import celery_app

logger = logging.getLogger(__name__)

# Per-connection outcomes beyond the persisted statuses
OUTCOME_SKIPPED = "skipped"      # another run holds the connection
OUTCOME_CANCELLED = "cancelled"  # stopped before fetching the next page


@dataclass
class ConnectionReport:
    connection_id: uuid.UUID
    status: str = OUTCOME_SKIPPED
    added: int = 0
    modified: int = 0
    removed: int = 0
    pages: int = 0
    error: str | None = None


@dataclass
class SyncResult:
    added: int = 0
    modified: int = 0
    removed: int = 0
    connections: list[ConnectionReport] = field(default_factory=list)

    def include(self, report: ConnectionReport) -> None:
        self.connections.append(report)
        self.added += report.added
        self.modified += report.modified
        self.removed += report.removed


class SyncOrchestrator:
    def __init__(
        self,
        fetcher: PageFetcher,
        reconciler: Reconciler | None = None,
        registry: ConnectionRegistry | None = None,
    ):
        self.fetcher = fetcher
        self.reconciler = reconciler or Reconciler()
        self.registry = registry or ConnectionRegistry()

    async def sync(
        self,
        db: AsyncSession,
        user_id: uuid.UUID | None,
        connection_id: uuid.UUID | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Sync one connection (``connection_id``) or all active connections of a user.

        ``cancel`` is checked before every page fetch; once set, the running
        connection gives up its claim and no further connections are started.

        Raises:
            Unauthorized: no user.
            NoActiveConnections: nothing active matches for this user.
        """
        if user_id is None:
            raise Unauthorized("A user is required to sync")

        connections = await self.registry.active_for_user(db, user_id, connection_id)
        if not connections:
            raise NoActiveConnections("No active connections found")

        result = SyncResult()
        # Snapshot before any rollback expires the loaded rows
        targets = [(conn.id, conn.sync_status) for conn in connections]
        for conn_id, last_status in targets:
            if cancel is not None and cancel.is_set():
                result.include(ConnectionReport(connection_id=conn_id, status=OUTCOME_CANCELLED))
                continue
            result.include(await self._sync_connection(db, conn_id, last_status, cancel))

        logger.info(
            "Sync for user %s: %d connections, +%d ~%d -%d",
            user_id, len(targets), result.added, result.modified, result.removed,
        )
        return result

    async def _sync_connection(
        self,
        db: AsyncSession,
        conn_id: uuid.UUID,
        last_status: str,
        cancel: asyncio.Event | None,
    ) -> ConnectionReport:
        report = ConnectionReport(connection_id=conn_id)
        # Restored if the run is cancelled; a stale "syncing" is not worth restoring
        previous_status = last_status if last_status != STATUS_SYNCING else STATUS_PENDING

        try:
            token = await self.registry.claim(db, conn_id)
        except DBAPIError as exc:
            # No claim held, so the row is left as it was
            await db.rollback()
            report.status = STATUS_ERROR
            report.error = str(exc.orig or exc)
            logger.error("Could not claim connection %s: %s", conn_id, report.error)
            return report

        if token is None:
            logger.info("Connection %s is already syncing; skipped", conn_id)
            return report

        try:
            conn = await db.get(PlaidConnection, conn_id, populate_existing=True)
            user_id = conn.user_id
            access_token = decrypt_value(conn.encrypted_access_token)
            cursor = conn.cursor
            has_more = True

            while has_more:
                if cancel is not None and cancel.is_set():
                    await self.registry.release(db, conn_id, token, previous_status)
                    report.status = OUTCOME_CANCELLED
                    logger.info("Sync of connection %s cancelled after %d pages", conn_id, report.pages)
                    return report

                page = await self.fetcher.fetch(access_token, cursor)
                counts = await self.reconciler.apply(db, page, user_id, conn_id)
                # Page rows and the cursor that follows them commit together
                await self.registry.advance_cursor(db, conn_id, token, page.next_cursor)
                await db.commit()

                report.pages += 1
                report.added += counts.added
                report.modified += counts.modified
                report.removed += counts.removed
                if counts.skipped or counts.failed:
                    logger.info(
                        "Connection %s page %d: %d pending skipped, %d records failed",
                        conn_id, report.pages, counts.skipped, counts.failed,
                    )

                cursor = page.next_cursor
                has_more = page.has_more

            await self.registry.mark_synced(db, conn_id, token)
            report.status = STATUS_SYNCED

        except asyncio.CancelledError:
            await db.rollback()
            await self.registry.release(db, conn_id, token, previous_status)
            raise

        except Exception as exc:
            await db.rollback()
            report.status = STATUS_ERROR
            report.error = str(exc) or type(exc).__name__
            logger.error("Failed to sync connection %s: %s", conn_id, report.error)
            try:
                await self.registry.mark_error(db, conn_id, token, report.error)
            except DBAPIError as mark_exc:
                # The claim expires after sync_claim_ttl_seconds and the next run takes over
                await db.rollback()
                logger.error("Could not record error on connection %s: %s", conn_id, mark_exc)

        return report


# ─── Background triggers ──────────────────────────────────────────────────────

async def _run_sync(user_id: uuid.UUID | None = None, connection_id: uuid.UUID | None = None) -> dict:
    # One engine per task run: asyncio.run() gives every task a fresh event loop
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    orchestrator = SyncOrchestrator(PageFetcher(build_plaid_client()))
    totals = {"users": 0, "added": 0, "modified": 0, "removed": 0, "errors": 0}

    try:
        async with session_factory() as db:
            if user_id is not None:
                user_ids = [user_id]
            else:
                rows = await db.execute(
                    select(User.id)
                    .join(User.connections)
                    .where(
                        User.is_active == True,  # noqa: E712
                        PlaidConnection.is_active == True,  # noqa: E712
                    )
                    .distinct()
                )
                user_ids = list(rows.scalars().all())

            for uid in user_ids:
                try:
                    result = await orchestrator.sync(db, uid, connection_id)
                except NoActiveConnections:
                    logger.info("User %s has no active connections to sync", uid)
                    continue
                except DBAPIError as exc:
                    await db.rollback()
                    totals["errors"] += 1
                    logger.error("Could not load connections for user %s: %s", uid, exc)
                    continue
                totals["users"] += 1
                totals["added"] += result.added
                totals["modified"] += result.modified
                totals["removed"] += result.removed
                totals["errors"] += sum(1 for r in result.connections if r.status == STATUS_ERROR)
    finally:
        await engine.dispose()

    return totals


@celery_app.task(name="ledgersync.services.sync.sync_all_connections")
def sync_all_connections() -> dict:
    """Iterate all users with active connections and sync them."""
    logger.info("Starting scheduled transaction sync for all connections")
    totals = asyncio.run(_run_sync())
    logger.info("Scheduled sync finished: %s", totals)
    return totals


# A run that outlives its claim may be overtaken by another; stop it first
@celery_app.task(
    name="ledgersync.services.sync.sync_connection",
    soft_time_limit=settings.sync_claim_ttl_seconds,
)
def sync_connection(user_id: str, connection_id: str) -> dict:
    """Sync a single connection. Queued right after a new link."""
    logger.info("Syncing connection %s", connection_id)
    return asyncio.run(_run_sync(uuid.UUID(user_id), uuid.UUID(connection_id)))
