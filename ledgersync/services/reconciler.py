"""Apply one /transactions/sync page to the transactions table.

Rules:
  - pending records are never materialized; only settled ones are upserted
  - amounts are stored as their absolute value
  - (external_id, user_id) is the upsert key; "added" and "modified" share it,
    so replaying a page (at-least-once delivery, cursor replay) is a no-op
  - removals are hard deletes scoped to the user, applied after every
    add/modify of the same page; removing a missing row is a no-op

Each record is written inside its own SAVEPOINT. A record the database
rejects is logged and skipped; losing the database aborts the whole page.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.models.transaction import SOURCE_PLAID, Transaction
from ledgersync.services.errors import PartialRecordFailure, StorageUnavailable
from ledgersync.services.page_fetcher import RemoteTransaction, SyncPage

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


@dataclass
class PageCounts:
    added: int = 0
    modified: int = 0
    removed: int = 0
    skipped: int = 0  # pending records
    failed: int = 0   # records that could not be written


def _is_connectivity_error(exc: DBAPIError) -> bool:
    return isinstance(exc, (OperationalError, InterfaceError)) or exc.connection_invalidated


def normalize_amount(amount: Decimal) -> Decimal:
    """Plaid signs amounts by direction; we keep the magnitude only."""
    return abs(Decimal(amount)).quantize(_CENTS)


def category_for(rt: RemoteTransaction) -> str | None:
    """Personal finance category, else the legacy category, else nothing."""
    if rt.pfc_primary:
        return rt.pfc_primary
    if rt.category:
        return rt.category[0]
    return None


def transaction_fields(rt: RemoteTransaction) -> dict:
    """Column values written on both insert and update."""
    d = rt.date
    return {
        "amount": normalize_amount(rt.amount),
        "description": rt.name,
        "merchant_name": rt.merchant_name or rt.name,
        "date": datetime(d.year, d.month, d.day, tzinfo=timezone.utc),
        "pending": rt.pending,
        "default_category": category_for(rt),
        "is_recurring": "SUBSCRIPTION" in (rt.pfc_detailed or ""),
    }


class Reconciler:
    async def apply(
        self,
        db: AsyncSession,
        page: SyncPage,
        user_id: uuid.UUID,
        connection_id: uuid.UUID,
    ) -> PageCounts:
        """Write one page's changes into the session's open transaction.

        Nothing is committed here; the caller commits the page together with
        the connection's new cursor.

        Raises:
            StorageUnavailable: the database connection failed.
        """
        counts = PageCounts()

        for rt in page.added:
            if await self._upsert_record(db, rt, user_id, connection_id, counts):
                counts.added += 1

        for rt in page.modified:
            if await self._upsert_record(db, rt, user_id, connection_id, counts):
                counts.modified += 1

        if page.removed:
            counts.removed = await self._remove(db, page.removed, user_id)

        return counts

    async def _upsert_record(
        self,
        db: AsyncSession,
        rt: RemoteTransaction,
        user_id: uuid.UUID,
        connection_id: uuid.UUID,
        counts: PageCounts,
    ) -> bool:
        if rt.pending:
            counts.skipped += 1
            return False

        try:
            fields = transaction_fields(rt)
        except (TypeError, ValueError, AttributeError, ArithmeticError) as exc:
            return self._record_failed(rt, exc, counts)

        try:
            async with db.begin_nested():
                await self._upsert(db, rt, fields, user_id, connection_id)
        except DBAPIError as exc:
            if _is_connectivity_error(exc):
                raise StorageUnavailable(str(exc.orig or exc)) from exc
            return self._record_failed(rt, exc.orig or exc, counts)
        return True

    def _record_failed(self, rt: RemoteTransaction, exc: BaseException, counts: PageCounts) -> bool:
        failure = PartialRecordFailure(rt.transaction_id, str(exc))
        logger.warning("Skipping record: %s", failure)
        counts.failed += 1
        return False

    async def _upsert(
        self,
        db: AsyncSession,
        rt: RemoteTransaction,
        fields: dict,
        user_id: uuid.UUID,
        connection_id: uuid.UUID,
    ) -> Transaction:
        result = await db.execute(
            select(Transaction).where(
                Transaction.external_id == rt.transaction_id,
                Transaction.user_id == user_id,
            )
        )
        txn = result.scalar_one_or_none()

        if txn is None:
            txn = Transaction(
                user_id=user_id,
                plaid_connection_id=connection_id,
                external_id=rt.transaction_id,
                source=SOURCE_PLAID,
                **fields,
            )
            db.add(txn)
        else:
            for key, value in fields.items():
                setattr(txn, key, value)
            # The latest delivering connection owns the row
            txn.plaid_connection_id = connection_id

        await db.flush()
        return txn

    async def _remove(self, db: AsyncSession, external_ids: list[str], user_id: uuid.UUID) -> int:
        wanted = set(external_ids)
        try:
            result = await db.execute(
                select(Transaction).where(
                    Transaction.user_id == user_id,
                    Transaction.external_id.in_(sorted(wanted)),
                )
            )
            doomed = result.scalars().all()
            for txn in doomed:
                await db.delete(txn)
            await db.flush()
        except DBAPIError as exc:
            raise StorageUnavailable(str(exc.orig or exc)) from exc

        if len(doomed) < len(wanted):
            logger.debug("%d of %d removed transactions were not stored", len(wanted) - len(doomed), len(wanted))
        return len(doomed)
