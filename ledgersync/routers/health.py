from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.database import get_db
from ledgersync.models.connection import STATUS_SYNCING, SYNC_STATUSES, PlaidConnection

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/sync")
async def health_sync(db: AsyncSession = Depends(get_db)):
    """Active connections per sync_status, plus claims older than the claim TTL."""
    rows = await db.execute(
        select(PlaidConnection.sync_status, func.count())
        .where(PlaidConnection.is_active == True)  # noqa: E712
        .group_by(PlaidConnection.sync_status)
    )
    by_status = {s: 0 for s in SYNC_STATUSES}
    by_status.update({status: count for status, count in rows.all()})

    stale_before = datetime.now(timezone.utc) - timedelta(seconds=settings.sync_claim_ttl_seconds)
    stale = await db.scalar(
        select(func.count())
        .select_from(PlaidConnection)
        .where(
            PlaidConnection.sync_status == STATUS_SYNCING,
            PlaidConnection.sync_started_at < stale_before,
        )
    )
    return {
        "status": "degraded" if stale else "ok",
        "connections": by_status,
        "stale_claims": stale or 0,
    }
