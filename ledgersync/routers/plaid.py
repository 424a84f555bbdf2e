import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.core.config import settings
from ledgersync.core.database import get_db
from ledgersync.core.deps import get_current_user
from ledgersync.core.rate_limit import limiter
from ledgersync.models.user import User
from ledgersync.services.errors import (
    NoActiveConnections,
    RemoteUnavailable,
    Unauthorized,
    ValidationError,
)
from ledgersync.services.page_fetcher import PageFetcher
from ledgersync.services.plaid_client import (
    build_plaid_client,
    create_link_token,
    exchange_public_token,
)
from ledgersync.services.registry import ConnectionRegistry
from ledgersync.services.sync import SyncOrchestrator, sync_connection

router = APIRouter(prefix="/plaid", tags=["plaid"])
registry = ConnectionRegistry()


# ─── Schemas ───────────────────────────────────────────────────────────────

class LinkTokenResponse(BaseModel):
    link_token: str
    expiration: datetime | None = None


class LinkedAccount(BaseModel):
    id: str
    name: str | None = None
    mask: str | None = None
    type: str | None = None
    subtype: str | None = None


class PublicTokenExchange(BaseModel):
    public_token: str
    institution_id: str | None = None
    institution_name: str | None = None
    accounts: list[LinkedAccount] | None = None


class ConnectionResponse(BaseModel):
    id: uuid.UUID
    item_id: str
    institution_id: str | None
    institution_name: str | None
    accounts: list[LinkedAccount] | None = None
    sync_status: str
    error_code: str | None
    last_synced_at: datetime | None
    is_active: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class SyncRequest(BaseModel):
    connection_id: str | None = None


class ConnectionSyncReport(BaseModel):
    connection_id: uuid.UUID
    status: str
    added: int
    modified: int
    removed: int
    pages: int
    error: str | None = None


class SyncResponse(BaseModel):
    added: int
    modified: int
    removed: int
    connections: list[ConnectionSyncReport]


# ─── Helpers ───────────────────────────────────────────────────────────────

def get_plaid_client():
    if not settings.plaid_configured:
        raise HTTPException(status_code=503, detail="Plaid not configured")
    return build_plaid_client(settings)


def _parse_connection_id(raw: str | None) -> uuid.UUID | None:
    if raw is None:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise ValidationError(f"Invalid connection id: {raw!r}")


# ─── Endpoints ─────────────────────────────────────────────────────────────

@router.post("/link-token", response_model=LinkTokenResponse)
async def link_token(
    user: User = Depends(get_current_user),
    client=Depends(get_plaid_client),
):
    try:
        token, expiration = create_link_token(client, str(user.id))
    except RemoteUnavailable as e:
        raise HTTPException(status_code=502, detail=f"Plaid error: {e}")
    return LinkTokenResponse(link_token=token, expiration=expiration)


@router.post("/exchange-token", response_model=ConnectionResponse)
async def exchange_token(
    payload: PublicTokenExchange,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client=Depends(get_plaid_client),
):
    if not payload.public_token.strip():
        raise HTTPException(status_code=400, detail="Public token is required")

    try:
        access_token, item_id = exchange_public_token(client, payload.public_token)
        conn = await registry.register(
            db,
            user_id=user.id,
            item_id=item_id,
            access_token=access_token,
            institution_id=payload.institution_id,
            institution_name=payload.institution_name,
            accounts=(
                [account.model_dump() for account in payload.accounts]
                if payload.accounts is not None else None
            ),
        )
    except RemoteUnavailable as e:
        raise HTTPException(status_code=502, detail=f"Plaid error: {e}")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await db.commit()
    await db.refresh(conn)

    # First sync runs in the worker; the connection stays "pending" until then
    sync_connection.delay(str(user.id), str(conn.id))
    return conn


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await registry.list_for_user(db, user.id)


@router.post("/sync", response_model=SyncResponse)
@limiter.limit(settings.sync_rate_limit)
async def sync_transactions(
    request: Request,
    payload: SyncRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client=Depends(get_plaid_client),
):
    """Sync one connection, or every active connection of the user.

    Per-connection failures do not fail the request: they are reported in
    ``connections`` and persisted on the connection's ``sync_status``.
    """
    orchestrator = SyncOrchestrator(PageFetcher(client, settings.plaid_page_size), registry=registry)
    try:
        connection_id = _parse_connection_id(payload.connection_id if payload else None)
        result = await orchestrator.sync(db, user.id, connection_id)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Unauthorized as e:
        raise HTTPException(status_code=401, detail=str(e))
    except NoActiveConnections as e:
        raise HTTPException(status_code=404, detail=str(e))

    return SyncResponse(
        added=result.added,
        modified=result.modified,
        removed=result.removed,
        connections=[
            ConnectionSyncReport(
                connection_id=r.connection_id,
                status=r.status,
                added=r.added,
                modified=r.modified,
                removed=r.removed,
                pages=r.pages,
                error=r.error,
            )
            for r in result.connections
        ],
    )


@router.delete("/connections/{connection_id}", status_code=204)
async def deactivate_connection(
    connection_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stop syncing a connection. Its transactions are kept."""
    try:
        await registry.deactivate(db, user.id, connection_id)
    except NoActiveConnections:
        raise HTTPException(status_code=404, detail="Connection not found")
    await db.commit()
