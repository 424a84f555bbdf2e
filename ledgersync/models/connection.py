import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.core.database import Base

# sync_status values
STATUS_PENDING = "pending"
STATUS_SYNCING = "syncing"
STATUS_SYNCED = "synced"
STATUS_ERROR = "error"
SYNC_STATUSES = (STATUS_PENDING, STATUS_SYNCING, STATUS_SYNCED, STATUS_ERROR)

ERROR_CODE_MAX_LEN = 255


class PlaidConnection(Base):
    """One linked Plaid Item (a bank login) and its sync state."""
    __tablename__ = "plaid_connections"
    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('pending', 'syncing', 'synced', 'error')",
            name="ck_plaid_connections_sync_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    item_id: Mapped[str] = mapped_column(String(255), unique=True)
    encrypted_access_token: Mapped[str] = mapped_column(Text)
    institution_id: Mapped[str | None] = mapped_column(String(100))
    institution_name: Mapped[str | None] = mapped_column(String(255))
    # Account metadata from Link: [{id, name, mask, type, subtype}]
    accounts: Mapped[list[dict] | None] = mapped_column(JSON)

    # Sync state: written only through ConnectionRegistry
    cursor: Mapped[str | None] = mapped_column(Text)
    sync_status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING)
    error_code: Mapped[str | None] = mapped_column(String(ERROR_CODE_MAX_LEN))
    sync_token: Mapped[str | None] = mapped_column(String(32))
    sync_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped["User"] = relationship(back_populates="connections")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="connection")
