import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Numeric, String, UniqueConstraint, Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledgersync.core.database import Base

SOURCE_PLAID = "PLAID"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        # Dedup key across repeated syncs and pagination boundaries
        UniqueConstraint("external_id", "user_id", name="uq_transactions_external_id_user_id"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    plaid_connection_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("plaid_connections.id"), index=True, nullable=True
    )
    external_id: Mapped[str] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))  # magnitude, never negative
    description: Mapped[str] = mapped_column(String(500))
    merchant_name: Mapped[str | None] = mapped_column(String(255))
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    pending: Mapped[bool] = mapped_column(Boolean, default=False)
    source: Mapped[str] = mapped_column(String(20), default=SOURCE_PLAID)
    default_category: Mapped[str | None] = mapped_column(String(255))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    connection: Mapped["PlaidConnection | None"] = relationship(back_populates="transactions")
