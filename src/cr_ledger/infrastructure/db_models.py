"""SQLAlchemy ORM model for cr_ledger.

One table holds both grants and consumptions. transaction_no carries the
UNIQUE constraint that makes retried grants idempotent.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.cr_common.database import Base


class CreditORM(Base):
    __tablename__ = "credits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_no: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_scene: Mapped[str | None] = mapped_column(String(50), nullable=True)
    order_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription_no: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    consumed_detail: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    signup_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    claim_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    claim_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # No updated_at; only remaining_credits and status ever change

    __table_args__ = (
        Index(
            "ix_credits_user_available",
            "user_id", "transaction_type", "status", "expires_at",
        ),
        Index("ix_credits_order_no", "order_no"),
        Index("ix_credits_signup_ip_created", "signup_ip", "created_at"),
        Index("ix_credits_claim_ip_created", "claim_ip", "created_at"),
        Index("ix_credits_user_created", "user_id", "created_at"),
    )
