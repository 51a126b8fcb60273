"""Pydantic schemas for credit history listings."""

from typing import Any

from pydantic import BaseModel, Field

from src.cr_ledger.domain.models import CreditEntry


class CreditListQuery(BaseModel):
    user_id: str | None = None
    status: str | None = None
    transaction_type: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=30, ge=1, le=100)


class CreditEntryItem(BaseModel):
    id: str
    transaction_no: str
    user_id: str
    transaction_type: str
    transaction_scene: str | None
    credits: int
    remaining_credits: int
    status: str
    description: str | None
    order_no: str | None
    expires_at: str | None
    consumed_detail: list[dict[str, Any]]
    created_at: str

    @classmethod
    def from_entry(cls, entry: CreditEntry) -> "CreditEntryItem":
        return cls(
            id=entry.id,
            transaction_no=entry.transaction_no,
            user_id=entry.user_id,
            transaction_type=entry.transaction_type,
            transaction_scene=entry.transaction_scene,
            credits=entry.credits,
            remaining_credits=entry.remaining_credits,
            status=entry.status,
            description=entry.description,
            order_no=entry.order_no,
            expires_at=entry.expires_at.isoformat() if entry.expires_at else None,
            consumed_detail=[item.to_dict() for item in entry.consumed_detail],
            created_at=entry.created_at.isoformat() if entry.created_at else "",
        )


class CreditListResponse(BaseModel):
    items: list[CreditEntryItem]
    total: int
    page: int
    limit: int
    has_more: bool
