"""Domain models for cr_ledger: pure dataclasses, no SQLAlchemy dependency."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from src.cr_common.enums import CreditStatus, CreditTransactionType


@dataclass
class CreditUser:
    """The owning subject, as handed over by the identity layer."""
    id: str
    email: str | None = None


@dataclass
class ConsumedItem:
    """One grant drawn from by a consumption, in draw order."""
    credit_id: str
    transaction_no: str
    expires_at: datetime | None
    credits_to_consume: int   # still owed before drawing from this grant
    credits_consumed: int     # drawn from this grant
    credits_before: int
    credits_after: int
    batch_no: int
    batch_size: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsumedItem":
        expires_at = data.get("expires_at")
        return cls(
            credit_id=data["credit_id"],
            transaction_no=data["transaction_no"],
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            credits_to_consume=int(data["credits_to_consume"]),
            credits_consumed=int(data["credits_consumed"]),
            credits_before=int(data["credits_before"]),
            credits_after=int(data["credits_after"]),
            batch_no=int(data["batch_no"]),
            batch_size=int(data["batch_size"]),
        )


@dataclass
class CreditEntry:
    id: str
    transaction_no: str
    user_id: str
    transaction_type: str            # CreditTransactionType value
    credits: int                     # positive=grant negative=consume
    remaining_credits: int           # grants only; 0 on consume entries
    status: str                      # CreditStatus value
    user_email: str | None = None
    transaction_scene: str | None = None
    order_no: str | None = None
    subscription_no: str | None = None
    description: str | None = None
    expires_at: datetime | None = None
    consumed_detail: list[ConsumedItem] = field(default_factory=list)
    metadata: str | None = None
    signup_ip: str | None = None
    claim_ip: str | None = None
    claim_country: str | None = None
    created_at: datetime | None = None

    @property
    def consumed_total(self) -> int:
        return sum(item.credits_consumed for item in self.consumed_detail)

    def is_available(self, now: datetime) -> bool:
        """Whether this grant still counts toward the spendable balance at `now`."""
        return (
            self.transaction_type == CreditTransactionType.GRANT
            and self.status == CreditStatus.ACTIVE
            and self.remaining_credits > 0
            and (self.expires_at is None or self.expires_at > now)
        )
