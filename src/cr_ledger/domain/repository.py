"""Repository Protocol: dependency inversion for testability.

Unit tests inject a mock that conforms to this Protocol.
Infrastructure layer provides the real implementation.
"""

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from src.cr_ledger.domain.models import CreditEntry


class CreditRepositoryProtocol(Protocol):
    async def insert(self, db: AsyncSession, entry: CreditEntry) -> CreditEntry: ...

    async def get_by_id(self, db: AsyncSession, credit_id: str) -> CreditEntry | None: ...

    async def get_by_transaction_no(
        self, db: AsyncSession, transaction_no: str
    ) -> CreditEntry | None: ...

    async def get_grant_by_order_no(
        self, db: AsyncSession, order_no: str
    ) -> CreditEntry | None: ...

    async def sum_available(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> int: ...

    async def select_available_for_update(
        self, db: AsyncSession, user_id: str, now: datetime, limit: int
    ) -> list[CreditEntry]: ...

    async def decrement_remaining(
        self, db: AsyncSession, credit_id: str, delta: int
    ) -> bool: ...

    async def count_recent_grants(
        self,
        db: AsyncSession,
        transaction_prefix: str,
        since: datetime,
        signup_ip: str | None = None,
        claim_ip: str | None = None,
    ) -> int: ...

    async def list_entries(
        self,
        db: AsyncSession,
        user_id: str | None,
        status: str | None,
        transaction_type: str | None,
        offset: int,
        limit: int,
    ) -> list[CreditEntry]: ...

    async def count_entries(
        self,
        db: AsyncSession,
        user_id: str | None,
        status: str | None,
        transaction_type: str | None,
    ) -> int: ...

    async def expire_overdue(self, db: AsyncSession, now: datetime) -> int: ...

    async def mark_deleted(self, db: AsyncSession, credit_id: str) -> CreditEntry | None: ...
