"""CreditRepository: concrete implementation of CreditRepositoryProtocol.

remaining_credits only ever changes through a relative, conditional UPDATE:
    SET remaining_credits = remaining_credits - :delta
    WHERE id = :id AND remaining_credits >= :delta AND status = 'active'
A result of 0 rows means the row changed under us (or was never eligible).

Queries go through the Core table, not ORM instances, so results never come
from a stale identity map after a relative UPDATE in the same session.

Transaction ownership: the CALLER (application service) opens the unit of work.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from src.cr_common.datetime_utils import as_utc
from src.cr_common.enums import CreditStatus, CreditTransactionType
from src.cr_common.errors import DuplicateTransactionError
from src.cr_ledger.domain.models import ConsumedItem, CreditEntry
from src.cr_ledger.infrastructure.db_models import CreditORM

_credits = CreditORM.__table__


def _available_grants(user_id: str, now: datetime) -> ColumnElement[bool]:
    """Filter shared by the balance sum and the FIFO walk."""
    return and_(
        _credits.c.user_id == user_id,
        _credits.c.transaction_type == CreditTransactionType.GRANT.value,
        _credits.c.status == CreditStatus.ACTIVE.value,
        _credits.c.remaining_credits > 0,
        or_(_credits.c.expires_at.is_(None), _credits.c.expires_at > now),
    )


# FIFO: soonest expiry first, never-expiring last on every dialect
_FIFO_ORDER = (
    case((_credits.c.expires_at.is_(None), 1), else_=0).asc(),
    _credits.c.expires_at.asc(),
    _credits.c.created_at.asc(),
    _credits.c.id.asc(),
)


def _filters(
    user_id: str | None,
    status: str | None,
    transaction_type: str | None,
) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    if user_id:
        clauses.append(_credits.c.user_id == user_id)
    if status:
        clauses.append(_credits.c.status == status)
    if transaction_type:
        clauses.append(_credits.c.transaction_type == transaction_type)
    return clauses


def _row_to_entry(row: Any) -> CreditEntry:
    m = row._mapping
    detail = m["consumed_detail"] or []
    return CreditEntry(
        id=m["id"],
        transaction_no=m["transaction_no"],
        user_id=m["user_id"],
        user_email=m["user_email"],
        transaction_type=m["transaction_type"],
        transaction_scene=m["transaction_scene"],
        order_no=m["order_no"],
        subscription_no=m["subscription_no"],
        credits=int(m["credits"]),
        remaining_credits=int(m["remaining_credits"]),
        status=m["status"],
        description=m["description"],
        expires_at=as_utc(m["expires_at"]),
        consumed_detail=[ConsumedItem.from_dict(item) for item in detail],
        metadata=m["metadata"],
        signup_ip=m["signup_ip"],
        claim_ip=m["claim_ip"],
        claim_country=m["claim_country"],
        created_at=as_utc(m["created_at"]),
    )


def _entry_to_values(entry: CreditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_no": entry.transaction_no,
        "user_id": entry.user_id,
        "user_email": entry.user_email,
        "transaction_type": entry.transaction_type,
        "transaction_scene": entry.transaction_scene,
        "order_no": entry.order_no,
        "subscription_no": entry.subscription_no,
        "credits": entry.credits,
        "remaining_credits": entry.remaining_credits,
        "status": entry.status,
        "description": entry.description,
        "expires_at": entry.expires_at,
        "consumed_detail": (
            [item.to_dict() for item in entry.consumed_detail]
            if entry.consumed_detail
            else None
        ),
        "metadata": entry.metadata,
        "signup_ip": entry.signup_ip,
        "claim_ip": entry.claim_ip,
        "claim_country": entry.claim_country,
        "created_at": entry.created_at,
    }


class CreditRepository:
    """Concrete repository: mutations are single atomic statements."""

    def __init__(self, lock_rows: bool = True) -> None:
        # SELECT ... FOR UPDATE; compiled away on SQLite, which locks at BEGIN instead
        self._lock_rows = lock_rows

    async def insert(self, db: AsyncSession, entry: CreditEntry) -> CreditEntry:
        try:
            await db.execute(insert(_credits).values(**_entry_to_values(entry)))
        except IntegrityError as exc:
            raise DuplicateTransactionError(entry.transaction_no) from exc
        return entry

    async def get_by_id(self, db: AsyncSession, credit_id: str) -> CreditEntry | None:
        result = await db.execute(select(_credits).where(_credits.c.id == credit_id))
        row = result.fetchone()
        return _row_to_entry(row) if row else None

    async def get_by_transaction_no(
        self, db: AsyncSession, transaction_no: str
    ) -> CreditEntry | None:
        result = await db.execute(
            select(_credits).where(_credits.c.transaction_no == transaction_no).limit(1)
        )
        row = result.fetchone()
        return _row_to_entry(row) if row else None

    async def get_grant_by_order_no(
        self, db: AsyncSession, order_no: str
    ) -> CreditEntry | None:
        result = await db.execute(
            select(_credits)
            .where(
                _credits.c.order_no == order_no,
                _credits.c.transaction_type == CreditTransactionType.GRANT.value,
            )
            .order_by(_credits.c.created_at.asc())
            .limit(1)
        )
        row = result.fetchone()
        return _row_to_entry(row) if row else None

    async def sum_available(self, db: AsyncSession, user_id: str, now: datetime) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(_credits.c.remaining_credits), 0)).where(
                _available_grants(user_id, now)
            )
        )
        # SUM(BIGINT) comes back as NUMERIC on PostgreSQL
        return int(result.scalar_one())

    async def select_available_for_update(
        self, db: AsyncSession, user_id: str, now: datetime, limit: int
    ) -> list[CreditEntry]:
        stmt = (
            select(_credits)
            .where(_available_grants(user_id, now))
            .order_by(*_FIFO_ORDER)
            .limit(limit)
        )
        if self._lock_rows:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return [_row_to_entry(row) for row in result.fetchall()]

    async def decrement_remaining(
        self, db: AsyncSession, credit_id: str, delta: int
    ) -> bool:
        result = await db.execute(
            update(_credits)
            .where(
                _credits.c.id == credit_id,
                _credits.c.status == CreditStatus.ACTIVE.value,
                _credits.c.remaining_credits >= delta,
            )
            .values(remaining_credits=_credits.c.remaining_credits - delta)
        )
        return result.rowcount == 1

    async def count_recent_grants(
        self,
        db: AsyncSession,
        transaction_prefix: str,
        since: datetime,
        signup_ip: str | None = None,
        claim_ip: str | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(_credits).where(
            _credits.c.transaction_type == CreditTransactionType.GRANT.value,
            _credits.c.transaction_no.startswith(transaction_prefix, autoescape=True),
            _credits.c.created_at > since,
        )
        if signup_ip:
            stmt = stmt.where(_credits.c.signup_ip == signup_ip)
        if claim_ip:
            stmt = stmt.where(_credits.c.claim_ip == claim_ip)
        result = await db.execute(stmt)
        return int(result.scalar_one())

    async def list_entries(
        self,
        db: AsyncSession,
        user_id: str | None,
        status: str | None,
        transaction_type: str | None,
        offset: int,
        limit: int,
    ) -> list[CreditEntry]:
        result = await db.execute(
            select(_credits)
            .where(*_filters(user_id, status, transaction_type))
            .order_by(_credits.c.created_at.desc(), _credits.c.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return [_row_to_entry(row) for row in result.fetchall()]

    async def count_entries(
        self,
        db: AsyncSession,
        user_id: str | None,
        status: str | None,
        transaction_type: str | None,
    ) -> int:
        result = await db.execute(
            select(func.count())
            .select_from(_credits)
            .where(*_filters(user_id, status, transaction_type))
        )
        return int(result.scalar_one())

    async def expire_overdue(self, db: AsyncSession, now: datetime) -> int:
        result = await db.execute(
            update(_credits)
            .where(
                _credits.c.transaction_type == CreditTransactionType.GRANT.value,
                _credits.c.status == CreditStatus.ACTIVE.value,
                _credits.c.expires_at.is_not(None),
                _credits.c.expires_at <= now,
            )
            .values(status=CreditStatus.EXPIRED.value)
        )
        return result.rowcount

    async def mark_deleted(self, db: AsyncSession, credit_id: str) -> CreditEntry | None:
        await db.execute(
            update(_credits)
            .where(
                _credits.c.id == credit_id,
                _credits.c.status != CreditStatus.DELETED.value,
            )
            .values(status=CreditStatus.DELETED.value)
        )
        return await self.get_by_id(db, credit_id)
