"""CreditLedgerService: grants, FIFO consumption, balance and housekeeping.

Every public operation takes the caller's AsyncSession as its unit-of-work handle
(see `unit_of_work`): standalone calls commit on their own, calls made inside an
open transaction join it through a SAVEPOINT and leave the commit to the caller.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.cr_common.database import unit_of_work
from src.cr_common.datetime_utils import utc_now
from src.cr_common.enums import CreditStatus, CreditTransactionScene, CreditTransactionType
from src.cr_common.errors import (
    AppError,
    CreditConflictError,
    CreditNotFoundError,
    DuplicateTransactionError,
    InsufficientCreditsError,
    InvalidAmountError,
    LedgerFragmentationExceededError,
)
from src.cr_common.id_generator import generate_credit_id, generate_transaction_no
from src.cr_ledger.application.schemas import (
    CreditEntryItem,
    CreditListQuery,
    CreditListResponse,
)
from src.cr_ledger.domain.expiration import calculate_expires_at
from src.cr_ledger.domain.models import ConsumedItem, CreditEntry, CreditUser
from src.cr_ledger.domain.repository import CreditRepositoryProtocol
from src.cr_ledger.infrastructure.persistence import CreditRepository

logger = logging.getLogger("cr.ledger")

ORDER_TRANSACTION_PREFIX = "order:"


class CreditLedgerService:
    def __init__(
        self,
        repo: CreditRepositoryProtocol | None = None,
        batch_size: int = settings.CONSUME_BATCH_SIZE,
        max_batches: int = settings.CONSUME_MAX_BATCHES,
    ) -> None:
        self._repo: CreditRepositoryProtocol = repo or CreditRepository()
        self._batch_size = batch_size
        self._max_batches = max_batches

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    async def get_balance(self, db: AsyncSession, user_id: str) -> int:
        """Spendable credits right now. Pre-flight only; consume re-checks."""
        async with unit_of_work(db):
            return await self._repo.sum_available(db, user_id, utc_now())

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def grant(
        self,
        db: AsyncSession,
        user: CreditUser,
        credits: int,
        scene: CreditTransactionScene = CreditTransactionScene.GIFT,
        description: str | None = None,
        valid_days: int | None = None,
        period_end: datetime | None = None,
        transaction_no: str | None = None,
        order_no: str | None = None,
        subscription_no: str | None = None,
        metadata: str | None = None,
        signup_ip: str | None = None,
        claim_ip: str | None = None,
        claim_country: str | None = None,
    ) -> CreditEntry | None:
        """Write one GRANT entry. Returns None (no-op) when credits <= 0.

        Raises DuplicateTransactionError if a caller-supplied transaction_no
        already exists.
        """
        if credits <= 0:
            return None

        now = utc_now()
        entry = CreditEntry(
            id=generate_credit_id(),
            transaction_no=transaction_no or generate_transaction_no(),
            user_id=user.id,
            user_email=user.email,
            transaction_type=CreditTransactionType.GRANT.value,
            transaction_scene=CreditTransactionScene(scene).value,
            order_no=order_no,
            subscription_no=subscription_no,
            credits=credits,
            remaining_credits=credits,
            status=CreditStatus.ACTIVE.value,
            description=description or "grant credits",
            expires_at=calculate_expires_at(valid_days, period_end, now=now),
            metadata=metadata,
            signup_ip=signup_ip,
            claim_ip=claim_ip,
            claim_country=claim_country,
            created_at=now,
        )
        async with unit_of_work(db):
            await self._repo.insert(db, entry)

        logger.info(
            "granted %d credits to user=%s scene=%s txn=%s expires_at=%s",
            credits,
            user.id,
            entry.transaction_scene,
            entry.transaction_no,
            entry.expires_at.isoformat() if entry.expires_at else "never",
        )
        return entry

    async def grant_for_order(
        self,
        db: AsyncSession,
        user: CreditUser,
        order_no: str,
        credits: int,
        valid_days: int | None = None,
        period_end: datetime | None = None,
        subscription_no: str | None = None,
        scene: CreditTransactionScene | None = None,
        description: str | None = None,
    ) -> CreditEntry | None:
        """Grant the credits bought with a paid order, at most once per order.

        Scene defaults to SUBSCRIPTION when a billing period end is given and
        PAYMENT otherwise; renewals pass RENEWAL explicitly.
        """
        order_no = (order_no or "").strip()
        if not order_no:
            raise ValueError("order_no is required")

        existing = await self.find_by_order_no(db, order_no)
        if existing is not None:
            return existing

        if scene is None:
            scene = (
                CreditTransactionScene.SUBSCRIPTION
                if period_end is not None
                else CreditTransactionScene.PAYMENT
            )
        transaction_no = f"{ORDER_TRANSACTION_PREFIX}{order_no}"
        try:
            return await self.grant(
                db,
                user,
                credits,
                scene=scene,
                description=description or f"grant credits for order {order_no}",
                valid_days=valid_days,
                period_end=period_end,
                transaction_no=transaction_no,
                order_no=order_no,
                subscription_no=subscription_no,
            )
        except DuplicateTransactionError:
            # A concurrent webhook delivery granted this order first
            return await self.find_by_transaction_no(db, transaction_no)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def consume(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        scene: str | None = None,
        description: str | None = None,
        metadata: str | None = None,
    ) -> CreditEntry:
        """Atomically draw `amount` credits, soonest-expiring grants first.

        All-or-nothing: on any error no grant's remaining_credits has changed.
        Raises InvalidAmountError, InsufficientCreditsError,
        LedgerFragmentationExceededError or CreditConflictError.
        """
        if amount <= 0:
            raise InvalidAmountError(amount)

        now = utc_now()
        try:
            async with unit_of_work(db):
                available = await self._repo.sum_available(db, user_id, now)
                if available < amount:
                    raise InsufficientCreditsError(amount, available)

                items = await self._draw_down(db, user_id, amount, now)

                entry = CreditEntry(
                    id=generate_credit_id(),
                    transaction_no=generate_transaction_no(),
                    user_id=user_id,
                    transaction_type=CreditTransactionType.CONSUME.value,
                    transaction_scene=scene,
                    credits=-amount,
                    remaining_credits=0,
                    status=CreditStatus.ACTIVE.value,
                    description=description,
                    consumed_detail=items,
                    metadata=metadata,
                    created_at=now,
                )
                await self._repo.insert(db, entry)
        except AppError as exc:
            logger.warning(
                "consume failed user=%s amount=%d code=%d: %s",
                user_id,
                amount,
                exc.code,
                exc.message,
            )
            raise

        logger.info(
            "consumed %d credits from user=%s across %d grants txn=%s",
            amount,
            user_id,
            len(items),
            entry.transaction_no,
        )
        return entry

    async def _draw_down(
        self, db: AsyncSession, user_id: str, amount: int, now: datetime
    ) -> list[ConsumedItem]:
        remaining = amount
        items: list[ConsumedItem] = []
        max_rows = self._batch_size * self._max_batches
        processed_rows = 0
        batch_no = 0

        while remaining > 0:
            batch_no += 1

            # Fully drawn rows drop out of the filter, so each page starts fresh
            batch = await self._repo.select_available_for_update(
                db, user_id, now, self._batch_size
            )
            if not batch:
                break
            # An empty page past the cap is a shortfall, not fragmentation
            if batch_no > self._max_batches:
                raise LedgerFragmentationExceededError(
                    f"batches {batch_no} > {self._max_batches}"
                )

            for grant in batch:
                if remaining <= 0:
                    break
                processed_rows += 1
                if processed_rows > max_rows:
                    raise LedgerFragmentationExceededError(
                        f"rows {processed_rows} > {max_rows}"
                    )

                take = min(remaining, grant.remaining_credits)
                if not await self._repo.decrement_remaining(db, grant.id, take):
                    raise CreditConflictError(grant.id)

                items.append(
                    ConsumedItem(
                        credit_id=grant.id,
                        transaction_no=grant.transaction_no,
                        expires_at=grant.expires_at,
                        credits_to_consume=remaining,
                        credits_consumed=take,
                        credits_before=grant.remaining_credits,
                        credits_after=grant.remaining_credits - take,
                        batch_no=batch_no,
                        batch_size=self._batch_size,
                    )
                )
                remaining -= take

        if remaining > 0:
            # A concurrent consumer drained grants between the sum and the walk
            raise InsufficientCreditsError(amount, amount - remaining)
        return items

    # ------------------------------------------------------------------
    # Lookups and history
    # ------------------------------------------------------------------

    async def find_by_transaction_no(
        self, db: AsyncSession, transaction_no: str
    ) -> CreditEntry | None:
        transaction_no = (transaction_no or "").strip()
        if not transaction_no:
            return None
        async with unit_of_work(db):
            return await self._repo.get_by_transaction_no(db, transaction_no)

    async def find_by_order_no(self, db: AsyncSession, order_no: str) -> CreditEntry | None:
        order_no = (order_no or "").strip()
        if not order_no:
            return None
        async with unit_of_work(db):
            return await self._repo.get_grant_by_order_no(db, order_no)

    async def count_credits(
        self,
        db: AsyncSession,
        user_id: str | None = None,
        status: str | None = None,
        transaction_type: str | None = None,
    ) -> int:
        async with unit_of_work(db):
            return await self._repo.count_entries(db, user_id, status, transaction_type)

    async def list_credits(
        self, db: AsyncSession, query: CreditListQuery
    ) -> CreditListResponse:
        offset = (query.page - 1) * query.limit
        async with unit_of_work(db):
            entries = await self._repo.list_entries(
                db,
                query.user_id,
                query.status,
                query.transaction_type,
                offset,
                query.limit,
            )
            total = await self._repo.count_entries(
                db, query.user_id, query.status, query.transaction_type
            )
        return CreditListResponse(
            items=[CreditEntryItem.from_entry(e) for e in entries],
            total=total,
            page=query.page,
            limit=query.limit,
            has_more=offset + len(entries) < total,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def expire_overdue(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Flip ACTIVE grants past their expiry to EXPIRED. Returns rows changed.

        Balance and consumption already ignore these rows; this only makes the
        stored status match.
        """
        async with unit_of_work(db):
            count = await self._repo.expire_overdue(db, now or utc_now())
        if count:
            logger.info("expired %d overdue credit grants", count)
        return count

    async def delete_credit(self, db: AsyncSession, credit_id: str) -> CreditEntry:
        """Soft-delete an entry. Irreversible; deleting twice returns the same entry."""
        async with unit_of_work(db):
            entry = await self._repo.mark_deleted(db, credit_id)
        if entry is None:
            raise CreditNotFoundError(credit_id)
        logger.info("deleted credit %s txn=%s", entry.id, entry.transaction_no)
        return entry
