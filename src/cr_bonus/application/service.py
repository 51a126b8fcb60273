"""FirstLoginBonusService: the one-time signup bonus, safe to call on every login.

Idempotent through the deterministic transaction_no `first_login:<user_id>`,
whose UNIQUE constraint also settles races between concurrent logins.
"""

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.cr_bonus.domain.policy import BonusPolicy, LoginRiskContext
from src.cr_bonus.domain.rules import (
    GateResult,
    check_country,
    check_ip_velocity,
    first_login_transaction_no,
)
from src.cr_common.database import unit_of_work
from src.cr_common.datetime_utils import utc_now
from src.cr_common.enums import CreditTransactionScene
from src.cr_common.errors import DuplicateTransactionError
from src.cr_ledger.application.service import CreditLedgerService
from src.cr_ledger.domain.models import CreditEntry, CreditUser
from src.cr_ledger.domain.repository import CreditRepositoryProtocol
from src.cr_ledger.infrastructure.persistence import CreditRepository

logger = logging.getLogger("cr.bonus")


class FirstLoginBonusService:
    def __init__(
        self,
        ledger: CreditLedgerService | None = None,
        repo: CreditRepositoryProtocol | None = None,
        policy: BonusPolicy | None = None,
    ) -> None:
        self._repo: CreditRepositoryProtocol = repo or CreditRepository()
        self._ledger = ledger or CreditLedgerService(repo=self._repo)
        self._policy = policy or BonusPolicy.from_settings(settings)

    async def grant_first_login_bonus(
        self,
        db: AsyncSession,
        user: CreditUser,
        ctx: LoginRiskContext | None = None,
        policy: BonusPolicy | None = None,
    ) -> CreditEntry | None:
        """Grant the bonus once per user; return the existing entry on repeat calls.

        Returns None when the bonus is disabled or a gate withholds it. Gate
        decisions are logged, never raised.
        """
        policy = policy or self._policy
        transaction_no = first_login_transaction_no(user.id)

        existing = await self._ledger.find_by_transaction_no(db, transaction_no)
        if existing is not None:
            return existing

        if not policy.enabled or policy.amount <= 0:
            return None

        ctx = (ctx or LoginRiskContext()).normalized()

        blocked = check_country(ctx.country, policy)
        if blocked is None:
            async with unit_of_work(db):
                blocked = await check_ip_velocity(ctx, policy, self._repo, db, utc_now())
        if blocked is not None:
            self._log_blocked(user, ctx, policy, blocked)
            return None

        try:
            return await self._ledger.grant(
                db,
                user,
                policy.amount,
                scene=CreditTransactionScene.REWARD,
                description=policy.description or "first login bonus",
                valid_days=policy.valid_days,
                transaction_no=transaction_no,
                metadata=json.dumps({"type": "first-login"}),
                signup_ip=ctx.signup_ip or None,
                claim_ip=ctx.claim_ip or None,
                claim_country=ctx.country or None,
            )
        except DuplicateTransactionError:
            # Another session for the same user inserted it after our lookup
            after = await self._ledger.find_by_transaction_no(db, transaction_no)
            if after is not None:
                return after
            raise

    async def grant_initial_credits(
        self,
        db: AsyncSession,
        user: CreditUser,
        policy: BonusPolicy | None = None,
    ) -> CreditEntry | None:
        """Registration-time grant of the configured initial credits, no risk gates."""
        policy = policy or self._policy
        if not policy.enabled or policy.amount <= 0:
            return None
        return await self._ledger.grant(
            db,
            user,
            policy.amount,
            scene=CreditTransactionScene.GIFT,
            description=policy.description or "initial credits",
            valid_days=policy.valid_days,
        )

    def _log_blocked(
        self,
        user: CreditUser,
        ctx: LoginRiskContext,
        policy: BonusPolicy,
        blocked: GateResult,
    ) -> None:
        logger.info(
            "initial credits blocked: %s user=%s",
            blocked.reason.value,
            user.id,
            extra={
                "reason": blocked.reason.value,
                "user_id": user.id,
                "signup_ip": ctx.signup_ip or None,
                "claim_ip": ctx.claim_ip or None,
                "country": ctx.country or None,
                "country_mode": policy.country_mode.value if policy.country_mode else None,
                "window_days": policy.ip_limit_window_days,
                "max": policy.ip_limit_max,
                "count": blocked.count,
            },
        )
