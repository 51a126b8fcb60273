"""Anti-abuse gates for the first-login bonus.

Gates never raise: they return why the bonus is withheld, or None to let it
through. Login itself is never affected.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from src.cr_bonus.domain.policy import BonusPolicy, LoginRiskContext
from src.cr_common.enums import CountryMode
from src.cr_ledger.domain.repository import CreditRepositoryProtocol

FIRST_LOGIN_PREFIX = "first_login:"


def first_login_transaction_no(user_id: str) -> str:
    return f"{FIRST_LOGIN_PREFIX}{user_id}"


class BlockReason(str, Enum):
    COUNTRY_BLOCKED = "country_blocked"
    COUNTRY_NOT_ALLOWED = "country_not_allowed"
    IP_LIMIT_SIGNUP = "ip_limit_signup"
    IP_LIMIT_CLAIM = "ip_limit_claim"


@dataclass(frozen=True)
class GateResult:
    reason: BlockReason
    count: int = 0


def check_country(country: str, policy: BonusPolicy) -> GateResult | None:
    """Denylist fails open on unknown country; allowlist fails closed."""
    if policy.country_mode == CountryMode.DENYLIST:
        if country and country in policy.countries:
            return GateResult(BlockReason.COUNTRY_BLOCKED)
    elif policy.country_mode == CountryMode.ALLOWLIST:
        if not country or country not in policy.countries:
            return GateResult(BlockReason.COUNTRY_NOT_ALLOWED)
    return None


async def check_ip_velocity(
    ctx: LoginRiskContext,
    policy: BonusPolicy,
    repo: CreditRepositoryProtocol,
    db: AsyncSession,
    now: datetime,
) -> GateResult | None:
    """Withhold the bonus once an IP has claimed `ip_limit_max` bonuses in the window."""
    if not policy.ip_limit_enabled:
        return None

    since = now - timedelta(days=policy.ip_limit_window_days)

    if policy.checks_signup_ip and ctx.signup_ip:
        count = await repo.count_recent_grants(
            db, FIRST_LOGIN_PREFIX, since, signup_ip=ctx.signup_ip
        )
        if count >= policy.ip_limit_max:
            return GateResult(BlockReason.IP_LIMIT_SIGNUP, count)

    if policy.checks_claim_ip and ctx.claim_ip:
        count = await repo.count_recent_grants(
            db, FIRST_LOGIN_PREFIX, since, claim_ip=ctx.claim_ip
        )
        if count >= policy.ip_limit_max:
            return GateResult(BlockReason.IP_LIMIT_CLAIM, count)

    return None
