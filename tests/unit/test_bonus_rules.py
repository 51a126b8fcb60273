"""Tests for cr_bonus.domain.rules: country and IP velocity gates."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from src.cr_bonus.domain.policy import BonusPolicy, LoginRiskContext
from src.cr_bonus.domain.rules import (
    FIRST_LOGIN_PREFIX,
    BlockReason,
    GateResult,
    check_country,
    check_ip_velocity,
    first_login_transaction_no,
)
from src.cr_common.enums import CountryMode, IpLimitSource

NOW = datetime(2026, 5, 10, tzinfo=UTC)


def _policy(**overrides: object) -> BonusPolicy:
    fields: dict[str, object] = {
        "enabled": True,
        "amount": 20,
        "country_mode": CountryMode.DENYLIST,
        "countries": frozenset({"KP", "IR"}),
    }
    fields.update(overrides)
    return BonusPolicy(**fields)


class TestTransactionNo:
    def test_deterministic_per_user(self) -> None:
        assert first_login_transaction_no("u-42") == "first_login:u-42"
        assert first_login_transaction_no("u-42").startswith(FIRST_LOGIN_PREFIX)


class TestCheckCountry:
    def test_denylist_blocks_listed(self) -> None:
        assert check_country("KP", _policy()) == GateResult(BlockReason.COUNTRY_BLOCKED)

    def test_denylist_allows_others_and_unknown(self) -> None:
        assert check_country("US", _policy()) is None
        assert check_country("", _policy()) is None

    def test_allowlist_blocks_unlisted_and_unknown(self) -> None:
        policy = _policy(country_mode=CountryMode.ALLOWLIST, countries=frozenset({"US"}))
        assert check_country("US", policy) is None
        assert check_country("DE", policy) == GateResult(BlockReason.COUNTRY_NOT_ALLOWED)
        assert check_country("", policy) == GateResult(BlockReason.COUNTRY_NOT_ALLOWED)

    def test_disabled_mode_lets_everything_through(self) -> None:
        policy = _policy(country_mode=None)
        assert check_country("KP", policy) is None


class TestCheckIpVelocity:
    async def test_disabled_skips_store(self) -> None:
        repo = AsyncMock()
        ctx = LoginRiskContext("1.1.1.1", "1.1.1.1", "US")

        result = await check_ip_velocity(
            ctx, _policy(ip_limit_enabled=False), repo, MagicMock(), NOW
        )

        assert result is None
        repo.count_recent_grants.assert_not_called()

    async def test_signup_ip_over_limit(self) -> None:
        repo = AsyncMock()
        repo.count_recent_grants.return_value = 1
        db = MagicMock()
        ctx = LoginRiskContext("1.1.1.1", "2.2.2.2", "US")

        result = await check_ip_velocity(ctx, _policy(), repo, db, NOW)

        assert result == GateResult(BlockReason.IP_LIMIT_SIGNUP, 1)
        repo.count_recent_grants.assert_awaited_once_with(
            db, FIRST_LOGIN_PREFIX, NOW - timedelta(days=7), signup_ip="1.1.1.1"
        )

    async def test_claim_ip_over_limit(self) -> None:
        repo = AsyncMock()
        repo.count_recent_grants.side_effect = [0, 4]
        ctx = LoginRiskContext("1.1.1.1", "2.2.2.2", "US")

        result = await check_ip_velocity(
            ctx, _policy(ip_limit_max=3), repo, MagicMock(), NOW
        )

        assert result == GateResult(BlockReason.IP_LIMIT_CLAIM, 4)

    async def test_under_limit_passes(self) -> None:
        repo = AsyncMock()
        repo.count_recent_grants.return_value = 1
        ctx = LoginRiskContext("1.1.1.1", "2.2.2.2", "US")

        result = await check_ip_velocity(
            ctx, _policy(ip_limit_max=2), repo, MagicMock(), NOW
        )

        assert result is None
        assert repo.count_recent_grants.await_count == 2

    async def test_source_selects_which_ip(self) -> None:
        repo = AsyncMock()
        repo.count_recent_grants.return_value = 0
        db = MagicMock()
        ctx = LoginRiskContext("1.1.1.1", "2.2.2.2", "US")

        await check_ip_velocity(
            ctx, _policy(ip_limit_source=IpLimitSource.CLAIM, ip_limit_window_days=30),
            repo, db, NOW,
        )

        repo.count_recent_grants.assert_awaited_once_with(
            db, FIRST_LOGIN_PREFIX, NOW - timedelta(days=30), claim_ip="2.2.2.2"
        )

    async def test_missing_ips_skip_checks(self) -> None:
        repo = AsyncMock()
        result = await check_ip_velocity(
            LoginRiskContext(), _policy(), repo, MagicMock(), NOW
        )
        assert result is None
        repo.count_recent_grants.assert_not_called()
