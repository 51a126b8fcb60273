"""First-login bonus against a real SQLite database: idempotency and the abuse gates."""

import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cr_bonus.application.service import FirstLoginBonusService
from src.cr_bonus.domain.policy import BonusPolicy, LoginRiskContext
from src.cr_common.enums import CountryMode, IpLimitSource
from src.cr_ledger.application.service import CreditLedgerService
from src.cr_ledger.domain.models import CreditEntry, CreditUser


def _policy(**overrides: object) -> BonusPolicy:
    fields: dict[str, object] = {
        "enabled": True,
        "amount": 20,
        "valid_days": 30,
        "country_mode": CountryMode.DENYLIST,
        "countries": frozenset({"KP", "IR"}),
        "ip_limit_max": 1,
        "ip_limit_window_days": 7,
    }
    fields.update(overrides)
    return BonusPolicy(**fields)


def _ctx(ip: str = "1.2.3.4", country: str = "US") -> LoginRiskContext:
    return LoginRiskContext(signup_ip=ip, claim_ip=ip, country=country)


class TestIdempotency:
    async def test_second_login_returns_same_entry(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy())
        user = CreditUser(id="u-1")

        first = await svc.grant_first_login_bonus(db, user, _ctx())
        second = await svc.grant_first_login_bonus(db, user, _ctx())

        assert first is not None and second is not None
        assert first.id == second.id
        assert await CreditLedgerService().get_balance(db, "u-1") == 20

    async def test_concurrent_logins_grant_once(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        svc = FirstLoginBonusService(policy=_policy(ip_limit_enabled=False))
        user = CreditUser(id="u-2")

        async def _login() -> CreditEntry | None:
            async with session_factory() as session:
                return await svc.grant_first_login_bonus(session, user, _ctx())

        results = await asyncio.gather(*(_login() for _ in range(4)))

        assert all(r is not None for r in results)
        assert len({r.id for r in results if r is not None}) == 1
        async with session_factory() as check:
            assert await CreditLedgerService().count_credits(check, user_id="u-2") == 1

    async def test_disabled_grants_nothing(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy(enabled=False))

        assert await svc.grant_first_login_bonus(db, CreditUser(id="u-3"), _ctx()) is None
        assert await CreditLedgerService().count_credits(db, user_id="u-3") == 0


class TestCountryGate:
    async def test_denylisted_country_blocked(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy())

        result = await svc.grant_first_login_bonus(
            db, CreditUser(id="u-4"), _ctx(country="kp")
        )

        assert result is None
        assert await CreditLedgerService().count_credits(db, user_id="u-4") == 0

    async def test_allowlist_blocks_unknown_country(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(
            policy=_policy(country_mode=CountryMode.ALLOWLIST, countries=frozenset({"US"}))
        )

        assert await svc.grant_first_login_bonus(db, CreditUser(id="u-5"), _ctx(country="")) is None
        assert await svc.grant_first_login_bonus(db, CreditUser(id="u-6"), _ctx()) is not None


class TestIpVelocityGate:
    async def test_second_account_from_same_ip_blocked(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy())

        first = await svc.grant_first_login_bonus(db, CreditUser(id="u-7"), _ctx("1.2.3.4"))
        second = await svc.grant_first_login_bonus(db, CreditUser(id="u-8"), _ctx("1.2.3.4"))
        other = await svc.grant_first_login_bonus(db, CreditUser(id="u-9"), _ctx("5.6.7.8"))

        assert first is not None
        assert first.signup_ip == "1.2.3.4"
        assert second is None
        assert other is not None

    async def test_higher_limit_allows_more_claims(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy(ip_limit_max=2))

        results = [
            await svc.grant_first_login_bonus(db, CreditUser(id=f"u-{i}"), _ctx("7.7.7.7"))
            for i in range(10, 13)
        ]

        assert [r is not None for r in results] == [True, True, False]

    async def test_signup_source_ignores_shared_claim_ip(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=_policy(ip_limit_source=IpLimitSource.SIGNUP))

        first = await svc.grant_first_login_bonus(
            db, CreditUser(id="u-20"),
            LoginRiskContext(signup_ip="10.0.0.1", claim_ip="3.3.3.3", country="US"),
        )
        second = await svc.grant_first_login_bonus(
            db, CreditUser(id="u-21"),
            LoginRiskContext(signup_ip="10.0.0.2", claim_ip="3.3.3.3", country="US"),
        )

        assert first is not None
        assert second is not None

    async def test_other_grants_do_not_count(self, db: AsyncSession) -> None:
        ledger = CreditLedgerService()
        await ledger.grant(db, CreditUser(id="u-30"), 100, claim_ip="4.4.4.4", signup_ip="4.4.4.4")
        svc = FirstLoginBonusService(ledger=ledger, policy=_policy())

        assert await svc.grant_first_login_bonus(db, CreditUser(id="u-31"), _ctx("4.4.4.4")) is not None

    async def test_lookalike_transaction_keys_do_not_count(self, db: AsyncSession) -> None:
        ledger = CreditLedgerService()
        await ledger.grant(
            db, CreditUser(id="u-40"), 10,
            transaction_no="firstXlogin:u-40", signup_ip="4.4.4.5", claim_ip="4.4.4.5",
        )
        svc = FirstLoginBonusService(ledger=ledger, policy=_policy())

        assert await svc.grant_first_login_bonus(db, CreditUser(id="u-41"), _ctx("4.4.4.5")) is not None


class TestDescriptions:
    async def test_registration_grant_labelled_initial_credits(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=BonusPolicy(enabled=True, amount=5))

        entry = await svc.grant_initial_credits(db, CreditUser(id="n-1"))

        assert entry is not None
        stored = await CreditLedgerService().find_by_transaction_no(db, entry.transaction_no)
        assert stored is not None
        assert stored.description == "initial credits"
        assert stored.transaction_scene == "gift"

    async def test_first_login_grant_labelled_first_login_bonus(self, db: AsyncSession) -> None:
        svc = FirstLoginBonusService(policy=BonusPolicy(enabled=True, amount=5))

        entry = await svc.grant_first_login_bonus(db, CreditUser(id="n-2"), _ctx("8.8.4.4"))

        assert entry is not None
        stored = await CreditLedgerService().find_by_transaction_no(db, entry.transaction_no)
        assert stored is not None
        assert stored.description == "first login bonus"
