"""First-login bonus policy and the normalizers the gate relies on.

The config service hands values over as strings; BonusPolicy.from_configs
parses them with the same conventions the admin settings page writes.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass

from pydantic import BaseModel, Field

from config.settings import Settings
from src.cr_common.enums import CountryMode, IpLimitSource

# Keep compatible with varchar(45) for IPv6 and varchar(2) for ISO-2
MAX_IP_LENGTH = 45
MAX_COUNTRY_LENGTH = 2

DEFAULT_COUNTRY_LIST = "KP,IR,MM,IN"

_ISO2 = re.compile(r"^[A-Z]{2}$")
_LIST_SEPARATORS = re.compile(r"[\s,]+")


def normalize_ip(raw: object) -> str:
    if not isinstance(raw, str):
        return ""
    return raw.strip()[:MAX_IP_LENGTH]


def normalize_country(raw: object) -> str:
    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()[:MAX_COUNTRY_LENGTH]


def parse_country_list(raw: str | None) -> frozenset[str]:
    """'kp, IR  mm,,xyz' -> {'KP', 'IR', 'MM'}; malformed tokens are dropped."""
    codes = set()
    for token in _LIST_SEPARATORS.split((raw or "").strip()):
        code = token.strip().upper()
        if _ISO2.match(code):
            codes.add(code)
    return frozenset(codes)


def _parse_int(raw: object, default: int) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return default


def _parse_country_mode(raw: object) -> CountryMode | None:
    # Unknown modes disable the country gate rather than guess
    try:
        return CountryMode(str(raw or CountryMode.DENYLIST.value).strip().lower())
    except ValueError:
        return None


def _parse_ip_source(raw: object) -> IpLimitSource | None:
    try:
        return IpLimitSource(str(raw or IpLimitSource.BOTH.value).strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class LoginRiskContext:
    """What the request layer knows about a login. Every field is best-effort."""
    signup_ip: str = ""
    claim_ip: str = ""
    country: str = ""

    def normalized(self) -> "LoginRiskContext":
        return LoginRiskContext(
            signup_ip=normalize_ip(self.signup_ip),
            claim_ip=normalize_ip(self.claim_ip),
            country=normalize_country(self.country),
        )


class BonusPolicy(BaseModel):
    enabled: bool = False
    amount: int = 0
    valid_days: int = 0
    # None lets each grant path use its own label
    description: str | None = None
    country_mode: CountryMode | None = CountryMode.DENYLIST
    countries: frozenset[str] = Field(
        default_factory=lambda: parse_country_list(DEFAULT_COUNTRY_LIST)
    )
    ip_limit_enabled: bool = True
    ip_limit_max: int = Field(default=1, ge=1)
    ip_limit_window_days: int = Field(default=7, ge=1)
    ip_limit_source: IpLimitSource | None = IpLimitSource.BOTH

    @property
    def checks_signup_ip(self) -> bool:
        return self.ip_limit_source in (IpLimitSource.SIGNUP, IpLimitSource.BOTH)

    @property
    def checks_claim_ip(self) -> bool:
        return self.ip_limit_source in (IpLimitSource.CLAIM, IpLimitSource.BOTH)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BonusPolicy":
        return cls(
            enabled=settings.INITIAL_CREDITS_ENABLED,
            amount=settings.INITIAL_CREDITS_AMOUNT,
            valid_days=max(0, settings.INITIAL_CREDITS_VALID_DAYS),
            description=settings.INITIAL_CREDITS_DESCRIPTION or None,
            country_mode=_parse_country_mode(settings.INITIAL_CREDITS_COUNTRY_MODE),
            countries=parse_country_list(settings.INITIAL_CREDITS_COUNTRY_LIST),
            ip_limit_enabled=settings.INITIAL_CREDITS_IP_LIMIT_ENABLED,
            ip_limit_max=max(1, settings.INITIAL_CREDITS_IP_LIMIT_MAX),
            ip_limit_window_days=max(1, settings.INITIAL_CREDITS_IP_LIMIT_WINDOW_DAYS),
            ip_limit_source=_parse_ip_source(settings.INITIAL_CREDITS_IP_LIMIT_SOURCE),
        )

    @classmethod
    def from_configs(
        cls, configs: Mapping[str, str | None], defaults: "BonusPolicy | None" = None
    ) -> "BonusPolicy":
        """Build a policy from config-service strings, falling back to `defaults`."""
        base = defaults or cls()

        def _get(key: str) -> str | None:
            value = configs.get(key)
            return None if value is None else str(value)

        enabled_raw = _get("initial_credits_enabled")
        ip_enabled_raw = _get("initial_credits_ip_limit_enabled")
        mode_raw = _get("initial_credits_country_mode")
        list_raw = _get("initial_credits_country_list")
        source_raw = _get("initial_credits_ip_limit_source")
        amount_raw = _get("initial_credits_amount")
        valid_days_raw = _get("initial_credits_valid_days")
        max_raw = _get("initial_credits_ip_limit_max")
        window_raw = _get("initial_credits_ip_limit_window_days")

        return cls(
            enabled=base.enabled if enabled_raw is None else enabled_raw.strip() == "true",
            amount=base.amount if amount_raw is None else max(0, _parse_int(amount_raw, 0)),
            valid_days=(
                base.valid_days if valid_days_raw is None
                else max(0, _parse_int(valid_days_raw, 0))
            ),
            description=_get("initial_credits_description") or base.description,
            country_mode=base.country_mode if mode_raw is None else _parse_country_mode(mode_raw),
            countries=(
                parse_country_list(list_raw) if (list_raw or "").strip() else base.countries
            ),
            ip_limit_enabled=(
                base.ip_limit_enabled if ip_enabled_raw is None
                else ip_enabled_raw.strip() != "false"
            ),
            ip_limit_max=(
                base.ip_limit_max if max_raw is None
                else max(1, _parse_int(max_raw, 1) or 1)
            ),
            ip_limit_window_days=(
                base.ip_limit_window_days if window_raw is None
                else max(1, _parse_int(window_raw, 7) or 7)
            ),
            ip_limit_source=(
                base.ip_limit_source if source_raw is None else _parse_ip_source(source_raw)
            ),
        )
