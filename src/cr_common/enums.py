"""Global enums: values are what the credits table stores."""

from enum import Enum


class CreditTransactionType(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"


class CreditTransactionScene(str, Enum):
    """Why a grant was issued. Informational only, never affects draw-down order."""
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    GIFT = "gift"
    REWARD = "reward"


class CreditStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


class CountryMode(str, Enum):
    DENYLIST = "denylist"
    ALLOWLIST = "allowlist"


class IpLimitSource(str, Enum):
    SIGNUP = "signup"
    CLAIM = "claim"
    BOTH = "both"
