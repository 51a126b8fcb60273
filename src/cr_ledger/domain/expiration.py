from datetime import datetime, timedelta

from src.cr_common.datetime_utils import utc_now


def calculate_expires_at(
    valid_days: int | None = None,
    period_end: datetime | None = None,
    now: datetime | None = None,
) -> datetime | None:
    """Expiry for a new grant; None means the grant never expires.

    A subscription period end always wins: subscription credits never outlive
    the billing period they were issued for.
    """
    if period_end is not None:
        return period_end
    if valid_days and valid_days > 0:
        return (now or utc_now()) + timedelta(days=valid_days)
    return None
