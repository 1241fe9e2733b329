from collections.abc import Iterable
from datetime import datetime, timedelta

from models.purpose import Purpose


def governing_duration_days(
    purposes: Iterable[Purpose],
    *,
    duration_days: int | None,
    default_days: int,
) -> int:
    """Lifetime of a grant covering ``purposes``.

    Purposes that require renewal govern with their shortest renewal period.
    Otherwise the longest retention period applies, with ``default_days`` for
    purposes that declare none. A requested duration can only shorten the result.
    """
    purposes = list(purposes)
    renewal_periods = [
        purpose.renewal_period_days
        for purpose in purposes
        if purpose.requires_renewal and purpose.renewal_period_days
    ]
    if renewal_periods:
        days = min(renewal_periods)
    elif purposes:
        days = max(purpose.retention_period_days or default_days for purpose in purposes)
    else:
        days = default_days
    if duration_days is not None and duration_days > 0:
        days = min(days, duration_days)
    return days


def compute_expiry(
    purposes: Iterable[Purpose],
    granted_at: datetime,
    *,
    duration_days: int | None,
    default_days: int,
) -> datetime:
    return granted_at + timedelta(
        days=governing_duration_days(purposes, duration_days=duration_days, default_days=default_days)
    )


def max_retention_days(purposes: Iterable[Purpose], default_days: int) -> int:
    values = [purpose.retention_period_days or default_days for purpose in purposes]
    return max(values) if values else default_days
