"""
Status classifier — maps remaining validity to a StatusTier.

Boundaries (every edge is a strict ``<``)::

    days <  0                         → EXPIRED
    0 <= days < critical_days         → CRITICAL
    critical_days <= days < warning   → WARNING
    days >= warning_days              → HEALTHY

Day counts are floored toward negative infinity, so a certificate one second
past its notAfter reports -1 rather than 0.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from monitor.models import StatusTier

_ONE_DAY = timedelta(days=1)


def days_remaining(not_after: datetime, now: datetime) -> int:
    """Whole days from *now* until *not_after*, floored (negative once expired)."""
    return (not_after - now) // _ONE_DAY


def tier_for_days(days: int, warning_days: int, critical_days: int) -> StatusTier:
    if days < 0:
        return StatusTier.EXPIRED
    if days < critical_days:
        return StatusTier.CRITICAL
    if days < warning_days:
        return StatusTier.WARNING
    return StatusTier.HEALTHY


def classify(
    not_after: datetime,
    now: datetime,
    warning_days: int,
    critical_days: int,
) -> StatusTier:
    """Classify a certificate expiring at *not_after* as seen from *now*."""
    return tier_for_days(days_remaining(not_after, now), warning_days, critical_days)


def validate_thresholds(warning_days: int, critical_days: int) -> None:
    """Raise ValueError unless warning_days > critical_days >= 0."""
    if critical_days < 0:
        raise ValueError(f"critical_days must be >= 0, got {critical_days}")
    if warning_days <= critical_days:
        raise ValueError(
            f"warning_days ({warning_days}) must be greater than critical_days ({critical_days})"
        )
