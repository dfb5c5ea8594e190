"""Late-payment interest.

Two pure functions:

    calculate_interest(principal, days_overdue, annual_rate_percent)
        Simple daily proration over a fixed 365-day year.

    resolve_rate(customer_type, base_rate)
        Statutory annual rate: published base rate plus 5 percentage
        points for consumers or 9 for businesses.  Unclassified debtors
        get no statutory interest.

Both take ``Decimal`` (or anything :func:`to_decimal` accepts) and return
``Decimal``.  Nothing is rounded here; rounding to the cent happens only
when amounts are formatted for display.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from .config import InterestSettings
from .formatting import is_nan, to_decimal
from .models import CustomerType

_DEFAULTS = InterestSettings()


def calculate_interest(
    principal,
    days_overdue,
    annual_rate_percent,
    days_per_year: int = _DEFAULTS.days_per_year,
) -> Decimal:
    """Return accrued simple interest.

    ``principal * rate * days / (100 * days_per_year)``

    Returns 0 when *days_overdue* or *annual_rate_percent* is not positive.
    NaN inputs propagate as NaN.

    >>> calculate_interest(Decimal("1000"), 40, Decimal("12.62")).quantize(Decimal("0.01"))
    Decimal('13.83')
    """
    principal = to_decimal(principal)
    days = to_decimal(days_overdue)
    rate = to_decimal(annual_rate_percent)

    if is_nan(days) or is_nan(rate):
        return Decimal("NaN")
    if days <= 0 or rate <= 0:
        return Decimal(0)

    return principal * rate * days / (100 * days_per_year)


def resolve_rate(
    customer_type: CustomerType | str | None,
    base_rate=None,
    settings: Optional[InterestSettings] = None,
) -> Decimal:
    """Return the statutory annual interest rate in percent.

    Args:
        customer_type: ``consumer`` / ``business``.  Absent or unknown
            values yield 0.
        base_rate: Published base rate in percent.  Falls back to
            ``settings.fallback_base_rate`` when None.
        settings: Margin configuration; defaults to the built-in values.
    """
    settings = settings or _DEFAULTS
    parsed = CustomerType.parse(customer_type)
    if parsed is None:
        return Decimal(0)

    if base_rate is None:
        rate = settings.fallback_base_rate
    else:
        rate = to_decimal(base_rate, settings.fallback_base_rate)

    if parsed is CustomerType.BUSINESS:
        return rate + settings.business_margin
    return rate + settings.consumer_margin
