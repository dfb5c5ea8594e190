"""Money coercion and German-locale formatting helpers.

Amounts arrive from the accounting sync as strings (``"1234.56"``), as
German display strings (``"1.234,56 €"``) or as plain numbers.  Everything
is converted to ``Decimal`` once, at the model boundary, using
:func:`to_decimal`.

The ``format_*`` functions produce the strings used in dunning emails:

    format_currency(Decimal("1234.56"))  -> '1.234,56 €'
    format_date(date(2026, 2, 5))        -> '05.02.2026'
    format_number(Decimal("12.5"), 1)    -> '12,5'
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CURRENCY_SYMBOL = "€"

_CENT = Decimal("0.01")

# Strings that mean "no value" in synced records.
_NULL_SIGNALS = {"", "-", "null", "none", "n/a", "#n/a"}

_GERMAN_AMOUNT = re.compile(r"^-?\d{1,3}(\.\d{3})*(,\d+)?$|^-?\d+,\d+$")


def _swap_separators(text: str) -> str:
    """'1,234.56' -> '1.234,56'."""
    return text.replace(",", "X").replace(".", ",").replace("X", ".")


def is_nan(value) -> bool:
    """True for float or Decimal NaN."""
    return value != value


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

def to_decimal(value, default: Decimal | int = 0) -> Decimal:
    """Coerce *value* into a ``Decimal``, returning *default* on failure.

    Handles:
    - ``Decimal``, ``int`` and ``float`` (floats go through ``str`` so
      ``0.1`` stays ``Decimal("0.1")``).
    - Plain strings like ``"1234.56"``.
    - German display strings like ``"1.234,56 €"`` or ``"12,5"``.

    ``bool`` is not a number here and yields *default*.
    """
    fallback = default if isinstance(default, Decimal) else Decimal(default)

    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if is_nan(value):
            return Decimal("NaN")
        return Decimal(str(value))

    s = str(value).strip()
    if s.lower() in _NULL_SIGNALS:
        return fallback

    s = s.replace(CURRENCY_SYMBOL, "").replace("EUR", "").replace("\xa0", "").strip()
    if _GERMAN_AMOUNT.match(s):
        s = s.replace(".", "").replace(",", ".")

    try:
        return Decimal(s)
    except (InvalidOperation, ValueError):
        return fallback


def round_cents(value) -> Decimal:
    """Quantize to the cent, half away from zero."""
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_currency(text: str) -> Decimal:
    """Parse a :func:`format_currency` string back into a ``Decimal``.

    >>> parse_currency("1.234,56 €")
    Decimal('1234.56')
    """
    s = str(text).replace(CURRENCY_SYMBOL, "").replace("\xa0", "").strip()
    s = s.replace(".", "").replace(",", ".")
    try:
        return Decimal(s)
    except InvalidOperation:
        raise ValueError(f"Not a currency amount: {text!r}") from None


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return not is_nan(value)
    return False


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_currency(value) -> str:
    """Format a number as Euro currency in German notation.

    Non-numeric input (None, strings, NaN) yields ``'0,00 €'``.
    """
    if not _is_number(value):
        return f"0,00 {CURRENCY_SYMBOL}"
    amount = round_cents(value)
    return f"{_swap_separators(f'{amount:,.2f}')} {CURRENCY_SYMBOL}"


def format_number(value, decimals: int = 2) -> str:
    """Format a number with German grouping and a fixed number of decimals."""
    if not _is_number(value):
        return "0"
    try:
        decimals = max(0, int(decimals))
    except (TypeError, ValueError, OverflowError):
        decimals = 2
    quantum = Decimal(1).scaleb(-decimals)
    amount = to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    return _swap_separators(f"{amount:,.{decimals}f}")


def parse_date(value) -> date | None:
    """Parse a date from a ``date``, ``datetime`` or string.

    Accepts ISO dates and timestamps (``2026-02-05``,
    ``2026-02-05T00:00:00Z``) and German dates (``05.02.2026``).
    Returns None when nothing matches.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%d.%m.%Y", "%Y-%m-%d", "%d.%m.%y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def format_date(value) -> str:
    """Format a date as ``dd.mm.yyyy``.  Returns ``''`` for empty input."""
    d = parse_date(value)
    if d is None:
        return ""
    return d.strftime("%d.%m.%Y")
