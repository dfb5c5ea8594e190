"""Overdue invoice projection.

Turns a customer's synchronized receipts into the ordered list of open,
overdue invoices shown in dunning emails, with statutory interest and the
stage fee applied per invoice.

``today`` is always passed in explicitly so every invoice in one
customer's batch is measured against the same reference date.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from .config import InterestSettings
from .interest import calculate_interest, resolve_rate
from .models import (
    DEFAULT_PAYMENT_TERM_DAYS,
    Customer,
    DunningRules,
    DunningStage,
    OverdueInvoice,
    Receipt,
)

logger = logging.getLogger(__name__)


def effective_due_date(
    receipt: Receipt,
    customer: Customer,
    today: date,
    default_term_days: int = DEFAULT_PAYMENT_TERM_DAYS,
) -> date:
    """Stored due date, or receipt date plus the customer's payment term.

    A receipt without a receipt date is treated as issued *today*.
    """
    if receipt.due_date is not None:
        return receipt.due_date
    issued = receipt.receipt_date or today
    return issued + timedelta(days=customer.payment_term(default_term_days))


def days_overdue(due_date: date, today: date) -> int:
    """Whole days elapsed since *due_date*, floored at zero."""
    return max(0, (today - due_date).days)


def project_overdue_invoices(
    receipts: Iterable[Receipt],
    customer: Customer,
    dunning_rules: Optional[DunningRules],
    stage: DunningStage | str,
    base_rate=None,
    *,
    today: date,
    default_term_days: int = DEFAULT_PAYMENT_TERM_DAYS,
    interest_settings: Optional[InterestSettings] = None,
) -> list[OverdueInvoice]:
    """Project open receipts into overdue invoices for *stage*.

    Steps:
      1. Keep receipts with an open amount above zero
      2. Resolve the effective due date and days overdue
      3. Apply the statutory rate for the customer's classification
      4. Add the stage fee (reminders are always free)
      5. Drop invoices that are not yet overdue
      6. Sort most overdue first, invoice number ascending on ties

    Args:
        receipts: Receipts belonging to *customer*.
        customer: The debtor; supplies classification and payment term.
        dunning_rules: Stage fee table, or None for no fees.
        stage: The dunning stage being prepared.
        base_rate: Published base rate; falls back to the configured value.
        today: Reference date for the whole batch.
        default_term_days: Payment term for customers without one.
        interest_settings: Margins and fallback base rate.

    Returns:
        List of OverdueInvoice, possibly empty.
    """
    settings = interest_settings or InterestSettings()
    interest_rate = resolve_rate(customer.customer_type, base_rate, settings)
    fee = dunning_rules.fee_for(stage) if dunning_rules is not None else Decimal(0)

    projected: list[OverdueInvoice] = []
    for receipt in receipts:
        if not receipt.is_open:
            continue

        due = effective_due_date(receipt, customer, today, default_term_days)
        days = days_overdue(due, today)
        if days <= 0:
            continue

        interest = calculate_interest(
            receipt.amount_open, days, interest_rate, settings.days_per_year
        )
        projected.append(OverdueInvoice(
            invoice_number=receipt.invoice_number,
            receipt_date=receipt.receipt_date or today,
            due_date=due,
            amount=receipt.amount_total,
            amount_open=receipt.amount_open,
            days_overdue=days,
            interest_rate=interest_rate,
            interest_amount=interest,
            fee_amount=fee,
            total_with_interest=receipt.amount_open + interest + fee,
        ))

    projected.sort(key=lambda inv: (-inv.days_overdue, inv.invoice_number))

    logger.debug(
        "Customer %s: %d overdue invoice(s) for stage %s at %s%% interest",
        customer.debtor_number, len(projected), stage, interest_rate,
    )
    return projected
