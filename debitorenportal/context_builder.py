"""Email context assembly.

Builds the flat, named-field structure that dunning templates are rendered
against.  Field names are German because they are the merge-field contract
operators use in stored templates (``{{kunde.name}}``,
``{{summe.gesamt}}``, ``{{mahnung.frist}}``).

No field in the resulting context is ever None: missing customer and
company details become empty strings so rendering stays total.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Mapping

from .formatting import format_date
from .models import CompanySettings, Customer, DunningStage, OverdueInvoice, stage_key
from .stage_classifier import stage_name

PAYMENT_DEADLINE_DAYS = 14
DEFAULT_COUNTRY = "Deutschland"


@dataclass(frozen=True)
class CustomerFields:
    name: str
    ansprechpartner: str
    strasse: str
    plz: str
    ort: str
    land: str
    email: str
    kundennummer: str


@dataclass(frozen=True)
class Totals:
    """Sums across all invoices in one email."""
    offenerBetrag: Decimal
    zinsen: Decimal
    gebuehren: Decimal
    gesamt: Decimal


@dataclass(frozen=True)
class BankFields:
    iban: str
    bic: str
    kontoinhaber: str


@dataclass(frozen=True)
class StageFields:
    stufe: str
    stufeName: str
    datum: str
    frist: str


@dataclass(frozen=True)
class CompanyFields:
    name: str
    strasse: str
    plz: str
    ort: str
    telefon: str
    email: str


@dataclass(frozen=True)
class EmailContext:
    """Everything a dunning template can reference.  Built fresh per render."""

    kunde: CustomerFields
    rechnungen: list[OverdueInvoice]
    summe: Totals
    bank: BankFields
    mahnung: StageFields
    unternehmen: CompanyFields

    def to_template_data(self) -> dict[str, Any]:
        """Nested plain-dict view consumed by the template renderer."""
        return {
            "kunde": vars(self.kunde).copy(),
            "rechnungen": [inv.to_template_data() for inv in self.rechnungen],
            "summe": vars(self.summe).copy(),
            "bank": vars(self.bank).copy(),
            "mahnung": vars(self.mahnung).copy(),
            "unternehmen": vars(self.unternehmen).copy(),
        }


def _text(value) -> str:
    return "" if value is None else str(value)


def _customer_fields(customer: Customer, default_country: str) -> CustomerFields:
    return CustomerFields(
        name=_text(customer.display_name),
        ansprechpartner=_text(customer.contact_person or customer.display_name),
        strasse=_text(customer.street),
        plz=_text(customer.zip),
        ort=_text(customer.city),
        land=_text(customer.country or default_country),
        email=_text(customer.email),
        kundennummer=_text(customer.debtor_number),
    )


def build_context(
    customer: Customer,
    overdue_invoices: list[OverdueInvoice],
    stage: DunningStage | str,
    company_settings: CompanySettings | Mapping[str, Any] | None,
    *,
    today: date,
    deadline_days: int = PAYMENT_DEADLINE_DAYS,
    default_country: str = DEFAULT_COUNTRY,
) -> EmailContext:
    """Assemble the template context for one customer and stage.

    Args:
        customer: The debtor being dunned.
        overdue_invoices: Output of ``project_overdue_invoices``.
        stage: Dunning stage key; unknown values are used as their own label.
        company_settings: Sender and bank details, as ``CompanySettings``
            or a loose mapping with the same keys.
        today: Date printed on the letter; the deadline counts from here.
        deadline_days: Days until the payment deadline (``frist``).
        default_country: ``land`` when the customer has no country.

    Returns:
        A fully populated EmailContext.
    """
    if not isinstance(company_settings, CompanySettings):
        company_settings = CompanySettings.from_mapping(company_settings)

    open_total = sum((inv.amount_open for inv in overdue_invoices), Decimal(0))
    interest_total = sum((inv.interest_amount for inv in overdue_invoices), Decimal(0))
    fee_total = sum((inv.fee_amount for inv in overdue_invoices), Decimal(0))

    key = stage_key(stage)
    deadline = today + timedelta(days=deadline_days)

    return EmailContext(
        kunde=_customer_fields(customer, default_country),
        rechnungen=list(overdue_invoices),
        summe=Totals(
            offenerBetrag=open_total,
            zinsen=interest_total,
            gebuehren=fee_total,
            gesamt=open_total + interest_total + fee_total,
        ),
        bank=BankFields(
            iban=_text(company_settings.iban),
            bic=_text(company_settings.bic),
            kontoinhaber=_text(company_settings.name),
        ),
        mahnung=StageFields(
            stufe=key,
            stufeName=stage_name(key),
            datum=format_date(today),
            frist=format_date(deadline),
        ),
        unternehmen=CompanyFields(
            name=_text(company_settings.name),
            strasse=_text(company_settings.strasse),
            plz=_text(company_settings.plz),
            ort=_text(company_settings.ort),
            telefon=_text(company_settings.telefon),
            email=_text(company_settings.email),
        ),
    )
