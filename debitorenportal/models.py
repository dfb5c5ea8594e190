"""Data models for the Debitorenportal dunning core.

All models are plain dataclasses with type hints.  Money is ``Decimal``
everywhere; raw values from the accounting sync are coerced once in
``__post_init__`` so calculation code never parses strings.

Records mirror the portal tables:
  portal_customers      -> Customer
  bhb_receipts_cache    -> Receipt
  dunning_rules         -> DunningRules / StageRule
  dunning_email_templates -> DunningTemplate
  portal settings       -> CompanySettings
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Self

from .formatting import parse_date, to_decimal


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CustomerType(str, Enum):
    """Debtor classification driving the statutory interest margin."""

    CONSUMER = "consumer"
    BUSINESS = "business"

    @classmethod
    def parse(cls, raw: Any) -> CustomerType | None:
        """Map a raw classification to the enum, or None if unknown/absent."""
        if raw is None:
            return None
        if isinstance(raw, cls):
            return raw
        value = str(raw).strip().lower()
        for member in cls:
            if member.value == value:
                return member
        return None


class DunningStage(str, Enum):
    """The four escalation stages, in ascending severity."""

    REMINDER = "reminder"
    DUNNING1 = "dunning1"
    DUNNING2 = "dunning2"
    DUNNING3 = "dunning3"

    @classmethod
    def parse(cls, raw: Any) -> DunningStage | None:
        """Return the matching stage, or None for operator-defined values."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return None


def stage_key(stage: DunningStage | str) -> str:
    """Plain string key for a stage enum or raw stage value."""
    if isinstance(stage, DunningStage):
        return stage.value
    return str(stage)


# ---------------------------------------------------------------------------
# Customer / Receipt
# ---------------------------------------------------------------------------

DEFAULT_PAYMENT_TERM_DAYS = 14


def _finite_amount(value) -> Decimal:
    """Coerce a synced amount; NaN and infinities count as zero."""
    amount = to_decimal(value)
    return amount if amount.is_finite() else Decimal(0)


@dataclass
class Customer:
    """A debtor record as maintained by the sync job.  Read-only here."""

    # --- identity ---
    id: str
    debtor_number: int                      # debtorPostingaccountNumber
    display_name: str

    # --- contact ---
    contact_person: str = ""
    email: str = ""
    street: str = ""
    additional_address_line: str = ""
    zip: str = ""
    city: str = ""
    country: str = ""

    # --- terms ---
    customer_type: CustomerType | None = None
    payment_term_days: int | None = None    # None -> DEFAULT_PAYMENT_TERM_DAYS
    is_active: bool = True

    def __post_init__(self) -> None:
        self.customer_type = CustomerType.parse(self.customer_type)

    def payment_term(self, default: int = DEFAULT_PAYMENT_TERM_DAYS) -> int:
        """Payment term in days, falling back to *default* when unset or zero."""
        return self.payment_term_days or default


@dataclass
class Receipt:
    """A synchronized invoice record (bhb_receipts_cache row).

    Amount fields accept strings or numbers and are coerced to ``Decimal``;
    malformed values become zero instead of raising.
    """

    invoice_number: str
    debtor_number: int
    receipt_date: date | None = None
    due_date: date | None = None
    amount_total: Decimal = Decimal(0)
    amount_open: Decimal = Decimal(0)
    payment_status: str = "unpaid"
    id: str = ""

    def __post_init__(self) -> None:
        self.amount_total = _finite_amount(self.amount_total)
        self.amount_open = _finite_amount(self.amount_open)
        self.receipt_date = parse_date(self.receipt_date)
        self.due_date = parse_date(self.due_date)
        self.invoice_number = str(self.invoice_number or self.id)

    @property
    def is_open(self) -> bool:
        """True when an unpaid balance remains."""
        return self.amount_open > 0


# ---------------------------------------------------------------------------
# Dunning rules
# ---------------------------------------------------------------------------

@dataclass
class StageRule:
    """Threshold and fee for a single dunning stage."""

    days_after_due: int
    fee: Decimal = Decimal(0)
    enabled: bool = True

    def __post_init__(self) -> None:
        self.fee = _finite_amount(self.fee)
        if self.fee < 0:
            raise ValueError(f"Stage fee must not be negative: {self.fee}")


@dataclass
class DunningRules:
    """Per-customer (or default) dunning configuration.

    ``stages`` is keyed by the four :class:`DunningStage` members; any
    missing stage is treated as disabled.
    """

    stages: dict[DunningStage, StageRule] = field(default_factory=dict)
    grace_days: int = 0
    interest_rate_percent: Decimal = Decimal(0)
    use_legal_rate: bool = False
    customer_id: str = ""

    def __post_init__(self) -> None:
        self.interest_rate_percent = to_decimal(self.interest_rate_percent)
        normalized: dict[DunningStage, StageRule] = {}
        for key, rule in self.stages.items():
            stage = DunningStage.parse(key)
            if stage is None:
                raise ValueError(f"Unknown dunning stage key: {key!r}")
            normalized[stage] = rule
        self.stages = normalized

    def rule_for(self, stage: DunningStage | str) -> StageRule | None:
        """Return the rule for *stage*, or None if unknown or missing."""
        parsed = DunningStage.parse(stage)
        if parsed is None:
            return None
        return self.stages.get(parsed)

    def fee_for(self, stage: DunningStage | str) -> Decimal:
        """Flat fee charged at *stage*.

        Reminders never carry a fee.  Unknown, missing or disabled stages
        cost nothing.
        """
        if DunningStage.parse(stage) is DunningStage.REMINDER:
            return Decimal(0)
        rule = self.rule_for(stage)
        if rule is None or not rule.enabled:
            return Decimal(0)
        return rule.fee

    @classmethod
    def default(cls) -> Self:
        """The stage table applied when a customer has no saved rules."""
        return cls(stages={
            DunningStage.REMINDER: StageRule(days_after_due=7, fee=Decimal(0), enabled=True),
            DunningStage.DUNNING1: StageRule(days_after_due=14, fee=Decimal(5), enabled=True),
            DunningStage.DUNNING2: StageRule(days_after_due=28, fee=Decimal(10), enabled=True),
            DunningStage.DUNNING3: StageRule(days_after_due=42, fee=Decimal(15), enabled=False),
        })


# ---------------------------------------------------------------------------
# Derived view: overdue invoice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OverdueInvoice:
    """An open, overdue invoice with computed interest and fee.

    Derived fresh on every request and never persisted.
    """

    invoice_number: str
    receipt_date: date
    due_date: date
    amount: Decimal
    amount_open: Decimal
    days_overdue: int
    interest_rate: Decimal
    interest_amount: Decimal
    fee_amount: Decimal
    total_with_interest: Decimal

    def to_template_data(self) -> dict[str, Any]:
        """Merge-field view using the camelCase names templates reference."""
        return {
            "invoiceNumber": self.invoice_number,
            "receiptDate": self.receipt_date,
            "dueDate": self.due_date,
            "amount": self.amount,
            "amountOpen": self.amount_open,
            "daysOverdue": self.days_overdue,
            "interestRate": self.interest_rate,
            "interestAmount": self.interest_amount,
            "feeAmount": self.fee_amount,
            "totalWithInterest": self.total_with_interest,
        }


# ---------------------------------------------------------------------------
# Company settings
# ---------------------------------------------------------------------------

@dataclass
class CompanySettings:
    """Sender and bank details supplied by the settings collaborator."""

    name: str = ""
    strasse: str = ""
    plz: str = ""
    ort: str = ""
    telefon: str = ""
    email: str = ""
    iban: str = ""
    bic: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> Self:
        """Build from a loose mapping; unknown keys are ignored, None -> ''."""
        data = data or {}
        return cls(**{
            name: str(data.get(name) or "")
            for name in cls.__dataclass_fields__
        })


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@dataclass
class DunningTemplate:
    """A stored merge-field email template for one dunning stage."""

    name: str
    stage: str
    subject: str
    html_body: str
    text_body: str | None = None
    is_default: bool = False
    is_active: bool = True
    id: str = ""


@dataclass(frozen=True)
class RenderedEmail:
    """Output of rendering a :class:`DunningTemplate`."""

    subject: str
    html: str
    text: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"subject": self.subject, "html": self.html, "text": self.text}
