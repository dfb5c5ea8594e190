"""
Debitorenportal -- Dunning Service

Orchestrates one dunning run for one customer:

    receipts -> overdue projection -> email context -> rendered template

``DunningService`` holds the configuration, template engine and default
templates so callers (CLI, HTTP layer) only supply records.  Every call
fixes a single ``today`` and uses it for every invoice of the customer.

Usage:
    from debitorenportal.dunning_service import DunningService

    service = DunningService()
    preview = service.preview(customer, receipts, rules, stage="dunning1")
    print(preview.subject)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from .config import PortalConfig, get_config
from .context_builder import EmailContext, build_context
from .models import (
    CompanySettings,
    Customer,
    DunningRules,
    DunningStage,
    DunningTemplate,
    Receipt,
    stage_key,
)
from .overdue import days_overdue, effective_due_date, project_overdue_invoices
from .stage_classifier import NO_STAGE, determine_dunning_level
from .template_engine import (
    HelperRegistry,
    TemplateEngine,
    load_default_templates,
    select_template,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class DunningPreview:
    """A rendered dunning email plus the figures shown in it."""

    customer: Customer
    stage: str
    subject: str
    html: str
    text: str
    invoice_count: int
    summe: dict[str, Decimal]
    context: Optional[EmailContext] = field(default=None, repr=False)

    @property
    def has_invoices(self) -> bool:
        return self.invoice_count > 0

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready view matching the portal's preview response."""
        return {
            "debtorNumber": self.customer.debtor_number,
            "stage": self.stage,
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
            "invoiceCount": self.invoice_count,
            "summe": {k: str(v) for k, v in self.summe.items()},
        }


@dataclass
class OutboundEmail:
    """Envelope handed to the mail transport.  Sending is not done here."""

    to: str
    subject: str
    html: str
    text: str
    stage: str
    debtor_number: int


@dataclass
class ReceivablesSummary:
    """Dashboard figures over a set of receipts."""

    total_open: Decimal = Decimal(0)
    overdue_amount: Decimal = Decimal(0)
    overdue_count: int = 0
    invoice_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalOpenAmount": str(self.total_open),
            "overdueAmount": str(self.overdue_amount),
            "overdueCount": self.overdue_count,
            "totalInvoices": self.invoice_count,
        }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DunningService:
    """Builds dunning previews and outbound emails for customers."""

    def __init__(
        self,
        config: Optional[PortalConfig] = None,
        templates: Optional[list[DunningTemplate]] = None,
        helpers: Optional[HelperRegistry] = None,
    ) -> None:
        self.config = config or get_config()
        self.engine = TemplateEngine(helpers)
        self._templates = templates

    @property
    def templates(self) -> list[DunningTemplate]:
        """Available templates; the shipped defaults unless given explicitly."""
        if self._templates is None:
            self._templates = load_default_templates(
                self.config.template_paths.resolved_dir
            )
        return self._templates

    # -------------------------------------------------------------------
    # Stage selection
    # -------------------------------------------------------------------

    def suggest_stage(
        self,
        customer: Customer,
        receipts: Iterable[Receipt],
        rules: Optional[DunningRules],
        today: date,
    ) -> str:
        """Stage for the customer's most overdue open receipt.

        Falls back to ``reminder`` when no stage threshold is reached yet.
        """
        term = self.config.dunning.default_payment_term_days
        max_days = max(
            (
                days_overdue(effective_due_date(r, customer, today, term), today)
                for r in receipts if r.is_open
            ),
            default=0,
        )
        stage = determine_dunning_level(max_days, rules or DunningRules.default())
        if stage == NO_STAGE:
            return DunningStage.REMINDER.value
        return stage

    # -------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------

    def build_context(
        self,
        customer: Customer,
        receipts: Iterable[Receipt],
        rules: Optional[DunningRules],
        stage: DunningStage | str,
        company: Optional[CompanySettings] = None,
        base_rate=None,
        *,
        today: date,
    ) -> EmailContext:
        """Project the customer's receipts and assemble the email context."""
        cfg = self.config
        invoices = project_overdue_invoices(
            receipts,
            customer,
            rules,
            stage,
            base_rate,
            today=today,
            default_term_days=cfg.dunning.default_payment_term_days,
            interest_settings=cfg.interest,
        )
        return build_context(
            customer,
            invoices,
            stage,
            company if company is not None else cfg.company,
            today=today,
            deadline_days=cfg.dunning.payment_deadline_days,
            default_country=cfg.dunning.default_country,
        )

    def preview(
        self,
        customer: Customer,
        receipts: Iterable[Receipt],
        rules: Optional[DunningRules],
        template: Optional[DunningTemplate] = None,
        stage: DunningStage | str | None = None,
        company: Optional[CompanySettings] = None,
        base_rate=None,
        today: Optional[date] = None,
    ) -> DunningPreview:
        """Render a dunning email preview for one customer.

        Args:
            customer: The debtor.
            receipts: The debtor's receipts (open and settled).
            rules: The debtor's dunning rules, or None for no fees.
            template: Template to render; defaults to the active default
                template for *stage*.
            stage: Dunning stage; suggested from the receipts when omitted.
            company: Sender details; defaults to the configured company.
            base_rate: Published base rate; defaults to the configured fallback.
            today: Reference date for the whole run; defaults to today.

        Raises:
            LookupError: If no active template exists for the stage.
            TemplateError: If the template cannot be rendered.
        """
        today = today or date.today()
        receipts = list(receipts)
        if stage is None:
            stage = template.stage if template is not None else \
                self.suggest_stage(customer, receipts, rules, today)
        key = stage_key(stage)

        if template is None:
            template = select_template(self.templates, key)
            if template is None:
                raise LookupError(f"No active template for stage '{key}'")

        context = self.build_context(
            customer, receipts, rules, key, company, base_rate, today=today
        )
        rendered = self.engine.render_template(template, context)

        logger.info(
            "Preview for %s (%s): %d invoice(s), total %s",
            customer.debtor_number, key, len(context.rechnungen), context.summe.gesamt,
        )
        return DunningPreview(
            customer=customer,
            stage=key,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            invoice_count=len(context.rechnungen),
            summe=vars(context.summe).copy(),
            context=context,
        )

    def prepare_email(
        self,
        customer: Customer,
        receipts: Iterable[Receipt],
        rules: Optional[DunningRules],
        template: Optional[DunningTemplate] = None,
        stage: DunningStage | str | None = None,
        recipient_email: Optional[str] = None,
        **kwargs,
    ) -> OutboundEmail:
        """Render a preview and address it for sending.

        Raises:
            ValueError: If neither *recipient_email* nor the customer's
                email address is set.
        """
        recipient = (recipient_email or customer.email or "").strip()
        if not recipient:
            raise ValueError(
                f"No email address for customer {customer.debtor_number}"
            )
        preview = self.preview(customer, receipts, rules, template, stage, **kwargs)
        return OutboundEmail(
            to=recipient,
            subject=preview.subject,
            html=preview.html,
            text=preview.text,
            stage=preview.stage,
            debtor_number=customer.debtor_number,
        )


# ---------------------------------------------------------------------------
# Dashboard figures
# ---------------------------------------------------------------------------

def summarize_receivables(receipts: Iterable[Receipt], today: date) -> ReceivablesSummary:
    """Totals over open receipts.

    Overdue means a stored due date before *today*; settled receipts are
    not counted at all.
    """
    summary = ReceivablesSummary()
    for receipt in receipts:
        if not receipt.is_open:
            continue
        summary.invoice_count += 1
        amount = receipt.amount_open
        summary.total_open += amount
        if receipt.due_date is not None and receipt.due_date < today:
            summary.overdue_amount += amount
            summary.overdue_count += 1
    return summary
