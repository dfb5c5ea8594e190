"""Tests for debitorenportal.dunning_service -- preview orchestration."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from debitorenportal.config import PortalConfig
from debitorenportal.dunning_service import (
    DunningService,
    ReceivablesSummary,
    summarize_receivables,
)
from debitorenportal.models import (
    CompanySettings,
    Customer,
    DunningRules,
    DunningTemplate,
    Receipt,
)
from debitorenportal.template_engine import TemplateError

TODAY = date(2026, 3, 1)
CENT = Decimal("0.01")


def _make_customer(**overrides) -> Customer:
    defaults = dict(id="c-1", debtor_number=10001, display_name="Acme GmbH",
                    email="ap@acme.de", customer_type="business")
    defaults.update(overrides)
    return Customer(**defaults)


def _make_receipt(days_late: int, amount="1000", number="R-1") -> Receipt:
    return Receipt(
        invoice_number=number,
        debtor_number=10001,
        receipt_date=TODAY - timedelta(days=days_late + 14),
        due_date=TODAY - timedelta(days=days_late),
        amount_total=amount,
        amount_open=amount,
    )


@pytest.fixture
def service() -> DunningService:
    return DunningService(PortalConfig())


# ============================================================================
# Stage suggestion
# ============================================================================

class TestSuggestStage:

    @pytest.mark.parametrize("days_late, expected", [
        (3, "reminder"),
        (7, "reminder"),
        (20, "dunning1"),
        (40, "dunning2"),
        (365, "dunning2"),
    ])
    def test_default_rules(self, service, days_late, expected):
        receipts = [_make_receipt(days_late)]
        assert service.suggest_stage(_make_customer(), receipts, DunningRules.default(), TODAY) == expected

    def test_most_overdue_receipt_decides(self, service):
        receipts = [_make_receipt(3, number="A"), _make_receipt(30, number="B")]
        assert service.suggest_stage(_make_customer(), receipts, None, TODAY) == "dunning2"

    def test_paid_receipts_ignored(self, service):
        receipts = [_make_receipt(60, amount="0")]
        assert service.suggest_stage(_make_customer(), receipts, None, TODAY) == "reminder"


# ============================================================================
# Preview
# ============================================================================

class TestPreview:

    def test_dunning1_preview(self, service):
        preview = service.preview(
            _make_customer(), [_make_receipt(40)], DunningRules.default(),
            stage="dunning1", base_rate=Decimal("3.62"), today=TODAY,
        )
        assert preview.stage == "dunning1"
        assert preview.subject == "1. Mahnung - Zahlungsaufforderung"
        assert preview.invoice_count == 1
        assert preview.summe["zinsen"].quantize(CENT) == Decimal("13.83")
        assert preview.summe["gebuehren"] == Decimal(5)
        assert preview.summe["gesamt"].quantize(CENT) == Decimal("1018.83")
        assert "1.018,83 €" in preview.html
        assert "1.018,83 €" in preview.text

    def test_stage_suggested_when_omitted(self, service):
        preview = service.preview(_make_customer(), [_make_receipt(20)], DunningRules.default(),
                                  today=TODAY)
        assert preview.stage == "dunning1"

    def test_explicit_template(self, service):
        template = DunningTemplate(name="Kurz", stage="reminder",
                                   subject="Offen: {{formatCurrency summe.offenerBetrag}}",
                                   html_body="<p>{{kunde.name}}</p>")
        preview = service.preview(_make_customer(), [_make_receipt(10)], None,
                                  template=template, today=TODAY)
        assert preview.stage == "reminder"
        assert preview.subject == "Offen: 1.000,00 €"
        assert preview.text == ""

    def test_company_override(self, service):
        company = CompanySettings(name="Muster GmbH", iban="DE89370400440532013000")
        preview = service.preview(_make_customer(), [_make_receipt(10)], None,
                                  stage="reminder", company=company, today=TODAY)
        assert "DE89370400440532013000" in preview.text
        assert "Muster GmbH" in preview.html

    def test_nothing_overdue(self, service):
        preview = service.preview(_make_customer(), [_make_receipt(-5)], None,
                                  stage="reminder", today=TODAY)
        assert preview.invoice_count == 0
        assert not preview.has_invoices
        assert preview.summe["gesamt"] == Decimal(0)

    def test_nan_base_rate_renders(self, service):
        preview = service.preview(_make_customer(), [_make_receipt(40)], DunningRules.default(),
                                  stage="dunning1", base_rate=float("nan"), today=TODAY)
        assert preview.invoice_count == 1
        assert "<th>Zinsen</th>" not in preview.html

    def test_no_template_for_stage(self):
        service = DunningService(PortalConfig(), templates=[])
        with pytest.raises(LookupError):
            service.preview(_make_customer(), [], None, stage="reminder", today=TODAY)

    def test_broken_template(self, service):
        template = DunningTemplate(name="Kaputt", stage="reminder", subject="{{#if x}}",
                                   html_body="")
        with pytest.raises(TemplateError):
            service.preview(_make_customer(), [], None, template=template, today=TODAY)

    def test_to_dict(self, service):
        preview = service.preview(_make_customer(), [_make_receipt(40)], DunningRules.default(),
                                  stage="dunning1", base_rate=Decimal("3.62"), today=TODAY)
        data = preview.to_dict()
        assert data["invoiceCount"] == 1
        assert data["debtorNumber"] == 10001
        assert set(data["summe"]) == {"offenerBetrag", "zinsen", "gebuehren", "gesamt"}
        assert data["summe"]["gebuehren"] == "5"


# ============================================================================
# Outbound email
# ============================================================================

class TestPrepareEmail:

    def test_uses_customer_email(self, service):
        email = service.prepare_email(_make_customer(), [_make_receipt(10)], None,
                                      stage="reminder", today=TODAY)
        assert email.to == "ap@acme.de"
        assert email.stage == "reminder"
        assert email.debtor_number == 10001
        assert email.subject.startswith("Zahlungserinnerung")

    def test_recipient_override(self, service):
        email = service.prepare_email(_make_customer(), [_make_receipt(10)], None,
                                      stage="reminder", recipient_email="buchhaltung@acme.de",
                                      today=TODAY)
        assert email.to == "buchhaltung@acme.de"

    def test_no_address(self, service):
        with pytest.raises(ValueError):
            service.prepare_email(_make_customer(email=""), [_make_receipt(10)], None,
                                  stage="reminder", today=TODAY)


# ============================================================================
# Dashboard summary
# ============================================================================

class TestSummarizeReceivables:

    def test_summary(self):
        receipts = [
            _make_receipt(10, "100", "A"),
            _make_receipt(-5, "50", "B"),
            _make_receipt(30, "0", "C"),
            Receipt(invoice_number="D", debtor_number=1, amount_open="25"),
        ]
        summary = summarize_receivables(receipts, TODAY)
        assert summary.total_open == Decimal(175)
        assert summary.overdue_amount == Decimal(100)
        assert summary.overdue_count == 1
        assert summary.invoice_count == 3

    def test_empty(self):
        assert summarize_receivables([], TODAY) == ReceivablesSummary()

    def test_to_dict(self):
        summary = summarize_receivables([_make_receipt(10, "100")], TODAY)
        assert summary.to_dict() == {
            "totalOpenAmount": "100",
            "overdueAmount": "100",
            "overdueCount": 1,
            "totalInvoices": 1,
        }
