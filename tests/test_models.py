"""Tests for debitorenportal.models -- dataclass coercion and rule lookups."""

from datetime import date
from decimal import Decimal

import pytest

from debitorenportal.models import (
    CompanySettings,
    Customer,
    CustomerType,
    DunningRules,
    DunningStage,
    DunningTemplate,
    Receipt,
    RenderedEmail,
    StageRule,
    stage_key,
)


# ============================================================================
# Enums
# ============================================================================

class TestEnums:

    @pytest.mark.parametrize("raw, expected", [
        ("business", CustomerType.BUSINESS),
        (" Consumer ", CustomerType.CONSUMER),
        (CustomerType.BUSINESS, CustomerType.BUSINESS),
        ("firma", None),
        (None, None),
    ])
    def test_customer_type_parse(self, raw, expected):
        assert CustomerType.parse(raw) is expected

    def test_stage_parse(self):
        assert DunningStage.parse("DUNNING2") is DunningStage.DUNNING2
        assert DunningStage.parse("inkasso") is None

    def test_stage_key(self):
        assert stage_key(DunningStage.REMINDER) == "reminder"
        assert stage_key("inkasso") == "inkasso"

    def test_stage_is_string_enum(self):
        assert DunningStage.DUNNING1 == "dunning1"


# ============================================================================
# Customer / Receipt
# ============================================================================

class TestCustomer:

    def test_type_parsed_on_init(self):
        c = Customer(id="1", debtor_number=10001, display_name="Acme", customer_type="business")
        assert c.customer_type is CustomerType.BUSINESS

    def test_unknown_type_becomes_none(self):
        c = Customer(id="1", debtor_number=10001, display_name="Acme", customer_type="firma")
        assert c.customer_type is None

    def test_payment_term(self):
        c = Customer(id="1", debtor_number=1, display_name="A")
        assert c.payment_term() == 14
        c.payment_term_days = 30
        assert c.payment_term() == 30
        c.payment_term_days = 0
        assert c.payment_term(21) == 21


class TestReceipt:

    def test_amounts_coerced(self):
        r = Receipt(invoice_number="R-1", debtor_number=1,
                    amount_total="1.234,56", amount_open=100.25)
        assert r.amount_total == Decimal("1234.56")
        assert r.amount_open == Decimal("100.25")

    def test_garbage_amount_is_zero(self):
        r = Receipt(invoice_number="R-1", debtor_number=1, amount_open="abc")
        assert r.amount_open == Decimal(0)
        assert not r.is_open

    def test_nan_amount_is_zero(self):
        r = Receipt(invoice_number="R-1", debtor_number=1, amount_open=float("nan"))
        assert r.amount_open == Decimal(0)

    def test_dates_parsed(self):
        r = Receipt(invoice_number="R-1", debtor_number=1,
                    receipt_date="2026-01-05", due_date="19.01.2026")
        assert r.receipt_date == date(2026, 1, 5)
        assert r.due_date == date(2026, 1, 19)

    def test_invoice_number_falls_back_to_id(self):
        r = Receipt(invoice_number="", debtor_number=1, id="bhb-77")
        assert r.invoice_number == "bhb-77"

    def test_is_open(self):
        assert Receipt(invoice_number="R", debtor_number=1, amount_open="0.01").is_open
        assert not Receipt(invoice_number="R", debtor_number=1, amount_open="0").is_open


# ============================================================================
# Dunning rules
# ============================================================================

class TestDunningRules:

    def test_negative_fee_rejected(self):
        with pytest.raises(ValueError):
            StageRule(days_after_due=14, fee=Decimal("-1"))

    def test_string_keys_normalized(self):
        rules = DunningRules(stages={"dunning1": StageRule(days_after_due=14, fee=5)})
        assert DunningStage.DUNNING1 in rules.stages
        assert rules.fee_for("dunning1") == Decimal(5)

    def test_unknown_stage_key_rejected(self):
        with pytest.raises(ValueError):
            DunningRules(stages={"inkasso": StageRule(days_after_due=60)})

    def test_reminder_fee_always_zero(self):
        rules = DunningRules(stages={"reminder": StageRule(days_after_due=7, fee=9)})
        assert rules.fee_for(DunningStage.REMINDER) == Decimal(0)

    def test_missing_and_disabled_stages_cost_nothing(self):
        rules = DunningRules.default()
        assert rules.fee_for("dunning3") == Decimal(0)
        assert rules.fee_for("inkasso") == Decimal(0)
        assert DunningRules().fee_for("dunning1") == Decimal(0)

    def test_default_table(self):
        rules = DunningRules.default()
        assert [rules.stages[s].days_after_due for s in DunningStage] == [7, 14, 28, 42]
        assert [rules.fee_for(s) for s in DunningStage] == [0, 5, 10, 0]
        assert rules.stages[DunningStage.DUNNING3].enabled is False

    def test_rule_for(self):
        rules = DunningRules.default()
        assert rules.rule_for("dunning2").fee == Decimal(10)
        assert rules.rule_for("inkasso") is None


# ============================================================================
# Settings / templates
# ============================================================================

class TestCompanySettings:

    def test_from_mapping(self):
        s = CompanySettings.from_mapping({"name": "Muster GmbH", "iban": None, "extra": 1})
        assert s.name == "Muster GmbH"
        assert s.iban == ""

    def test_from_none(self):
        assert CompanySettings.from_mapping(None) == CompanySettings()


class TestTemplates:

    def test_template_defaults(self):
        t = DunningTemplate(name="T", stage="reminder", subject="S", html_body="<p></p>")
        assert t.text_body is None
        assert t.is_active
        assert not t.is_default

    def test_rendered_email_to_dict(self):
        assert RenderedEmail("S", "<p>H</p>").to_dict() == {"subject": "S", "html": "<p>H</p>", "text": ""}
