"""End-to-end tests for the debitorenportal.main preview CLI."""

import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from debitorenportal.main import main, run_previews

TODAY = date(2026, 3, 1)

SNAPSHOT = {
    "customers": [
        {"id": "c-1", "debtorPostingaccountNumber": 10001, "displayName": "Acme GmbH",
         "customerType": "business"},
        {"id": "c-2", "debtorPostingaccountNumber": 10002, "displayName": "Beta KG",
         "customerType": "consumer"},
        {"id": "c-3", "debtorPostingaccountNumber": 10003, "displayName": "Gamma AG",
         "isActive": False},
    ],
    "receipts": [
        {"invoiceNumber": "R-1", "debtorPostingaccountNumber": 10001,
         "receiptDate": "2026-01-06", "dueDate": "2026-01-20",
         "amountTotal": "1000", "amountOpen": "1000"},
        {"invoiceNumber": "R-2", "debtorPostingaccountNumber": 10002,
         "receiptDate": "2026-02-20", "dueDate": "2026-03-06",
         "amountTotal": "300", "amountOpen": "300"},
        {"invoiceNumber": "R-3", "debtorPostingaccountNumber": 10003,
         "dueDate": "2025-12-01", "amountOpen": "80"},
    ],
    "settings": {"baseRate": "3.62", "company": {"name": "Muster GmbH"}},
}


@pytest.fixture
def snapshot(tmp_path: Path) -> Path:
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    return path


class TestRunPreviews:

    def test_only_overdue_active_customers(self, snapshot, tmp_path):
        result = run_previews(snapshot_path=snapshot, today=TODAY,
                              output_dir=tmp_path / "out")
        assert [p.customer.debtor_number for p in result.previews] == [10001]
        assert result.customers_seen == 2
        assert result.customers_skipped == 1
        assert result.stage_counts == {"dunning2": 1}

    def test_forced_stage(self, snapshot):
        result = run_previews(snapshot_path=snapshot, today=TODAY, stage="dunning1",
                              dry_run=True)
        assert result.previews[0].subject == "1. Mahnung - Zahlungsaufforderung"

    def test_unknown_stage(self, snapshot):
        with pytest.raises(ValueError):
            run_previews(snapshot_path=snapshot, stage="inkasso", dry_run=True)

    def test_unusable_base_rate_rejected(self, snapshot):
        with pytest.raises(ValueError, match="base rate"):
            run_previews(snapshot_path=snapshot, base_rate="abc", stage="dunning1", dry_run=True)

    def test_unusable_snapshot_base_rate_uses_fallback(self, tmp_path):
        data = dict(SNAPSHOT, settings={"baseRate": "x", "company": {"name": "Muster GmbH"}})
        path = tmp_path / "snapshot.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        result = run_previews(snapshot_path=path, today=TODAY, stage="dunning1",
                              debtor_numbers=[10001], dry_run=True)
        [invoice] = result.previews[0].context.rechnungen
        assert invoice.interest_rate == Decimal("11.82")

    def test_export(self, snapshot, tmp_path):
        out = tmp_path / "out"
        result = run_previews(snapshot_path=snapshot, today=TODAY, output_dir=out)
        assert result.json_export_path == out / "previews.json"
        index = json.loads(result.json_export_path.read_text(encoding="utf-8"))
        assert index[0]["invoiceCount"] == 1
        assert index[0]["files"] == ["10001_dunning2.html", "10001_dunning2.txt"]
        assert "Muster GmbH" in (out / "10001_dunning2.html").read_text(encoding="utf-8")


class TestMain:

    def test_dry_run(self, snapshot, capsys):
        code = main(["--snapshot", str(snapshot), "--today", "2026-03-01", "--dry-run"])
        assert code == 0
        out = capsys.readouterr().out
        assert "PREVIEWS RENDERED   : 1" in out
        assert "[DRY RUN]" in out

    def test_customer_filter(self, snapshot, tmp_path):
        code = main(["--snapshot", str(snapshot), "--today", "2026-03-01",
                     "--customer", "10002", "--output", str(tmp_path / "out")])
        assert code == 0
        index = json.loads((tmp_path / "out" / "previews.json").read_text(encoding="utf-8"))
        assert index == []

    def test_missing_snapshot(self, tmp_path):
        assert main(["--snapshot", str(tmp_path / "fehlt.json"), "--dry-run"]) == 1

    @pytest.mark.parametrize("rate", ["abc", "nan"])
    def test_bad_base_rate_exits(self, snapshot, rate):
        with pytest.raises(SystemExit):
            main(["--snapshot", str(snapshot), "--base-rate", rate, "--dry-run"])

    def test_bad_date_exits(self, snapshot):
        with pytest.raises(SystemExit):
            main(["--snapshot", str(snapshot), "--today", "01.03.2026"])
