"""Debitorenportal - Data Loader.

Turns raw records from the sync boundary into typed ``Customer``,
``Receipt``, ``DunningRules`` and ``CompanySettings`` objects.

Supported data sources
~~~~~~~~~~~~~~~~~~~~~~
* **Snapshot file** -- JSON or YAML export of the portal tables with the
  top-level keys ``customers``, ``receipts``, ``dunningRules`` and
  ``settings``.
* **OP-Liste workbook** -- ``.xlsx`` open-item export from the accounting
  system, mapped by German header text.

Records may use camelCase keys (portal API) or snake_case keys.  Bad
values never abort a load: they are coerced to a safe default and a
warning is recorded on the :class:`LoadResult`.

Usage::

    from debitorenportal.data_loader import load_snapshot

    result = load_snapshot("data/snapshot.json")
    print(f"Customers: {len(result.customers)}")
    result.print_summary()
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import IO, Any, Mapping, Optional, Union

import openpyxl
import yaml
from openpyxl.worksheet.worksheet import Worksheet

from .formatting import format_currency, parse_date, to_decimal
from .models import (
    CompanySettings,
    Customer,
    DunningRules,
    DunningStage,
    Receipt,
    StageRule,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Field aliases -- first match wins.  camelCase is the portal API,
# snake_case the accounting API.
_CUSTOMER_FIELDS: dict[str, list[str]] = {
    "id":                      ["id"],
    "debtor_number":           ["debtorPostingaccountNumber", "debtor_postingaccount_number",
                                "debtorNumber", "debtor_number"],
    "display_name":            ["displayName", "display_name", "name"],
    "contact_person":          ["contactPerson", "contact_person"],
    "email":                   ["email"],
    "street":                  ["street"],
    "additional_address_line": ["additionalAddressLine", "additional_address_line"],
    "zip":                     ["zip", "plz"],
    "city":                    ["city", "ort"],
    "country":                 ["country", "land"],
    "customer_type":           ["customerType", "customer_type"],
    "payment_term_days":       ["paymentTermDays", "payment_term_days"],
    "is_active":               ["isActive", "is_active"],
}

_RECEIPT_FIELDS: dict[str, list[str]] = {
    "id":             ["id"],
    "invoice_number": ["invoiceNumber", "invoice_number"],
    "debtor_number":  ["debtorPostingaccountNumber", "debtor_postingaccount_number",
                       "debtorNumber", "debtor_number"],
    "receipt_date":   ["receiptDate", "receipt_date"],
    "due_date":       ["dueDate", "due_date"],
    "amount_total":   ["amountTotal", "amount_total", "amount"],
    "amount_open":    ["amountOpen", "amount_open"],
    "payment_status": ["paymentStatus", "payment_status"],
}

# OP-Liste column header aliases, matched case-insensitively.
_WORKBOOK_HEADERS: dict[str, list[str]] = {
    "invoice_number": ["Rechnungsnummer", "Rechnungsnr.", "Belegnummer", "Invoice Number"],
    "receipt_date":   ["Belegdatum", "Rechnungsdatum", "Receipt Date"],
    "due_date":       ["Fällig am", "Fälligkeit", "Faellig am", "Due Date"],
    "amount_total":   ["Betrag", "Rechnungsbetrag", "Amount"],
    "amount_open":    ["Offener Betrag", "Offen", "Open Amount"],
    "debtor_number":  ["Debitor", "Debitorennummer", "Kundennummer", "Debtor"],
    "payment_status": ["Status", "Zahlungsstatus"],
}

_STAGE_RULE_FIELDS = {
    "days_after_due": ["daysAfterDue", "days_after_due"],
    "fee":            ["fee"],
    "enabled":        ["enabled"],
}

_FALSE_SIGNALS = {"false", "0", "no", "nein", "n", ""}


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_snapshot`."""

    customers: list[Customer] = field(default_factory=list)
    receipts: list[Receipt] = field(default_factory=list)
    dunning_rules: dict[str, DunningRules] = field(default_factory=dict)
    settings: CompanySettings = field(default_factory=CompanySettings)
    base_rate: Optional[Decimal] = None

    # Metadata
    source_file: str | None = None
    warnings: list[str] = field(default_factory=list)

    def customer(self, debtor_number: int) -> Customer | None:
        for c in self.customers:
            if c.debtor_number == debtor_number:
                return c
        return None

    def receipts_for(self, customer: Customer) -> list[Receipt]:
        """Receipts booked on the customer's debtor account."""
        return [r for r in self.receipts if r.debtor_number == customer.debtor_number]

    def rules_for(self, customer: Customer) -> DunningRules:
        """The customer's saved rules, else the default stage table."""
        return self.dunning_rules.get(customer.id) or DunningRules.default()

    @property
    def open_receipts(self) -> list[Receipt]:
        return [r for r in self.receipts if r.is_open]

    @property
    def total_open(self) -> Decimal:
        return sum((r.amount_open for r in self.receipts), Decimal(0))

    def print_summary(self) -> None:
        """Print a human-readable summary of what was loaded."""
        print("=" * 65)
        print("  Debitorenportal -- Data Load Summary")
        print("=" * 65)
        print(f"  Source file       : {self.source_file or '(in memory)'}")
        print(f"  Customers         : {len(self.customers)}")
        print(f"  Receipts          : {len(self.receipts)}")
        print(f"  Open receipts     : {len(self.open_receipts)}")
        print(f"  Total open        : {format_currency(self.total_open)}")
        print(f"  Rule sets         : {len(self.dunning_rules)}")
        if self.warnings:
            print("-" * 65)
            print(f"  Warnings ({len(self.warnings)}):")
            for w in self.warnings[:20]:
                print(f"    - {w}")
            if len(self.warnings) > 20:
                print(f"    ... and {len(self.warnings) - 20} more")
        print("=" * 65)


# ---------------------------------------------------------------------------
# Record parsers
# ---------------------------------------------------------------------------

def _pick(record: Mapping[str, Any], aliases: list[str]) -> Any:
    for key in aliases:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_int(
    value: Any,
    label: str,
    warnings: Optional[list[str]],
    default: int | None = 0,
) -> int | None:
    if value is None or _clean_str(value) == "":
        return default
    try:
        return int(Decimal(str(value).strip()))
    except (ArithmeticError, ValueError):
        if warnings is not None:
            warnings.append(f"{label}: cannot parse integer '{value}' -- using {default}")
        return default


def _parse_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_SIGNALS


def _parse_amount(value: Any, label: str, warnings: Optional[list[str]]) -> Decimal:
    amount = to_decimal(value, default=Decimal("NaN"))
    if amount.is_finite():
        return amount
    if _clean_str(value) and warnings is not None:
        warnings.append(f"{label}: amount '{_clean_str(value)}' parsed as 0,00 €")
    return Decimal(0)


def _parse_record_date(value: Any, label: str, warnings: Optional[list[str]]):
    parsed = parse_date(value)
    if parsed is None and value not in (None, "") and warnings is not None:
        warnings.append(f"{label}: cannot parse date '{value}'")
    return parsed


def parse_customer(
    record: Mapping[str, Any],
    warnings: Optional[list[str]] = None,
) -> Customer:
    """Build a ``Customer`` from a raw portal or accounting record."""
    f = {name: _pick(record, aliases) for name, aliases in _CUSTOMER_FIELDS.items()}
    label = f"Customer {f['debtor_number'] or f['id'] or '?'}"

    payment_term = _parse_int(f["payment_term_days"], label, warnings, default=None)
    customer = Customer(
        id=_clean_str(f["id"]),
        debtor_number=_parse_int(f["debtor_number"], label, warnings),
        display_name=_clean_str(f["display_name"]),
        contact_person=_clean_str(f["contact_person"]),
        email=_clean_str(f["email"]),
        street=_clean_str(f["street"]),
        additional_address_line=_clean_str(f["additional_address_line"]),
        zip=_clean_str(f["zip"]),
        city=_clean_str(f["city"]),
        country=_clean_str(f["country"]),
        customer_type=f["customer_type"],
        payment_term_days=payment_term,
        is_active=_parse_bool(f["is_active"]),
    )

    if f["customer_type"] not in (None, "") and customer.customer_type is None:
        if warnings is not None:
            warnings.append(
                f"{label}: unknown customer type '{f['customer_type']}' -- "
                "no statutory interest will be charged"
            )
    return customer


def parse_receipt(
    record: Mapping[str, Any],
    warnings: Optional[list[str]] = None,
) -> Receipt:
    """Build a ``Receipt`` from a raw sync record.

    The open amount falls back to the total when the record has none.
    """
    f = {name: _pick(record, aliases) for name, aliases in _RECEIPT_FIELDS.items()}
    label = f"Receipt {f['invoice_number'] or f['id'] or '?'}"

    amount_total = _parse_amount(f["amount_total"], label, warnings)
    amount_open = (
        _parse_amount(f["amount_open"], label, warnings)
        if f["amount_open"] is not None else amount_total
    )
    return Receipt(
        invoice_number=_clean_str(f["invoice_number"]),
        debtor_number=_parse_int(f["debtor_number"], label, warnings),
        receipt_date=_parse_record_date(f["receipt_date"], label, warnings),
        due_date=_parse_record_date(f["due_date"], label, warnings),
        amount_total=amount_total,
        amount_open=amount_open,
        payment_status=_clean_str(f["payment_status"]) or "unpaid",
        id=_clean_str(f["id"]),
    )


def parse_dunning_rules(
    record: Mapping[str, Any],
    warnings: Optional[list[str]] = None,
) -> DunningRules:
    """Build ``DunningRules`` from a stored rules record.

    Stage entries with unknown keys are dropped with a warning; missing
    stages are simply absent (treated as disabled).
    """
    label = f"Rules {record.get('customerId') or record.get('customer_id') or 'default'}"
    raw_stages = record.get("stages") or {}

    stages: dict[DunningStage, StageRule] = {}
    for key, raw_rule in raw_stages.items():
        stage = DunningStage.parse(key)
        if stage is None:
            if warnings is not None:
                warnings.append(f"{label}: unknown stage '{key}' ignored")
            continue
        raw_rule = raw_rule or {}
        r = {name: _pick(raw_rule, aliases) for name, aliases in _STAGE_RULE_FIELDS.items()}
        fee = _parse_amount(r["fee"], f"{label} {key}", warnings)
        if fee < 0:
            if warnings is not None:
                warnings.append(f"{label}: negative fee for '{key}' set to 0")
            fee = Decimal(0)
        stages[stage] = StageRule(
            days_after_due=_parse_int(r["days_after_due"], f"{label} {key}", warnings),
            fee=fee,
            enabled=_parse_bool(r["enabled"]),
        )

    return DunningRules(
        stages=stages,
        grace_days=_parse_int(
            _pick(record, ["gracePeriodDays", "grace_period_days", "graceDays", "grace_days"]),
            label, warnings,
        ),
        interest_rate_percent=to_decimal(
            _pick(record, ["interestRatePercent", "interest_rate_percent", "interestRate"])
        ),
        use_legal_rate=_parse_bool(
            _pick(record, ["useLegalRate", "useLegalInterestRate", "use_legal_rate"]), default=False
        ),
        customer_id=_clean_str(_pick(record, ["customerId", "customer_id"])),
    )


def parse_company_settings(record: Mapping[str, Any] | None) -> CompanySettings:
    """Build ``CompanySettings``; accepts ``companyName``-style keys too."""
    record = dict(record or {})
    aliases = {
        "name": ["name", "companyName", "company_name"],
        "strasse": ["strasse", "street", "companyStreet"],
        "plz": ["plz", "zip", "companyZip"],
        "ort": ["ort", "city", "companyCity"],
        "telefon": ["telefon", "phone", "companyPhone"],
        "email": ["email", "companyEmail"],
        "iban": ["iban", "IBAN"],
        "bic": ["bic", "BIC"],
    }
    return CompanySettings.from_mapping(
        {name: _pick(record, keys) for name, keys in aliases.items()}
    )


# ---------------------------------------------------------------------------
# Snapshot files
# ---------------------------------------------------------------------------

def _read_snapshot(path: Path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Snapshot {path} must contain a mapping at the top level")
    return data


def load_snapshot(source: Union[str, Path]) -> LoadResult:
    """Load customers, receipts, rules and settings from a snapshot file.

    Parameters
    ----------
    source:
        Path to a ``.json`` or ``.yaml``/``.yml`` file.

    Returns
    -------
    LoadResult
        Parsed records plus any warnings collected along the way.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file is not a mapping or cannot be parsed.
    """
    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Snapshot file not found: {path}")

    logger.info("Loading snapshot: %s", path)
    try:
        data = _read_snapshot(path)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Cannot parse snapshot {path}: {exc}") from exc

    result = LoadResult(source_file=str(path))
    warnings = result.warnings

    for record in data.get("customers") or []:
        result.customers.append(parse_customer(record, warnings))

    for record in data.get("receipts") or []:
        result.receipts.append(parse_receipt(record, warnings))

    for record in data.get("dunningRules") or data.get("dunning_rules") or []:
        rules = parse_dunning_rules(record, warnings)
        result.dunning_rules[rules.customer_id] = rules

    settings = data.get("settings") or {}
    result.settings = parse_company_settings(settings.get("company", settings))
    base_rate = _pick(settings, ["baseRate", "base_rate", "basiszinssatz"])
    if base_rate is not None:
        rate = to_decimal(base_rate, default=Decimal("NaN"))
        if rate.is_finite():
            result.base_rate = rate
        elif _clean_str(base_rate):
            warnings.append(f"Settings: base rate '{base_rate}' ignored, using fallback")

    for w in warnings:
        logger.warning(w)
    logger.info(
        "Loaded %d customers, %d receipts, %d rule sets (%d warnings)",
        len(result.customers), len(result.receipts),
        len(result.dunning_rules), len(warnings),
    )
    return result


# ---------------------------------------------------------------------------
# OP-Liste workbook
# ---------------------------------------------------------------------------

def load_receipts_workbook(
    source: Union[str, Path, IO[bytes]],
    *,
    sheet: str | None = None,
    warnings: Optional[list[str]] = None,
) -> list[Receipt]:
    """Read receipts from an OP-Liste ``.xlsx`` export.

    Columns are found by header text in row 1, so column order does not
    matter.  Rows without an invoice number are skipped.

    Raises:
        FileNotFoundError: If a path is given and does not exist.
        ValueError: If the sheet or required columns are missing.
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        wb = openpyxl.load_workbook(path, data_only=True)
    else:
        logger.info("Opening XLSX from bytes buffer")
        wb = openpyxl.load_workbook(source, data_only=True)

    try:
        if sheet is not None and sheet not in wb.sheetnames:
            raise ValueError(f"Sheet '{sheet}' not found.  Available: {wb.sheetnames}")
        ws = wb[sheet] if sheet else wb.worksheets[0]
        return _parse_receipt_rows(ws, warnings if warnings is not None else [])
    finally:
        wb.close()


def _build_header_map(ws: Worksheet, aliases: dict[str, list[str]]) -> dict[str, int]:
    """Map logical field names to 0-based column indices from row 1."""
    headers = {
        _clean_str(cell.value).lower(): idx
        for idx, cell in enumerate(ws[1])
        if cell.value is not None
    }
    header_map: dict[str, int] = {}
    for key, names in aliases.items():
        for name in names:
            if name.lower() in headers:
                header_map[key] = headers[name.lower()]
                break
    return header_map


def _parse_receipt_rows(ws: Worksheet, warnings: list[str]) -> list[Receipt]:
    header_map = _build_header_map(ws, _WORKBOOK_HEADERS)

    missing = [k for k in ("invoice_number", "debtor_number") if k not in header_map]
    if "amount_open" not in header_map and "amount_total" not in header_map:
        missing.append("amount_open")
    if missing:
        raise ValueError(
            f"Required columns not found in sheet '{ws.title}': {missing}.  "
            f"Header row: {[cell.value for cell in ws[1]]}"
        )

    receipts: list[Receipt] = []
    for row in ws.iter_rows(min_row=2, values_only=True):
        record = {
            key: row[idx] if idx < len(row) else None
            for key, idx in header_map.items()
        }
        if _clean_str(record.get("invoice_number")) == "":
            continue
        # Spreadsheet exports store invoice numbers as floats.
        number = record["invoice_number"]
        if isinstance(number, float) and number.is_integer():
            record["invoice_number"] = int(number)
        receipts.append(parse_receipt(record, warnings))

    logger.info("Parsed %d receipts from sheet '%s'", len(receipts), ws.title)
    return receipts
