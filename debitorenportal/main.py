"""Debitorenportal -- Dunning Preview Pipeline.

Renders dunning email previews for every customer in a snapshot:

    1. Load configuration (config.yaml or defaults)
    2. Load the snapshot (customers, receipts, rules, settings)
    3. Optionally replace receipts with an OP-Liste workbook
    4. Pick a stage per customer (or use --stage for all)
    5. Render the stage template against the customer's overdue invoices
    6. Write .html / .txt previews plus previews.json
    7. Print a summary

Usage::

    python -m debitorenportal.main --snapshot data/snapshot.json
    python -m debitorenportal.main --snapshot data/snapshot.yaml --stage dunning1
    python -m debitorenportal.main --snapshot data/snapshot.json --today 2026-03-01 --dry-run
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

from .config import get_config
from .data_loader import LoadResult, load_receipts_workbook, load_snapshot
from .dunning_service import DunningPreview, DunningService, summarize_receivables
from .formatting import format_currency, to_decimal
from .models import DunningStage
from .template_engine import TemplateError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pipeline Result
# ---------------------------------------------------------------------------

@dataclass
class RunResult:
    """Container for one preview run."""

    previews: list[DunningPreview] = field(default_factory=list)
    load_result: LoadResult | None = None

    customers_seen: int = 0
    customers_skipped: int = 0
    stage_counts: dict[str, int] = field(default_factory=dict)

    output_dir: Path | None = None
    json_export_path: Path | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def total_demanded(self) -> Decimal:
        return sum((p.summe["gesamt"] for p in self.previews), Decimal(0))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_previews(
    *,
    snapshot_path: str | Path,
    config_path: str | Path | None = None,
    xlsx_path: str | Path | None = None,
    debtor_numbers: Optional[Sequence[int]] = None,
    stage: str | None = None,
    today: date | None = None,
    base_rate=None,
    output_dir: str | Path | None = None,
    dry_run: bool = False,
) -> RunResult:
    """Render previews for the customers in a snapshot.

    Customers without overdue invoices are skipped.  A single *today*
    applies to the whole run.

    Raises:
        FileNotFoundError: If the snapshot, workbook or config is missing.
        ValueError: If the snapshot cannot be parsed, *stage* is unknown or
            *base_rate* is not a number.
        TemplateError: If a template cannot be rendered.
    """
    result = RunResult(started_at=datetime.now())
    today = today or date.today()

    if stage is not None and DunningStage.parse(stage) is None:
        raise ValueError(
            f"Unknown stage '{stage}'.  Expected one of: "
            f"{', '.join(s.value for s in DunningStage)}"
        )

    config = get_config(config_path)
    logger.info("Configuration loaded from %s", config_path or "defaults + config.yaml")

    load_result = load_snapshot(snapshot_path)
    result.load_result = load_result
    if xlsx_path is not None:
        load_result.receipts = load_receipts_workbook(xlsx_path, warnings=load_result.warnings)
    load_result.print_summary()

    rate = load_result.base_rate
    if base_rate is not None:
        rate = to_decimal(base_rate, default=Decimal("NaN"))
        if not rate.is_finite():
            raise ValueError(f"Invalid base rate '{base_rate}'")
    company = load_result.settings if load_result.settings.name else config.company
    service = DunningService(config)

    wanted = set(debtor_numbers or [])
    for customer in load_result.customers:
        if wanted and customer.debtor_number not in wanted:
            continue
        if not customer.is_active:
            logger.debug("Skipping inactive customer %s", customer.debtor_number)
            continue
        result.customers_seen += 1

        receipts = load_result.receipts_for(customer)
        rules = load_result.rules_for(customer)
        customer_stage = stage or service.suggest_stage(customer, receipts, rules, today)

        preview = service.preview(
            customer,
            receipts,
            rules,
            stage=customer_stage,
            company=company,
            base_rate=rate,
            today=today,
        )
        if not preview.has_invoices:
            result.customers_skipped += 1
            logger.info("Customer %s has no overdue invoices", customer.debtor_number)
            continue

        result.previews.append(preview)
        result.stage_counts[preview.stage] = result.stage_counts.get(preview.stage, 0) + 1

    _print_run_summary(result, load_result, today)

    if not dry_run:
        out = Path(output_dir) if output_dir else config.output.resolve(config.output.output_dir)
        result.output_dir = out
        result.json_export_path = export_previews(result.previews, out)
        print(f"\nExported to: {out}")
    else:
        print("\n[DRY RUN] Skipping file export.")

    result.completed_at = datetime.now()
    logger.info("Run complete in %.1f seconds", result.duration_seconds)
    return result


def export_previews(previews: Sequence[DunningPreview], output_dir: Path) -> Path:
    """Write one .html and .txt file per preview plus a previews.json index."""
    output_dir.mkdir(parents=True, exist_ok=True)
    index = []
    for preview in previews:
        stem = f"{preview.customer.debtor_number}_{preview.stage}"
        (output_dir / f"{stem}.html").write_text(preview.html, encoding="utf-8")
        (output_dir / f"{stem}.txt").write_text(preview.text, encoding="utf-8")
        entry = preview.to_dict()
        entry.pop("html")
        entry.pop("text")
        entry["files"] = [f"{stem}.html", f"{stem}.txt"]
        index.append(entry)

    json_path = output_dir / "previews.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(index, f, indent=2, ensure_ascii=False)
    logger.info("Wrote %d previews to %s", len(previews), output_dir)
    return json_path


# ---------------------------------------------------------------------------
# Summary Printer
# ---------------------------------------------------------------------------

def _print_run_summary(result: RunResult, load_result: LoadResult, today: date) -> None:
    stats = summarize_receivables(load_result.receipts, today)

    print()
    print("=" * 65)
    print("  Debitorenportal -- Preview Summary")
    print("=" * 65)
    print(f"  Reference date      : {today.strftime('%d.%m.%Y')}")
    print(f"  Open invoices       : {stats.invoice_count}")
    print(f"  Total open          : {format_currency(stats.total_open)}")
    print(f"  Overdue             : {stats.overdue_count} "
          f"({format_currency(stats.overdue_amount)})")
    print("-" * 65)
    print(f"  Customers checked   : {result.customers_seen}")
    print(f"  Without overdue     : {result.customers_skipped}")
    print(f"  PREVIEWS RENDERED   : {len(result.previews)}")
    if result.stage_counts:
        print("-" * 65)
        print("  Stage Breakdown:")
        for stage in DunningStage:
            count = result.stage_counts.get(stage.value, 0)
            if count:
                print(f"    {stage.value:<12s}: {count:3d}")
    print(f"  Total demanded      : {format_currency(result.total_demanded)}")
    print("=" * 65)


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def _parse_today(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from None


def _parse_base_rate(value: str) -> Decimal:
    rate = to_decimal(value, default=Decimal("NaN"))
    if not rate.is_finite():
        raise argparse.ArgumentTypeError(f"Invalid base rate '{value}', expected a number like 3.62")
    return rate


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    parser = argparse.ArgumentParser(
        description="Debitorenportal - Render dunning email previews",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m debitorenportal.main --snapshot data/snapshot.json\n"
            "  python -m debitorenportal.main --snapshot data/snapshot.yaml --stage dunning1\n"
            "  python -m debitorenportal.main --snapshot s.json --customer 10001 --dry-run\n"
        ),
    )
    parser.add_argument("--snapshot", required=True,
                        help="JSON or YAML snapshot with customers, receipts, rules, settings")
    parser.add_argument("--config", default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--xlsx", default=None,
                        help="OP-Liste workbook; replaces the snapshot's receipts")
    parser.add_argument("--customer", type=int, action="append", dest="customers",
                        metavar="DEBTOR_NUMBER",
                        help="Only render this debtor number (repeatable)")
    parser.add_argument("--stage", default=None,
                        choices=[s.value for s in DunningStage],
                        help="Force a stage for all customers (default: per customer)")
    parser.add_argument("--today", type=_parse_today, default=None,
                        help="Reference date YYYY-MM-DD (default: today)")
    parser.add_argument("--base-rate", type=_parse_base_rate, default=None,
                        help="Published base rate in percent, e.g. 3.62")
    parser.add_argument("--output", default=None,
                        help="Output directory (default: from config)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Render without writing files")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        result = run_previews(
            snapshot_path=args.snapshot,
            config_path=args.config,
            xlsx_path=args.xlsx,
            debtor_numbers=args.customers,
            stage=args.stage,
            today=args.today,
            base_rate=args.base_rate,
            output_dir=args.output,
            dry_run=args.dry_run,
        )
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except (ValueError, LookupError) as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except TemplateError as exc:
        logger.error("Template error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1

    print(f"\nRendered {len(result.previews)} preview(s) "
          f"in {result.duration_seconds:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
