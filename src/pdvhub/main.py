from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pdvhub.application.container import build_container
from pdvhub.config import Settings, get_app_paths
from pdvhub.domain.errors import AppError
from pdvhub.logging_config import setup_logging
from pdvhub.repositories.contracts import PRODUCT
from pdvhub.services.csv_import_service import build_template, group_rows, write_template_xlsx
from pdvhub.services.nfe_service import parse_nfe, reconcile

log = logging.getLogger("pdvhub.cli")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pdvhub", description="Furniture store PDV back-office tools.")
    parser.add_argument("--data-dir", help="Override the application data directory.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("template", help="Print the CSV import template (or write it as .xlsx).")
    p.add_argument("--xlsx", metavar="PATH")

    p = sub.add_parser("import-products", help="Import products from a CSV or XLSX file.")
    p.add_argument("file")
    p.add_argument("--dry-run", action="store_true", help="Parse and group only, write nothing.")

    p = sub.add_parser("import-nfe", help="Import a supplier NF-e from XML or by access key.")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("file", nargs="?")
    src.add_argument("--key", help="44-digit access key to fetch through the lookup function.")

    sub.add_parser("pending", help="List sales waiting in the offline queue.")
    sub.add_parser("sync", help="Send offline sales to the backend.")

    p = sub.add_parser("cancel", help="Cancel a sale, reversing stock and financial entries.")
    p.add_argument("sale_id")

    p = sub.add_parser("report", help="Export the sales report workbook.")
    p.add_argument("start", help="YYYY-MM-DD")
    p.add_argument("end", help="YYYY-MM-DD")
    p.add_argument("out")
    return parser


def _run(args, container) -> int:
    stores = container.settings.stores

    if args.command == "template":
        if args.xlsx:
            print(write_template_xlsx(args.xlsx, stores))
        else:
            sys.stdout.write(build_template(stores))
        return 0

    if args.command == "import-products":
        parsed = container.imports.parse_file(args.file)
        for w in parsed.warnings:
            print(f"warning: {w}")
        for e in parsed.errors:
            print(f"error: {e}")
        grouped = group_rows(parsed.rows, stores)
        print(f"{len(parsed.rows)} rows -> {len(grouped)} products")
        if args.dry_run or not grouped:
            return 0 if not parsed.errors else 1
        report = container.imports.import_products(
            grouped, on_progress=lambda done, total: print(f"  {done}/{total}", end="\r")
        )
        print(f"\nimported={report.imported} failed={report.failed} suppliers_created={report.suppliers_created}")
        for e in report.errors:
            print(f"error: {e}")
        return 0 if report.failed == 0 else 1

    if args.command == "import-nfe":
        if args.key:
            xml_text = container.invoice_lookup.fetch(args.key)
        else:
            xml_text = Path(args.file).read_text(encoding="utf-8")
        invoice = parse_nfe(xml_text)
        items = reconcile(invoice, container.client.list(PRODUCT), markup=container.settings.default_markup)
        result = container.nfe.confirm_import(invoice, items)
        print(
            f"NF-e {invoice.number}: created={result.created_products} updated={result.updated_products}"
        )
        for name in result.review_needed:
            print(f"review: {name} matched by name")
        return 0

    if args.command == "pending":
        entries = container.checkout.pending()
        for e in entries:
            print(f"{e.offline_id}  {e.timestamp}  #{e.payload.get('number')}  R$ {float(e.payload.get('total') or 0):.2f}")
        print(f"{len(entries)} pending")
        return 0

    if args.command == "sync":
        report = container.checkout.sync_offline()
        print(f"synced={report.synced} failed={report.failed}")
        for e in report.errors:
            print(f"error: {e}")
        return 0 if report.failed == 0 else 1

    if args.command == "cancel":
        sale = container.checkout.cancel_sale(args.sale_id)
        print(f"Sale #{sale.get('number')} cancelled.")
        return 0

    if args.command == "report":
        container.reporting.export_sales_report_excel(args.out, args.start, args.end)
        print(args.out)
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    paths = get_app_paths(base_dir=args.data_dir)
    setup_logging(paths.logs_dir, level=logging.INFO)

    try:
        container = build_container(Settings.from_env(), paths)
        return _run(args, container)
    except AppError as e:
        log.error("command_failed command=%s error=%s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
