from __future__ import annotations

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from pdvhub.domain.models import SALE_CANCELLED
from pdvhub.repositories.contracts import SALE


class ReportingService:
    def __init__(self, client):
        self.client = client

    def sales_between(self, start_iso: str, end_iso: str) -> list[dict]:
        """Sales whose sale_date falls in [start, end], oldest first."""
        return [
            s
            for s in self.client.list(SALE, order_by="sale_date")
            if start_iso <= str(s.get("sale_date") or "")[:10] <= end_iso
        ]

    def sales_summary_between(self, start_iso: str, end_iso: str) -> dict:
        sales = self.sales_between(start_iso, end_iso)
        valid = [s for s in sales if s.get("status") != SALE_CANCELLED]
        return {
            "sales_count": len(valid),
            "gross": round(sum(float(s.get("subtotal") or 0) for s in valid), 2),
            "discounts": round(sum(float(s.get("discount") or 0) for s in valid), 2),
            "net": round(sum(float(s.get("total") or 0) for s in valid), 2),
            "cancelled_count": len(sales) - len(valid),
        }

    def export_sales_report_excel(self, path: str, start_iso: str, end_iso: str) -> None:
        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
            ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        summary = self.sales_summary_between(start_iso, end_iso)
        sales = self.sales_between(start_iso, end_iso)

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Summary"
        ws["A1"].font = Font(bold=True, size=14)

        ws["A3"] = "Window"
        ws["B3"] = f"{start_iso}  ->  {end_iso}"

        rows = [
            ("Sales count", summary["sales_count"], "int"),
            ("Gross (R$)", summary["gross"], "money"),
            ("Discounts (R$)", summary["discounts"], "money"),
            ("Net (R$)", summary["net"], "money"),
            ("Cancelled sales", summary["cancelled_count"], "int"),
        ]

        start_row = 5
        for i, (label, val, kind) in enumerate(rows):
            r = start_row + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                money(ws[f"B{r}"])

        set_widths(ws, {"A": 24, "B": 34})

        # -------- 2) Sales --------
        ws2 = wb.create_sheet("Sales")
        ws2.append(["Order", "Date", "Customer", "Seller", "Total", "Paid", "Remaining", "Status"])
        bold_row(ws2, 1)

        for out_row, s in enumerate(sales, start=2):
            ws2.append([
                s.get("number"), s.get("sale_date"), s.get("customer_name") or "", s.get("seller_name") or "",
                float(s.get("total") or 0), float(s.get("amount_paid") or 0), float(s.get("remaining") or 0),
                s.get("status") or "",
            ])
            money(ws2[f"E{out_row}"])
            money(ws2[f"F{out_row}"])
            money(ws2[f"G{out_row}"])

        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 10, "B": 12, "C": 32, "D": 20, "E": 14, "F": 14, "G": 14, "H": 20})
        if ws2.max_row >= 2:
            add_table(ws2, "Sales", 1, 1, ws2.max_row, 8)

        wb.save(path)
