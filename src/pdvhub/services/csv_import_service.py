from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill

from pdvhub.config import StoreConfig
from pdvhub.domain.errors import ValidationError
from pdvhub.domain.models import GroupedProduct, ImportReport, ParseResult, Variant
from pdvhub.repositories.contracts import PRICE_HISTORY, PRODUCT, SUPPLIER
from pdvhub.repositories.saga import Saga
from pdvhub.services.catalog import color_hex, generate_sku, infer_category, new_sku_suffix

log = logging.getLogger("pdvhub.imports")

IGNORE = "_ignore"

# Header synonyms as they appear in store spreadsheets (typos included).
BASE_COLUMN_MAPPING: dict[str, str] = {
    "codigo": "barcode",
    "código": "barcode",
    "codigo_barras": "barcode",
    "sku": "barcode",
    "fabricante / fornecedor": "supplier_name",
    "fabricante / fornencedor": "supplier_name",
    "fabricante/fornecedor": "supplier_name",
    "fornecedor": "supplier_name",
    "fabricante": "supplier_name",
    "descrição do produto": "name",
    "descricao do produto": "name",
    "descrição": "name",
    "descricao": "name",
    "nome": "name",
    "produto": "name",
    "modelo / referência": "model_reference",
    "modelo / referencia": "model_reference",
    "modelo/referência": "model_reference",
    "modelo": "model_reference",
    "referência": "model_reference",
    "referencia": "model_reference",
    "preço de custo": "cost_price",
    "preco de custo": "cost_price",
    "preco_custo": "cost_price",
    "custo": "cost_price",
    "largura": "width",
    "altura": "height",
    "profundidade": "depth",
    "extra": "extra_dimension",
    "variação de cores": "color",
    "variacao de cores": "color",
    "cor": "color",
    "cores": "color",
    "modelos de tecidos": "fabrics",
    "tecidos": "fabrics",
    "estoque cd": "stock_cd",
    "estoque_cd": "stock_cd",
    "cd": "stock_cd",
    "impostos": "taxes_percent",
    "frete": "freight_cost",
    "ipi": "ipi_percent",
    "markup": "markup",
    "preço venda final": "sale_price",
    "preco venda final": "sale_price",
    "preco_venda": "sale_price",
    "preco": "sale_price",
    "preço": "sale_price",
    "valor": "sale_price",
    "descontos vendedor": "seller_discount_limit",
    "desconto vendedor": "seller_discount_limit",
    "descontos gerencial": "manager_discount_limit",
    "desconto gerencial": "manager_discount_limit",
    "moveis montagem": "requires_assembly",
    "móveis montagem": "requires_assembly",
    "montagem / terceirizado": "outsourced_assembly",
    "terceirizado": "outsourced_assembly",
    "categoria": "category",
    "ambiente": "environment",
    "material": "material",
    "tamanho": "size",
    "grupos": IGNORE,
    "espera": IGNORE,
    "mostruario loja futura": IGNORE,
    "futura": IGNORE,
}

TEMPLATE_HEAD = [
    "FABRICANTE / FORNECEDOR", "DESCRIÇÃO DO PRODUTO", "MODELO / REFERÊNCIA", "PREÇO DE CUSTO",
    "LARGURA", "ALTURA", "PROFUNDIDADE", "EXTRA", "VARIAÇÃO DE CORES", "MODELOS DE TECIDOS", "ESTOQUE CD",
]
TEMPLATE_TAIL = [
    "IMPOSTOS", "FRETE", "IPI", "MARKUP", "PREÇO VENDA FINAL",
    "DESCONTOS VENDEDOR", "DESCONTOS GERENCIAL", "MOVEIS MONTAGEM",
]

_STOCK_HEADER = re.compile(r"^(mostruario|estoque|stock)[ _]")
_NUMBER_PREFIX = re.compile(r"[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")


def build_column_mapping(stores: Sequence[StoreConfig]) -> dict[str, str]:
    mapping = dict(BASE_COLUMN_MAPPING)
    for store in stores:
        code = store.code.lower()
        code_norm = "_".join(code.split())
        name_norm = "_".join(store.name.lower().split())
        field = store.stock_field
        mapping[f"mostruario loja {code}"] = field
        mapping[f"mostruario {code}"] = field
        mapping[code] = field
        mapping[code_norm] = field
        mapping[name_norm] = field
        mapping[f"mostruario {' '.join(store.name.lower().split())}"] = field
    return mapping


def detect_delimiter(header_line: str) -> str:
    return ";" if header_line.count(";") > header_line.count(",") else ","


def normalize_header(raw: str, mapping: dict[str, str]) -> str:
    lower = (raw or "").lower().strip()
    if lower in mapping:
        return mapping[lower]
    collapsed = " ".join(lower.split())
    return mapping.get(collapsed, collapsed)


def split_line(line: str, delimiter: str) -> list[str]:
    """Quote-aware split. Quotes toggle the in-field state and are dropped."""
    values = []
    current = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    values.append("".join(current).strip())
    return values


def parse_number(value) -> Optional[float]:
    """
    Brazilian-friendly number coercion:
      "R$ 1.200,50" -> 1200.5, "1200" -> 1200.0, "" / None / "abc" -> None
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)

    cleaned = re.sub(r"[R$\s]", "", str(value))
    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    m = _NUMBER_PREFIX.match(cleaned)
    if not m:
        return None
    return float(m.group(0))


def parse_bool(value) -> bool:
    if not value:
        return False
    return str(value).lower().strip() in ("sim", "s", "true", "1")


def _stock(value) -> int:
    n = parse_number(value)
    return int(n) if n is not None else 0


def _rows_from_table(
    headers: list[str], lines: Iterable[tuple[int, list]], stores: Sequence[StoreConfig], result: ParseResult
) -> None:
    stock_fields = {s.stock_field for s in stores}
    unknown = [h for h in headers if _STOCK_HEADER.match(h) and h not in stock_fields]
    for h in dict.fromkeys(unknown):
        result.warnings.append(f"Coluna de estoque '{h}' não corresponde a nenhuma loja configurada; ignorada.")
        log.warning("import_unknown_stock_column column=%s", h)

    for line_no, values in lines:
        row = {}
        for idx, header in enumerate(headers):
            value = values[idx] if idx < len(values) else ""
            row[header] = "" if value is None else (value if isinstance(value, (int, float)) else str(value).strip())

        if not row.get("name"):
            result.errors.append(f"Linha {line_no}: Nome/Descrição do produto é obrigatório")
            continue

        result.rows.append(
            {
                **row,
                "name": str(row["name"]).strip(),
                "cost_price": parse_number(row.get("cost_price")) or 0.0,
                "sale_price": parse_number(row.get("sale_price")) or 0.0,
                "width": parse_number(row.get("width")),
                "height": parse_number(row.get("height")),
                "depth": parse_number(row.get("depth")),
                "taxes_percent": parse_number(row.get("taxes_percent")) or 0.0,
                "freight_cost": parse_number(row.get("freight_cost")) or 0.0,
                "ipi_percent": parse_number(row.get("ipi_percent")) or 0.0,
                "markup": parse_number(row.get("markup")),
                "seller_discount_limit": parse_number(row.get("seller_discount_limit")) or 5.0,
                "manager_discount_limit": parse_number(row.get("manager_discount_limit")) or 15.0,
                "requires_assembly": parse_bool(row.get("requires_assembly")),
                "outsourced_assembly": parse_bool(row.get("outsourced_assembly")),
                **{s.stock_field: _stock(row.get(s.stock_field)) for s in stores},
                "line": line_no,
            }
        )


def parse_csv(text: str, stores: Sequence[StoreConfig] = ()) -> ParseResult:
    lines = [ln.rstrip("\r") for ln in (text or "").strip().split("\n")]
    if not lines or not lines[0].strip():
        raise ValidationError("CSV file is empty.")

    delimiter = detect_delimiter(lines[0])
    mapping = build_column_mapping(stores)
    headers = [normalize_header(h.replace('"', ""), mapping) for h in lines[0].split(delimiter)]
    log.info("import_csv_headers delimiter=%r columns=%s", delimiter, len(headers))

    result = ParseResult(rows=[], delimiter=delimiter)
    body = ((i + 1, split_line(line, delimiter)) for i, line in enumerate(lines) if i > 0 and line.strip())
    _rows_from_table(headers, body, stores, result)
    return result


def parse_xlsx(path: str | Path, stores: Sequence[StoreConfig] = ()) -> ParseResult:
    """Same layout as the CSV, read from the first sheet of a workbook."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.active
        rows = ws.iter_rows(values_only=True)
        try:
            header_row = next(rows)
        except StopIteration:
            raise ValidationError("Workbook is empty.") from None

        mapping = build_column_mapping(stores)
        headers = [normalize_header(str(h or ""), mapping) for h in header_row]
        result = ParseResult(rows=[], delimiter="xlsx")
        body = (
            (line_no, list(values))
            for line_no, values in enumerate(rows, start=2)
            if any(v not in (None, "") for v in values)
        )
        _rows_from_table(headers, body, stores, result)
        return result
    finally:
        wb.close()


def _dim_key(value: Optional[float]) -> str:
    return "" if not value else f"{value:g}"


def group_rows(rows: Iterable[dict], stores: Sequence[StoreConfig] = ()) -> list[GroupedProduct]:
    """Rows sharing (name, model, WxHxD) become variants of one product."""
    groups: dict[str, GroupedProduct] = {}
    for row in rows:
        name = row["name"].lower().strip()
        model = str(row.get("model_reference") or "").lower().strip()
        dims = f"{_dim_key(row.get('width'))}x{_dim_key(row.get('height'))}x{_dim_key(row.get('depth'))}"
        key = f"{name}|{model}|{dims}"

        if key not in groups:
            groups[key] = GroupedProduct(
                name=row["name"],
                category=str(row.get("category") or ""),
                environment=str(row.get("environment") or ""),
                supplier_name=str(row.get("supplier_name") or ""),
                model_reference=str(row.get("model_reference") or ""),
                material=str(row.get("material") or ""),
                taxes_percent=row.get("taxes_percent") or 0.0,
                freight_cost=row.get("freight_cost") or 0.0,
                ipi_percent=row.get("ipi_percent") or 0.0,
                markup=row.get("markup"),
                seller_discount_limit=row.get("seller_discount_limit") or 5.0,
                manager_discount_limit=row.get("manager_discount_limit") or 15.0,
                requires_assembly=bool(row.get("requires_assembly")),
                outsourced_assembly=bool(row.get("outsourced_assembly")),
            )

        color = str(row.get("color") or "")
        groups[key].variants.append(
            Variant(
                color=color,
                color_hex=color_hex(color),
                fabrics=str(row.get("fabrics") or ""),
                size=str(row.get("size") or ""),
                extra_dimension=str(row.get("extra_dimension") or ""),
                width=row.get("width"),
                height=row.get("height"),
                depth=row.get("depth"),
                cost_price=row.get("cost_price") or 0.0,
                sale_price=row.get("sale_price") or 0.0,
                stock_by_store={s.stock_field: int(row.get(s.stock_field) or 0) for s in stores},
                line=int(row.get("line") or 0),
            )
        )
    return list(groups.values())


def build_template(stores: Sequence[StoreConfig]) -> str:
    """CSV template (header + one example row) for the configured stores."""
    header = TEMPLATE_HEAD + [f"MOSTRUARIO {s.name.upper()}" for s in stores] + TEMPLATE_TAIL
    example = (
        ["Altaro", "Sofá 3 Lugares", "ALT-SF3R", "1200", "220", "95", "100", "", "Cinza", "Suede", "5"]
        + ["0"] * len(stores)
        + ["12", "150", "5", "100", "2640", "5", "15", "SIM"]
    )
    return ",".join(header) + "\n" + ",".join(example)


def write_template_xlsx(path: str | Path, stores: Sequence[StoreConfig]) -> Path:
    header_line, example_line = build_template(stores).split("\n")
    wb = Workbook()
    ws = wb.active
    ws.title = "Produtos"
    ws.append(header_line.split(","))
    ws.append(example_line.split(","))

    fill = PatternFill("solid", fgColor="07593D")
    for cell in ws[1]:
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = fill
    for col in ws.columns:
        width = max(len(str(c.value or "")) for c in col)
        ws.column_dimensions[col[0].column_letter].width = min(max(12, width + 2), 40)
    ws.freeze_panes = "A2"

    path = Path(path)
    wb.save(path)
    return path


class ProductImportService:
    def __init__(self, client, stores: Sequence[StoreConfig] = ()):
        self.client = client
        self.stores = tuple(stores)

    def parse_file(self, path: str | Path) -> ParseResult:
        path = Path(path)
        if path.suffix.lower() in (".xlsx", ".xlsm"):
            return parse_xlsx(path, self.stores)
        text = path.read_bytes().decode("utf-8-sig", errors="replace")
        return parse_csv(text, self.stores)

    def ensure_suppliers(self, grouped: Sequence[GroupedProduct]) -> int:
        names = list(dict.fromkeys(p.supplier_name.strip() for p in grouped if p.supplier_name.strip()))
        if not names:
            return 0
        existing = {str(s.get("company_name") or "").lower().strip() for s in self.client.list(SUPPLIER)}
        created = 0
        for name in names:
            if name.lower() in existing:
                continue
            try:
                self.client.create(SUPPLIER, {"company_name": name})
                existing.add(name.lower())
                created += 1
                log.info("supplier_created name=%s", name)
            except Exception as e:
                log.warning("supplier_create_failed name=%s error=%s", name, e)
        return created

    def _store_key(self, store: StoreConfig) -> str:
        return store.id or store.code

    def _parent_record(self, product: GroupedProduct, sku: str) -> dict:
        per_store = {
            self._store_key(s): sum(int(v.stock_by_store.get(s.stock_field, 0)) for v in product.variants)
            for s in self.stores
        }
        category, environment = product.category, product.environment
        if not category or not environment:
            guessed = infer_category(product.name)
            category = category or guessed[0]
            environment = environment or guessed[1]

        record = {
            "uuid": str(uuid.uuid4()),
            "barcode": sku,
            "sku": sku,
            "name": product.name,
            "category": category,
            "environment": environment,
            "supplier_name": product.supplier_name,
            "model_reference": product.model_reference,
            "material": product.material,
            "default_delivery": "disassembled",
            "taxes_percent": product.taxes_percent,
            "freight_cost": product.freight_cost,
            "ipi_percent": product.ipi_percent,
            "markup": product.markup,
            "sale_price": product.min_sale_price,
            "seller_discount_limit": product.seller_discount_limit,
            "manager_discount_limit": product.manager_discount_limit,
            "stock": sum(per_store.values()),
            "stock_by_store": per_store,
            "min_stock": 5,
            "requires_assembly": product.requires_assembly,
            "outsourced_assembly": product.outsourced_assembly,
            "variants": [self._variant_record(v) for v in product.variants] if product.has_variants else [],
            "active": True,
            "is_parent": True,
            "parent_id": None,
        }
        if product.ncm:
            record["ncm"] = product.ncm
        if product.variants:
            first = product.variants[0]
            record.update(width=first.width, height=first.height, depth=first.depth, cost_price=first.cost_price)
            if not product.has_variants:
                record["color"] = first.color
                record["fabrics"] = [t.strip() for t in first.fabrics.split(",")] if first.fabrics else None
        return record

    def _variant_record(self, v: Variant) -> dict:
        return {
            "color": v.color,
            "color_hex": v.color_hex,
            "fabrics": v.fabrics,
            "size": v.size,
            "extra_dimension": v.extra_dimension,
            "width": v.width,
            "height": v.height,
            "depth": v.depth,
            "cost_price": v.cost_price,
            "sale_price": v.sale_price,
            "stock_by_store": dict(v.stock_by_store),
        }

    def _import_one(self, product: GroupedProduct, source: str) -> dict:
        suffix = new_sku_suffix()
        data = self._parent_record(product, generate_sku(product.supplier_name, product.model_reference, suffix=suffix))

        with Saga(f"import:{product.name}") as saga:
            parent = saga.step(
                "create_parent",
                lambda: self.client.create(PRODUCT, data),
                lambda created: self.client.delete(PRODUCT, created["id"]),
            )

            if product.has_variants:
                for index, variant in enumerate(product.variants, start=1):
                    per_store = {
                        self._store_key(s): int(variant.stock_by_store.get(s.stock_field, 0)) for s in self.stores
                    }
                    child = {
                        "uuid": str(uuid.uuid4()),
                        "name": data["name"],
                        "category": data["category"],
                        "environment": data["environment"],
                        "supplier_name": data["supplier_name"],
                        "model_reference": data["model_reference"],
                        "color": variant.color or None,
                        "width": variant.width or None,
                        "height": variant.height or None,
                        "depth": variant.depth or None,
                        "cost_price": variant.cost_price or None,
                        "sale_price": variant.sale_price or None,
                        "stock": variant.total_stock,
                        "stock_by_store": per_store,
                        "is_parent": False,
                        "parent_id": parent["id"],
                        "sku": generate_sku(
                            product.supplier_name, product.model_reference, variant.color, index, suffix=suffix
                        ),
                        "active": True,
                    }
                    saga.step(
                        f"create_variant_{index}",
                        lambda child=child: self.client.create(PRODUCT, child),
                        lambda created: self.client.delete(PRODUCT, created["id"]),
                    )

        try:
            self.client.create(
                PRICE_HISTORY,
                {
                    "product_id": parent["id"],
                    "old_price": 0,
                    "new_price": data["sale_price"],
                    "kind": "import",
                    "reason": f"Bulk CSV import - {source}",
                },
            )
        except Exception as e:
            log.warning("price_history_failed product_id=%s error=%s", parent["id"], e)
        return parent

    def import_products(
        self,
        grouped: Sequence[GroupedProduct],
        should_cancel: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
        source: str = "arquivo",
    ) -> ImportReport:
        """
        Imports grouped products one at a time. A failing product is counted
        and skipped; cancellation stops before the next product and keeps
        what was already written.
        """
        report = ImportReport(total=len(grouped))
        try:
            report.suppliers_created = self.ensure_suppliers(grouped)
        except Exception as e:
            log.warning("supplier_sync_failed error=%s", e)

        for product in grouped:
            if should_cancel is not None and should_cancel():
                report.cancelled = True
                log.warning("import_cancelled imported=%s total=%s", report.imported, report.total)
                break
            try:
                self._import_one(product, source)
                report.imported += 1
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{product.name}: {e}")
                log.error("import_product_failed name=%s error=%s", product.name, e)
            if on_progress is not None:
                on_progress(report.imported + report.failed, report.total)

        log.info("import_finished imported=%s failed=%s total=%s", report.imported, report.failed, report.total)
        return report
