from pathlib import Path

import pytest
from openpyxl import Workbook, load_workbook

from pdvhub.config import StoreConfig
from pdvhub.domain.errors import ValidationError
from pdvhub.repositories.contracts import PRICE_HISTORY, PRODUCT, SUPPLIER
from pdvhub.repositories.memory_repo import InMemoryEntityStore
from pdvhub.services.csv_import_service import (
    BASE_COLUMN_MAPPING,
    ProductImportService,
    build_column_mapping,
    build_template,
    detect_delimiter,
    group_rows,
    normalize_header,
    parse_csv,
    parse_number,
    parse_xlsx,
    write_template_xlsx,
)

STORES = (StoreConfig("Centro", "Centro", "store-centro"), StoreConfig("CD", "Deposito"))


def test_detect_delimiter_prefers_semicolon_only_when_more_frequent():
    assert detect_delimiter("a;b;c") == ";"
    assert detect_delimiter("a,b,c") == ","
    assert detect_delimiter("a;b,c") == ","
    assert detect_delimiter("nome") == ","


def test_every_synonym_normalizes_with_any_case_and_whitespace():
    mapping = build_column_mapping(STORES)
    for synonym, canonical in BASE_COLUMN_MAPPING.items():
        raw = "  " + synonym.upper().replace(" ", "   ") + "\t"
        assert normalize_header(raw, mapping) == canonical


def test_unknown_header_is_lowercased_and_collapsed():
    assert normalize_header("  Coluna   Nova ", build_column_mapping(())) == "coluna nova"


def test_store_columns_map_to_store_stock_fields():
    mapping = build_column_mapping(STORES)
    assert normalize_header("MOSTRUARIO LOJA CENTRO", mapping) == "stock_centro"
    assert normalize_header("Mostruario Deposito", mapping) == "stock_cd"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("R$ 1.200,50", 1200.5),
        ("1200", 1200.0),
        ("12,5%", 12.5),
        ("3.5", 3.5),
        ("", None),
        (None, None),
        ("abc", None),
        (7, 7.0),
    ],
)
def test_parse_number(raw, expected):
    assert parse_number(raw) == expected


def test_parse_csv_reports_missing_names_and_applies_defaults():
    text = (
        "DESCRIÇÃO DO PRODUTO;PREÇO DE CUSTO;PREÇO VENDA FINAL;MOSTRUARIO LOJA CENTRO;MOVEIS MONTAGEM\n"
        "Sofá Lisboa;\"1.000,00\";2500;3;SIM\n"
        ";10;20;1;NAO\n"
    )
    result = parse_csv(text, STORES)

    assert result.delimiter == ";"
    assert len(result.rows) == 1
    assert result.errors == ["Linha 3: Nome/Descrição do produto é obrigatório"]
    row = result.rows[0]
    assert row["cost_price"] == 1000.0
    assert row["sale_price"] == 2500.0
    assert row["stock_centro"] == 3
    assert row["stock_cd"] == 0
    assert row["requires_assembly"] is True
    assert row["seller_discount_limit"] == 5.0
    assert row["manager_discount_limit"] == 15.0


def test_parse_csv_warns_about_stock_columns_without_store():
    result = parse_csv("nome,estoque loja norte\nMesa,4\n", STORES)
    assert len(result.rows) == 1
    assert any("estoque loja norte" in w for w in result.warnings)


def test_parse_csv_rejects_empty_input():
    with pytest.raises(ValidationError, match="empty"):
        parse_csv("   ", STORES)


def test_grouping_merges_rows_with_same_name_model_and_dimensions():
    text = (
        "nome,modelo,largura,altura,profundidade,cor,preco,centro\n"
        "Sofá Lisboa,LIS-1,220,95,100,Cinza,2500,2\n"
        "sofá lisboa ,LIS-1,220,95,100,Bege,2400,1\n"
        "Sofá Lisboa,LIS-1,180,95,100,Cinza,2100,5\n"
    )
    grouped = group_rows(parse_csv(text, STORES).rows, STORES)

    assert len(grouped) == 2
    big = grouped[0]
    assert [v.color for v in big.variants] == ["Cinza", "Bege"]
    assert big.has_variants
    assert big.stock_by_store() == {"stock_centro": 3, "stock_cd": 0}
    assert big.min_sale_price == 2400.0
    assert grouped[1].total_stock == 5


def test_parse_xlsx_reads_first_sheet(tmp_path: Path):
    wb = Workbook()
    ws = wb.active
    ws.append(["Descrição do Produto", "Preço de Custo", "Estoque CD"])
    ws.append(["Cama Box", 800, 4])
    ws.append([None, None, None])
    ws.append([None, 10, 1])
    path = tmp_path / "produtos.xlsx"
    wb.save(path)

    result = parse_xlsx(path, STORES)

    assert [r["name"] for r in result.rows] == ["Cama Box"]
    assert result.rows[0]["stock_cd"] == 4
    assert result.errors == ["Linha 4: Nome/Descrição do produto é obrigatório"]


def test_template_lists_configured_stores(tmp_path: Path):
    header, example = build_template(STORES).split("\n")
    assert "MOSTRUARIO CENTRO" in header
    assert "MOSTRUARIO DEPOSITO" in header
    assert len(header.split(",")) == len(example.split(","))

    path = write_template_xlsx(tmp_path / "modelo.xlsx", STORES)
    ws = load_workbook(path).active
    assert ws["A1"].value == "FABRICANTE / FORNECEDOR"
    assert ws.max_row == 2


def _grouped(text: str):
    return group_rows(parse_csv(text, STORES).rows, STORES)


def test_import_creates_suppliers_parent_variants_and_price_history():
    client = InMemoryEntityStore({SUPPLIER: [{"company_name": "ALTARO"}]})
    service = ProductImportService(client, STORES)
    grouped = _grouped(
        "fornecedor,nome,modelo,cor,preco,centro\n"
        "Altaro,Sofá Lisboa,LIS,Cinza,2500,2\n"
        "Altaro,Sofá Lisboa,LIS,Bege,2400,1\n"
        "Nova Fabrica,Rack Home,RK,,900,4\n"
    )

    report = service.import_products(grouped)

    assert (report.imported, report.failed, report.cancelled) == (2, 0, False)
    assert report.suppliers_created == 1
    products = client.list(PRODUCT)
    parents = [p for p in products if p["is_parent"]]
    children = [p for p in products if not p["is_parent"]]
    assert len(parents) == 2
    assert len(children) == 2
    sofa = next(p for p in parents if p["name"] == "Sofá Lisboa")
    assert sofa["stock"] == 3
    assert sofa["stock_by_store"] == {"store-centro": 3, "CD": 0}
    assert sofa["category"] == "Sofá"
    suffix = sofa["sku"].split("-")[2]
    assert all(c["sku"].split("-")[2] == suffix for c in children)
    assert len(client.list(PRICE_HISTORY)) == 2


def test_import_stops_between_products_when_cancelled():
    client = InMemoryEntityStore()
    service = ProductImportService(client, STORES)
    grouped = _grouped("nome,preco\nMesa A,100\nMesa B,200\nMesa C,300\n")
    seen = []

    report = service.import_products(
        grouped,
        should_cancel=lambda: len(seen) >= 2,
        on_progress=lambda done, total: seen.append((done, total)),
    )

    assert report.cancelled is True
    assert report.imported == 2
    assert len(client.list(PRODUCT)) == 2
    assert seen == [(1, 3), (2, 3)]


class FailingVariantStore(InMemoryEntityStore):
    def create(self, entity, data):
        if entity == PRODUCT and data.get("color") == "Bege":
            raise RuntimeError("backend down")
        return super().create(entity, data)


def test_failed_variant_rolls_back_its_parent_and_continues():
    client = FailingVariantStore()
    service = ProductImportService(client, STORES)
    grouped = _grouped(
        "nome,modelo,cor,preco\n"
        "Sofá Lisboa,LIS,Cinza,2500\n"
        "Sofá Lisboa,LIS,Bege,2400\n"
        "Cadeira Eames,EA,,300\n"
    )

    report = service.import_products(grouped)

    assert (report.imported, report.failed) == (1, 1)
    assert "Sofá Lisboa" in report.errors[0]
    assert [p["name"] for p in client.list(PRODUCT)] == ["Cadeira Eames"]
