import base64
from pathlib import Path

import pytest
import requests

from pdvhub.domain.models import PICKUP_TERM
from pdvhub.repositories.local_storage import LocalStorage
from pdvhub.services import receipt_service
from pdvhub.services.notification_service import NotificationService, items_summary
from pdvhub.services.receipt_service import (
    LOGO_CACHE_KEY,
    LogoCache,
    ReceiptPrinter,
    clean_product_name,
    format_brl,
    render_delivery_note,
    render_order_receipt,
    render_pdf_base64,
)

SALE = {
    "number": "00042",
    "sale_date": "2024-06-03",
    "store": "Centro",
    "seller_name": "Ana",
    "customer_name": "Maria Souza",
    "customer_phone": "21999998888",
    "items": [
        {"product_name": "[SOLICITAÇÃO] Painel <Ripado>", "quantity": 1, "unit_price": 700.0, "subtotal": 700.0},
        {"product_name": "Sofá Retrátil", "quantity": 2, "unit_price": 1000.0, "subtotal": 2000.0},
    ],
    "payments": [{"method": "Crédito", "amount": 1500.0, "installments": 10}, {"method": "Pix", "amount": 700.0}],
    "discount": 200.0,
    "total": 2500.0,
    "delivery_term": "15 dias",
    "notes": "Portão azul & campainha",
}
CUSTOMER = {"name": "Maria Souza", "document": "12345678901", "phone": "21999998888",
            "address": "Rua A", "number": "10", "district": "Centro", "city": "Rio", "state": "RJ"}


@pytest.mark.parametrize(
    "value,expected",
    [(1234.5, "R$ 1.234,50"), (0, "R$ 0,00"), (None, "R$ 0,00"), (1000000, "R$ 1.000.000,00"), ("12.3", "R$ 12,30")],
)
def test_format_brl(value, expected):
    assert format_brl(value) == expected


def test_clean_product_name_drops_internal_prefixes():
    assert clean_product_name("[SOLICITAÇÃO] Painel") == "Painel"
    assert clean_product_name("[pendente cadastro] Mesa") == "Mesa"
    assert clean_product_name("[SOLICITAÇÃO] [PENDENTE CADASTRO] Cama") == "Cama"
    assert clean_product_name("Sofá [Retrátil]") == "Sofá [Retrátil]"
    assert clean_product_name(None) == "-"


def test_order_receipt_lists_items_payments_and_escapes_text():
    html = render_order_receipt(SALE, CUSTOMER, logo_src="data:image/png;base64,AAA")

    assert "Pedido #00042" in html
    assert "03/06/2024" in html
    assert "Painel &lt;Ripado&gt;" in html
    assert "SOLICITAÇÃO" not in html
    assert "Crédito (10x): R$ 1.500,00" in html
    assert "Pix: R$ 700,00" in html
    assert "- R$ 200,00" in html
    assert "R$ 2.500,00" in html
    assert "15 dias úteis" in html
    assert "Portão azul &amp; campainha" in html
    assert "Rua A, 10, Centro, Rio - RJ" in html
    assert 'src="data:image/png;base64,AAA"' in html
    assert "não possui valor fiscal" in html


def test_order_receipt_without_customer_or_payments():
    sale = {**SALE, "payments": [], "discount": 0, "notes": "", "delivery_term": PICKUP_TERM}
    html = render_order_receipt(sale, None)

    assert "Pagamento pendente" in html
    assert "Endereço não cadastrado" in html
    assert "Retirada na loja" in html
    assert "Desconto" not in html
    assert "<img" not in html


def test_delivery_note_shows_amount_to_collect_or_paid_banner():
    collect = render_delivery_note(
        {**SALE, "pay_on_delivery": True, "pay_on_delivery_amount": 800.0, "pay_on_delivery_method": "Dinheiro"},
        CUSTOMER,
    )
    assert "CONTROLE INTERNO - PEDIDO #00042" in collect
    assert "RECEBER NA ENTREGA" in collect
    assert "R$ 800,00" in collect
    assert "Dinheiro" in collect
    assert "ENTREGA</strong>" in collect

    paid = render_delivery_note({**SALE, "delivery_term": PICKUP_TERM}, None)
    assert "SEM COBRANÇA" in paid
    assert "RETIRADA" in paid
    assert "SEM ENDEREÇO" in paid


def test_pdf_render_returns_base64(monkeypatch):
    class Status:
        err = 0

    def fake_create(html, dest, link_callback, encoding):
        dest.write(b"%PDF-1.4 fake")
        return Status()

    monkeypatch.setattr(receipt_service.pisa, "CreatePDF", fake_create)

    assert base64.b64decode(render_pdf_base64("<p>x</p>")) == b"%PDF-1.4 fake"


def test_pdf_render_failure_returns_none(monkeypatch):
    class Status:
        err = 2

    monkeypatch.setattr(receipt_service.pisa, "CreatePDF", lambda *a, **k: Status())
    assert render_pdf_base64("<p>x</p>") is None

    def explode(*a, **k):
        raise ValueError("bad css")

    monkeypatch.setattr(receipt_service.pisa, "CreatePDF", explode)
    assert render_pdf_base64("<p>x</p>") is None


def test_logo_is_fetched_once_and_cached_as_data_uri(tmp_path: Path, monkeypatch):
    storage = LocalStorage(tmp_path / "storage.json")
    logo = LogoCache(storage, "https://cdn.example/logo.png")
    fetched = []

    def fake_fetch(url):
        fetched.append(url)
        return b"\x89PNG", "image/png"

    monkeypatch.setattr(logo, "_fetch_bytes", fake_fetch)

    src = logo.load()
    assert src == "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode("ascii")
    assert logo.load() == src
    assert LogoCache(LocalStorage(tmp_path / "storage.json"), "https://cdn.example/logo.png").load() == src
    assert fetched == ["https://cdn.example/logo.png"]

    logo.invalidate()
    assert storage.get(LOGO_CACHE_KEY) is None


def test_logo_falls_back_to_url_when_fetch_fails(monkeypatch):
    logo = LogoCache(LocalStorage(), "https://cdn.example/logo.png")

    def fail(url):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(logo, "_fetch_bytes", fail)

    assert logo.load() == "https://cdn.example/logo.png"
    assert LogoCache(LocalStorage(), "").load() is None


def test_print_window_writes_receipt_and_refuses_after_close(tmp_path: Path):
    window = ReceiptPrinter(tmp_path / "receipts").open()
    path = window.fill("<p>ok</p>", "00042")

    assert path == tmp_path / "receipts" / "Pedido_00042.html"
    assert path.read_text(encoding="utf-8") == "<p>ok</p>"

    window.close()
    with pytest.raises(RuntimeError):
        window.fill("<p>again</p>", "00042")
    assert ReceiptPrinter().open().fill("<p>x</p>", "1") is None


def test_items_summary_cleans_names():
    assert items_summary(SALE["items"]) == "• 1x Painel <Ripado>\n• 2x Sofá Retrátil"


def test_notify_sale_posts_payload(monkeypatch):
    service = NotificationService("https://robot.example/")
    sent = []
    monkeypatch.setattr(service, "_post_json", lambda url, payload: sent.append((url, payload)))

    assert service.notify_sale(SALE, "UERG") is True
    url, payload = sent[0]
    assert url == "https://robot.example/mensagem-pos-venda"
    assert payload["phone"] == "21999998888"
    assert payload["order_number"] == "00042"
    assert payload["pdf_base64"] == "UERG"


def test_notify_sale_skips_or_swallows_failures(monkeypatch):
    assert NotificationService("").notify_sale(SALE) is False
    assert NotificationService("https://robot.example").notify_sale({**SALE, "customer_phone": None}) is False

    service = NotificationService("https://robot.example")

    def fail(url, payload):
        raise requests.Timeout("slow robot")

    monkeypatch.setattr(service, "_post_json", fail)
    assert service.notify_sale(SALE) is False
