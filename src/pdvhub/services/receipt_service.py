from __future__ import annotations

import base64
import html
import logging
import re
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Optional

import requests
from xhtml2pdf import pisa

from pdvhub.domain.models import PICKUP_TERM

log = logging.getLogger("pdvhub.sales")

LOGO_CACHE_KEY = "store_logo_cache"
STORE_NAME = "Móveis Pedro II"

_INTERNAL_PREFIXES = re.compile(r"^\[(SOLICITAÇÃO|PENDENTE CADASTRO)\]\s*", re.IGNORECASE)

POLICY_NOTES = (
    "<strong>Não fazemos entregas com hora marcada.</strong> Agradecemos a compreensão.",
    "<strong>Garantia é de 90 dias</strong> conforme lei nº 8078 de 11/09/1990.",
    "<strong>Não trocamos mercadoria.</strong>",
)

TERM_LABELS = {
    "15 dias": "15 dias úteis",
    "45 dias": "45 dias úteis",
    PICKUP_TERM: "Retirada na loja",
}


def format_brl(value) -> str:
    """1234.5 -> 'R$ 1.234,50'"""
    text = f"{float(value or 0):,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def clean_product_name(name: Optional[str]) -> str:
    if not name:
        return "-"
    return _INTERNAL_PREFIXES.sub("", _INTERNAL_PREFIXES.sub("", name))


def _e(value) -> str:
    return html.escape("" if value is None else str(value))


def _date_br(iso: Optional[str]) -> str:
    if not iso:
        return "-"
    try:
        return datetime.fromisoformat(str(iso)).strftime("%d/%m/%Y")
    except ValueError:
        return str(iso)


def _address(customer: Optional[dict], missing: str) -> str:
    if not customer or not customer.get("address"):
        return missing
    line = f"{customer['address']}, {customer.get('number') or 's/n'}"
    if customer.get("complement"):
        line += f" - {customer['complement']}"
    return f"{line}, {customer.get('district') or ''}, {customer.get('city') or ''} - {customer.get('state') or ''}"


def _payment_label(payment: dict) -> str:
    installments = int(payment.get("installments") or 1)
    suffix = f" ({installments}x)" if installments > 1 else ""
    return f"{_e(payment['method'])}{suffix}: {format_brl(payment['amount'])}"


_BASE_CSS = """
@page { size: A4; margin: 12mm; }
body { font-family: Helvetica, Arial, sans-serif; color: #333; font-size: 11px; }
.brand { font-size: 16px; font-weight: bold; color: #07593f; }
.muted { font-size: 9px; color: #666; }
.number { font-size: 20px; font-weight: bold; color: #07593f; text-align: right; }
.customer { background: #f8fafc; padding: 10px; border-left: 4px solid #07593f; margin: 10px 0; }
table.items { width: 100%; border-collapse: collapse; margin: 10px 0; }
table.items th { background: #07593f; color: #fff; padding: 6px; text-align: left; font-size: 10px; }
table.items td { padding: 6px; border-bottom: 1px solid #e5e5e5; }
.right { text-align: right; }
.center { text-align: center; }
.total { font-size: 16px; font-weight: bold; color: #07593f; }
.notes { background: #fff7ed; padding: 8px; color: #9a3412; margin-top: 10px; }
.policy { background: #f0f9ff; padding: 10px; color: #1e3a8a; margin-top: 10px; }
.footer { text-align: center; margin-top: 20px; border-top: 1px dashed #ccc; padding-top: 8px; font-size: 9px; color: #666; }
.collect { border: 4px dashed #10b981; background: #ecfdf5; padding: 16px; text-align: center; margin-top: 15px; }
.collect-value { font-size: 28px; font-weight: bold; color: #059669; }
.paid { background: #d1fae5; padding: 12px; text-align: center; font-weight: bold; color: #065f46; margin-top: 15px; }
"""


def render_order_receipt(
    sale: dict,
    customer: Optional[dict],
    seller: Optional[str] = None,
    logo_src: Optional[str] = None,
    store_name: str = STORE_NAME,
) -> str:
    """Customer-facing order receipt (no fiscal value)."""
    customer = customer or {}
    customer_name = customer.get("name") or sale.get("customer_name") or "-"
    seller_name = seller or sale.get("seller_name") or "-"
    term = sale.get("delivery_term") or ""

    rows = "".join(
        "<tr>"
        f"<td>{_e(clean_product_name(item.get('product_name')))}</td>"
        f"<td class=\"center\">{_e(item.get('quantity'))}</td>"
        f"<td class=\"right\">{format_brl(item.get('unit_price'))}</td>"
        f"<td class=\"right\"><strong>{format_brl(item.get('subtotal'))}</strong></td>"
        "</tr>"
        for item in sale.get("items") or []
    )

    payments = sale.get("payments") or []
    if payments:
        payment_text = " • ".join(_payment_label(p) for p in payments)
    else:
        payment_text = "Pagamento pendente"

    on_delivery = ""
    if sale.get("pay_on_delivery"):
        on_delivery = (
            f"<p style=\"color:#059669;font-weight:bold;\">+ {format_brl(sale.get('pay_on_delivery_amount'))} "
            f"na entrega ({_e(sale.get('pay_on_delivery_method') or 'A combinar')})</p>"
        )

    discount = float(sale.get("discount") or 0)
    discount_line = (
        f"<tr><td>Desconto:</td><td class=\"right\" style=\"color:#dc2626;\">- {format_brl(discount)}</td></tr>"
        if discount > 0
        else ""
    )
    notes = f"<div class=\"notes\"><strong>Observações:</strong> {_e(sale['notes'])}</div>" if sale.get("notes") else ""
    logo = f"<img src=\"{_e(logo_src)}\" width=\"50\" />" if logo_src else ""
    policy = "".join(f"<li>{n}</li>" for n in POLICY_NOTES)

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>Pedido #{_e(sale.get('number'))}</title>
<style>{_BASE_CSS}</style>
</head>
<body>
<table width="100%"><tr>
<td width="60">{logo}</td>
<td><div class="brand">{_e(store_name)}</div><div class="muted">Loja {_e(sale.get('store'))}</div></td>
<td><div class="number">Pedido #{_e(sale.get('number'))}</div><div class="muted right">{_date_br(sale.get('sale_date'))}</div></td>
</tr></table>
<div class="customer">
<strong style="font-size:14px;color:#07593f;">{_e(customer_name)}</strong><br/>
CPF: {_e(customer.get('document') or '-')} | Tel: {_e(customer.get('phone') or sale.get('customer_phone') or '-')}<br/>
{_e(_address(customer, 'Endereço não cadastrado'))}
</div>
<table width="100%"><tr>
<td class="center">Prazo de Entrega<br/><strong>{_e(TERM_LABELS.get(term, term))}</strong></td>
<td class="center">Vendedor<br/><strong>{_e(seller_name)}</strong></td>
</tr></table>
<table class="items">
<thead><tr><th>Produto</th><th class="center" width="60">Qtd</th><th class="right" width="90">Unitário</th><th class="right" width="90">Subtotal</th></tr></thead>
<tbody>{rows}</tbody>
</table>
<table width="100%"><tr>
<td valign="top"><div class="muted">FORMA DE PAGAMENTO</div><p>{payment_text}</p>{on_delivery}</td>
<td valign="top"><div class="muted">VALORES</div><table width="100%">{discount_line}
<tr class="total"><td>TOTAL:</td><td class="right">{format_brl(sale.get('total'))}</td></tr></table></td>
</tr></table>
{notes}
<div class="policy"><strong>OBSERVAÇÕES:</strong><ul>{policy}</ul></div>
<table width="100%" style="margin-top:50px;"><tr>
<td class="center">______________________________<br/><strong>Assinatura do Cliente</strong><br/><span class="muted">{_e(customer_name)}</span></td>
<td class="center">______________________________<br/><strong>Assinatura do Vendedor</strong><br/><span class="muted">{_e(seller_name)}</span></td>
</tr></table>
<div class="footer"><strong>{_e(store_name)}</strong> - Este documento não possui valor fiscal<br/>
Emitido em {datetime.now().strftime('%d/%m/%Y %H:%M:%S')}</div>
</body>
</html>"""


def render_delivery_note(sale: dict, customer: Optional[dict], seller: Optional[str] = None) -> str:
    """Internal document for the delivery crew, highlighting what to collect."""
    customer = customer or {}
    rows = "".join(
        f"<tr><td>{_e(item.get('product_name'))}</td><td class=\"center\">{_e(item.get('quantity'))}</td></tr>"
        for item in sale.get("items") or []
    )
    kind = "RETIRADA" if sale.get("delivery_term") == PICKUP_TERM else "ENTREGA"
    if sale.get("pay_on_delivery"):
        method = sale.get("pay_on_delivery_method")
        collect = (
            "<div class=\"collect\"><strong>RECEBER NA ENTREGA</strong><br/>"
            f"<span class=\"collect-value\">{format_brl(sale.get('pay_on_delivery_amount'))}</span>"
            + (f"<br/>Forma: <strong>{_e(method)}</strong>" if method else "")
            + "</div>"
        )
    else:
        collect = "<div class=\"paid\">PAGAMENTO JÁ REALIZADO - SEM COBRANÇA</div>"

    return f"""<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>Interno #{_e(sale.get('number'))}</title>
<style>{_BASE_CSS}</style>
</head>
<body>
<div class="brand">CONTROLE INTERNO - PEDIDO #{_e(sale.get('number'))}</div>
<table width="100%" style="margin:10px 0;"><tr>
<td valign="top"><div class="muted">CLIENTE</div><strong>{_e(customer.get('name') or sale.get('customer_name'))}</strong><br/>
Tel: {_e(customer.get('phone') or sale.get('customer_phone'))}</td>
<td valign="top"><div class="muted">ENDEREÇO</div><strong>{_e(_address(customer, 'SEM ENDEREÇO'))}</strong></td>
</tr><tr>
<td valign="top"><div class="muted">VENDEDOR</div><strong>{_e(seller or sale.get('seller_name') or '-')}</strong></td>
<td valign="top"><div class="muted">STATUS</div><strong>{kind}</strong></td>
</tr></table>
<table class="items"><thead><tr><th>Produto</th><th class="center" width="60">Qtd</th></tr></thead><tbody>{rows}</tbody></table>
{collect}
<p class="right muted">Gerado: {datetime.now().strftime('%d/%m/%Y %H:%M:%S')}</p>
</body>
</html>"""


def _link_callback(uri: str, _rel: Optional[str] = None) -> str:
    return uri


def render_pdf_base64(html_text: str) -> Optional[str]:
    """PDF of the given HTML as base64 (no data: prefix), or None on failure."""
    buffer = BytesIO()
    try:
        status = pisa.CreatePDF(html_text, dest=buffer, link_callback=_link_callback, encoding="utf-8")
    except Exception as e:
        log.warning("pdf_render_failed error=%s", e)
        return None
    if status.err:
        log.warning("pdf_render_failed errors=%s", status.err)
        return None
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class LogoCache:
    """Store logo as a data URI, fetched once and kept in local storage."""

    def __init__(self, storage, url: str, timeout: float = 10.0):
        self.storage = storage
        self.url = url
        self.timeout = timeout
        self._src: Optional[str] = None

    def _fetch_bytes(self, url: str) -> tuple[bytes, str]:
        r = requests.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r.content, r.headers.get("Content-Type", "image/png").split(";")[0]

    def load(self) -> Optional[str]:
        if self._src:
            return self._src
        cached = self.storage.get(LOGO_CACHE_KEY) if self.storage is not None else None
        if cached:
            self._src = cached
            return cached
        if not self.url:
            return None
        try:
            content, mime = self._fetch_bytes(self.url)
        except requests.RequestException as e:
            log.warning("logo_fetch_failed url=%s error=%s", self.url, e)
            return self.url
        self._src = f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"
        if self.storage is not None:
            self.storage.set(LOGO_CACHE_KEY, self._src)
        return self._src

    def invalidate(self) -> None:
        self._src = None
        if self.storage is not None:
            self.storage.remove(LOGO_CACHE_KEY)


class PrintWindow:
    def __init__(self, receipts_dir: Optional[Path]):
        self.receipts_dir = receipts_dir
        self.path: Optional[Path] = None
        self.html: Optional[str] = None
        self.closed = False

    def fill(self, html_text: str, number: str) -> Optional[Path]:
        if self.closed:
            raise RuntimeError("Print window already closed.")
        self.html = html_text
        if self.receipts_dir is not None:
            self.receipts_dir.mkdir(parents=True, exist_ok=True)
            self.path = self.receipts_dir / f"Pedido_{number}.html"
            self.path.write_text(html_text, encoding="utf-8")
        return self.path

    def close(self) -> None:
        self.closed = True
        self.html = None


class ReceiptPrinter:
    """Hands out print windows before a sale starts writing anything."""

    def __init__(self, receipts_dir: Path | str | None = None):
        self.receipts_dir = Path(receipts_dir) if receipts_dir is not None else None

    def open(self) -> PrintWindow:
        return PrintWindow(self.receipts_dir)
