from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import date
from typing import Optional, Sequence

from pdvhub.config import NFE_ENVIRONMENTS
from pdvhub.domain.errors import (
    BackendError,
    InvoiceParseError,
    InvoicePendingError,
    ValidationError,
    extract_error_message,
)
from pdvhub.domain.nfe import (
    ContributionTax,
    IcmsTax,
    InvoiceImportResult,
    InvoiceItem,
    InvoiceParty,
    InvoicePayment,
    InvoiceTotals,
    InvoiceTransport,
    IpiTax,
    ParsedInvoice,
    ReconciledItem,
    TaxBreakdown,
)
from pdvhub.repositories.contracts import (
    FINANCIAL_ENTRY,
    INVOICE_ENTRY,
    INVOICE_LINE_ITEM,
    PRODUCT,
    SUPPLIER,
)
from pdvhub.repositories.http_repo import FunctionsClient
from pdvhub.repositories.saga import Saga
from pdvhub.services.catalog import digits

log = logging.getLogger("pdvhub.imports")

NO_GTIN = "SEM GTIN"
PENDING_STATUSES = ("awaiting", "processing")
NFE_ENVIRONMENT_KEY = "nfe_environment"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def find(node: Optional[ET.Element], tag: str) -> Optional[ET.Element]:
    """First descendant with the given local name, ignoring XML namespaces."""
    if node is None:
        return None
    for el in node.iter():
        if el is not node and _local(el.tag) == tag:
            return el
    return None


def find_all(node: Optional[ET.Element], tag: str) -> list[ET.Element]:
    if node is None:
        return []
    return [el for el in node.iter() if el is not node and _local(el.tag) == tag]


def text_of(node: Optional[ET.Element], *tags: str) -> str:
    for tag in tags:
        el = find(node, tag)
        if el is not None and el.text and el.text.strip():
            return el.text.strip()
    return ""


def float_of(node: Optional[ET.Element], *tags: str) -> float:
    raw = text_of(node, *tags)
    try:
        return float(raw) if raw else 0.0
    except ValueError:
        return 0.0


def _first_child(node: Optional[ET.Element]) -> Optional[ET.Element]:
    if node is None:
        return None
    children = list(node)
    return children[0] if children else None


def _party(node: Optional[ET.Element]) -> InvoiceParty:
    if node is None:
        return InvoiceParty()
    address = find(node, "enderEmit")
    if address is None:
        address = find(node, "enderDest")
    return InvoiceParty(
        name=text_of(node, "xNome"),
        trade_name=text_of(node, "xFant"),
        cnpj=text_of(node, "CNPJ"),
        cpf=text_of(node, "CPF"),
        state_registration=text_of(node, "IE"),
        street=text_of(address, "xLgr"),
        number=text_of(address, "nro"),
        district=text_of(address, "xBairro"),
        city=text_of(address, "xMun"),
        state=text_of(address, "UF"),
        zip_code=text_of(address, "CEP"),
        phone=text_of(address, "fone"),
    )


def _taxes(det: ET.Element) -> TaxBreakdown:
    imposto = find(det, "imposto")

    icms_group = _first_child(find(imposto, "ICMS"))
    icms = IcmsTax()
    if icms_group is not None:
        icms = IcmsTax(
            group=_local(icms_group.tag),
            origin=text_of(icms_group, "orig"),
            cst=text_of(icms_group, "CST", "CSOSN"),
            base=float_of(icms_group, "vBC"),
            rate=float_of(icms_group, "pICMS"),
            value=float_of(icms_group, "vICMS"),
            st_value=float_of(icms_group, "vICMSST"),
        )

    ipi_node = find(imposto, "IPI")
    ipi_group = find(ipi_node, "IPITrib")
    if ipi_group is None:
        ipi_group = find(ipi_node, "IPINT")
    ipi = IpiTax()
    if ipi_group is not None:
        ipi = IpiTax(
            cst=text_of(ipi_group, "CST"),
            rate=float_of(ipi_group, "pIPI"),
            value=float_of(ipi_group, "vIPI"),
        )

    def contribution(kind: str) -> ContributionTax:
        group = _first_child(find(imposto, kind))
        if group is None:
            return ContributionTax()
        return ContributionTax(
            group=_local(group.tag),
            cst=text_of(group, "CST"),
            base=float_of(group, "vBC"),
            rate=float_of(group, f"p{kind}"),
            value=float_of(group, f"v{kind}"),
        )

    return TaxBreakdown(icms=icms, ipi=ipi, pis=contribution("PIS"), cofins=contribution("COFINS"))


def _item(det: ET.Element, fallback_number: int) -> InvoiceItem:
    prod = find(det, "prod")
    barcode = text_of(prod, "cEAN")
    if not barcode or barcode.upper() == NO_GTIN:
        barcode = text_of(prod, "cProd")
    try:
        number = int(det.get("nItem") or fallback_number)
    except ValueError:
        number = fallback_number
    return InvoiceItem(
        number=number,
        code=text_of(prod, "cProd"),
        barcode=barcode,
        description=text_of(prod, "xProd"),
        ncm=text_of(prod, "NCM"),
        cest=text_of(prod, "CEST"),
        cfop=text_of(prod, "CFOP"),
        unit=text_of(prod, "uCom"),
        quantity=float_of(prod, "qCom"),
        unit_value=float_of(prod, "vUnCom"),
        total_value=float_of(prod, "vProd"),
        taxes=_taxes(det),
    )


def parse_nfe(xml_text: str) -> ParsedInvoice:
    """
    Parses an NF-e XML document (nfeProc or bare NFe). Raises InvoiceParseError
    on malformed input; nothing is written.
    """
    try:
        root = ET.fromstring((xml_text or "").strip().encode("utf-8"))
    except ET.ParseError as e:
        raise InvoiceParseError(f"Invalid NF-e XML: {e}") from e

    inf = root if _local(root.tag) == "infNFe" else find(root, "infNFe")
    if inf is None:
        raise InvoiceParseError("NF-e XML has no infNFe element.")

    ide = find(inf, "ide")
    totals_node = find(find(inf, "total"), "ICMSTot")
    transp = find(inf, "transp")
    carrier = find(transp, "transporta")
    volume = find(transp, "vol")

    access_key = (inf.get("Id") or "").replace("NFe", "")
    if not access_key:
        access_key = text_of(root, "chNFe")

    dets = find_all(inf, "det")
    return ParsedInvoice(
        access_key=access_key,
        number=text_of(ide, "nNF"),
        series=text_of(ide, "serie"),
        issue_date=text_of(ide, "dhEmi", "dEmi"),
        operation_nature=text_of(ide, "natOp"),
        model=text_of(ide, "mod"),
        emitter=_party(find(inf, "emit")),
        recipient=_party(find(inf, "dest")),
        totals=InvoiceTotals(
            products=float_of(totals_node, "vProd"),
            invoice=float_of(totals_node, "vNF"),
            icms_base=float_of(totals_node, "vBC"),
            icms=float_of(totals_node, "vICMS"),
            icms_st=float_of(totals_node, "vST"),
            ipi=float_of(totals_node, "vIPI"),
            pis=float_of(totals_node, "vPIS"),
            cofins=float_of(totals_node, "vCOFINS"),
            freight=float_of(totals_node, "vFrete"),
            insurance=float_of(totals_node, "vSeg"),
            discount=float_of(totals_node, "vDesc"),
            other=float_of(totals_node, "vOutro"),
        ),
        transport=InvoiceTransport(
            mode=text_of(transp, "modFrete"),
            carrier_name=text_of(carrier, "xNome"),
            carrier_cnpj=text_of(carrier, "CNPJ", "CPF"),
            volumes=float_of(volume, "qVol"),
            gross_weight=float_of(volume, "pesoB"),
            net_weight=float_of(volume, "pesoL"),
        ),
        payments=tuple(
            InvoicePayment(method_code=text_of(p, "tPag"), amount=float_of(p, "vPag"))
            for p in find_all(find(inf, "pag"), "detPag")
        ),
        additional_info=text_of(find(inf, "infAdic"), "infCpl"),
        items=tuple(_item(det, i) for i, det in enumerate(dets, start=1)),
    )


def reconcile(invoice: ParsedInvoice, products: Sequence[dict], markup: float = 1.8) -> list[ReconciledItem]:
    """Barcode match first, then exact name (flagged for review), else a new draft."""
    by_barcode = {str(p.get("barcode")): p for p in products if p.get("barcode")}
    by_name = {str(p.get("name") or "").lower().strip(): p for p in products if p.get("name")}

    out = []
    for item in invoice.items:
        product = by_barcode.get(item.barcode)
        if product is not None:
            out.append(ReconciledItem(item=item, match="barcode", product=product))
            continue
        product = by_name.get(item.description.lower().strip())
        if product is not None:
            out.append(ReconciledItem(item=item, match="name", product=product, requires_review=True))
            continue
        out.append(
            ReconciledItem(
                item=item,
                match="new",
                draft={
                    "name": item.description,
                    "barcode": item.barcode,
                    "ncm": item.ncm or None,
                    "category": "Outros",
                    "cost_price": item.unit_value,
                    "sale_price": round(item.unit_value * markup, 2),
                    "stock": 0,
                    "min_stock": 5,
                    "active": True,
                    "needs_attention": True,
                    "description": f"Importado via NFe {invoice.number}".strip(),
                },
            )
        )
    return out


class NfeImportService:
    def __init__(self, client):
        self.client = client

    def _supplier(self, saga: Saga, emitter: InvoiceParty) -> dict:
        cnpj = digits(emitter.document)
        if cnpj:
            found = self.client.filter(SUPPLIER, {"cnpj": cnpj})
            if found:
                return found[0]
        data = {
            "company_name": emitter.name or "Fornecedor",
            "trade_name": emitter.trade_name,
            "cnpj": cnpj,
            "state_registration": emitter.state_registration,
            "city": emitter.city,
            "state": emitter.state,
            "phone": emitter.phone,
        }
        return saga.step(
            "create_supplier",
            lambda: self.client.create(SUPPLIER, data),
            lambda created: self.client.delete(SUPPLIER, created["id"]),
        )

    def confirm_import(self, invoice: ParsedInvoice, reconciled: Sequence[ReconciledItem]) -> InvoiceImportResult:
        if not reconciled:
            raise ValidationError("Invoice has no items to import.")
        if invoice.access_key and self.client.filter(INVOICE_ENTRY, {"access_key": invoice.access_key}):
            raise ValidationError(f"Invoice {invoice.access_key} was already imported.")

        with Saga(f"nfe:{invoice.number}") as saga:
            supplier = self._supplier(saga, invoice.emitter)
            entry = saga.step(
                "create_invoice_entry",
                lambda: self.client.create(
                    INVOICE_ENTRY,
                    {
                        "access_key": invoice.access_key,
                        "number": invoice.number,
                        "series": invoice.series,
                        "issue_date": invoice.issue_date,
                        "supplier_id": supplier["id"],
                        "supplier_name": invoice.emitter.name,
                        "total": invoice.totals.invoice,
                        "products_total": invoice.totals.products,
                        "freight": invoice.totals.freight,
                        "ipi": invoice.totals.ipi,
                        "icms_st": invoice.totals.icms_st,
                        "status": "Recebida",
                    },
                ),
                lambda created: self.client.delete(INVOICE_ENTRY, created["id"]),
            )
            result = InvoiceImportResult(invoice_id=entry["id"], supplier_id=supplier["id"])

            for rec in reconciled:
                item = rec.item
                qty = int(round(item.quantity))
                if rec.product is None:
                    draft = dict(rec.draft or {})
                    draft["stock"] = qty
                    draft["supplier_name"] = invoice.emitter.name
                    product = saga.step(
                        f"create_product_{item.number}",
                        lambda draft=draft: self.client.create(PRODUCT, draft),
                        lambda created: self.client.delete(PRODUCT, created["id"]),
                    )
                    result.created_products += 1
                else:
                    pid = rec.product["id"]
                    old_cost = rec.product.get("cost_price")
                    saga.step(
                        f"add_stock_{item.number}",
                        lambda pid=pid, qty=qty: self.client.increment_stock(pid, qty),
                        lambda _res, pid=pid, qty=qty: self.client.decrement_stock(pid, qty),
                    )
                    product = saga.step(
                        f"update_cost_{item.number}",
                        lambda pid=pid, cost=item.unit_value: self.client.update(PRODUCT, pid, {"cost_price": cost}),
                        lambda _res, pid=pid, old_cost=old_cost: self.client.update(PRODUCT, pid, {"cost_price": old_cost}),
                    )
                    result.updated_products += 1
                    if rec.requires_review:
                        result.review_needed.append(item.description)

                saga.step(
                    f"create_line_{item.number}",
                    lambda product=product, item=item: self.client.create(
                        INVOICE_LINE_ITEM,
                        {
                            "invoice_id": entry["id"],
                            "product_id": product["id"],
                            "item_number": item.number,
                            "code": item.code,
                            "barcode": item.barcode,
                            "description": item.description,
                            "ncm": item.ncm,
                            "cfop": item.cfop,
                            "quantity": item.quantity,
                            "unit_value": item.unit_value,
                            "total_value": item.total_value,
                            "icms_value": item.taxes.icms.value,
                            "ipi_value": item.taxes.ipi.value,
                            "match": rec.match,
                        },
                    ),
                    lambda created: self.client.delete(INVOICE_LINE_ITEM, created["id"]),
                )

            payable = saga.step(
                "create_payable",
                lambda: self.client.create(
                    FINANCIAL_ENTRY,
                    {
                        "type": "expense",
                        "category": "Compra de Mercadoria",
                        "description": f"NF-e {invoice.number} - {invoice.emitter.name}",
                        "amount": invoice.totals.invoice,
                        "date": date.today().isoformat(),
                        "status": "Pendente",
                        "paid": False,
                        "supplier_id": supplier["id"],
                        "invoice_id": entry["id"],
                    },
                ),
                lambda created: self.client.delete(FINANCIAL_ENTRY, created["id"]),
            )
            result.financial_entry_id = payable["id"]

        log.info(
            "nfe_imported number=%s created=%s updated=%s review=%s",
            invoice.number,
            result.created_products,
            result.updated_products,
            len(result.review_needed),
        )
        return result


def current_environment(storage, default: str = "staging") -> str:
    value = storage.get(NFE_ENVIRONMENT_KEY) if storage is not None else None
    return value if value in NFE_ENVIRONMENTS else default


def set_environment(storage, environment: str) -> None:
    if environment not in NFE_ENVIRONMENTS:
        raise ValidationError(f"Environment must be one of {NFE_ENVIRONMENTS}.")
    storage.set(NFE_ENVIRONMENT_KEY, environment)


class InvoiceLookupClient(FunctionsClient):
    """Fetches an NF-e XML by access key through the distribution lookup function."""

    path = "nfe-lookup"

    def __init__(self, base_url: str, recipient_tax_id: str, environment: str = "staging", **kwargs):
        super().__init__(base_url, **kwargs)
        self.recipient_tax_id = digits(recipient_tax_id)
        self.environment = environment

    def fetch(self, access_key: str) -> str:
        key = digits(access_key)
        if len(key) != 44:
            raise ValidationError("Access key must have 44 digits.")
        if not self.recipient_tax_id:
            raise ValidationError("Recipient tax id (CNPJ) is not configured.")

        body = self._post_json(
            self.path,
            {"access_key": key, "recipient_tax_id": self.recipient_tax_id, "environment": self.environment},
        )
        if body.get("success") and body.get("xml"):
            return str(body["xml"])

        status = str(body.get("status") or "")
        message = extract_error_message(body, "Invoice lookup failed.")
        if status in PENDING_STATUSES:
            log.info("nfe_lookup_pending key=%s status=%s", key, status)
            raise InvoicePendingError(message, status)
        raise BackendError(message)
