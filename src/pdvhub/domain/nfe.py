"""Dataclasses describing a parsed NF-e (Brazilian electronic invoice)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class InvoiceParty:
    name: str = ""
    trade_name: str = ""
    cnpj: str = ""
    cpf: str = ""
    state_registration: str = ""
    street: str = ""
    number: str = ""
    district: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    phone: str = ""

    @property
    def document(self) -> str:
        return self.cnpj or self.cpf


@dataclass(frozen=True)
class InvoiceTotals:
    products: float = 0.0
    invoice: float = 0.0
    icms_base: float = 0.0
    icms: float = 0.0
    icms_st: float = 0.0
    ipi: float = 0.0
    pis: float = 0.0
    cofins: float = 0.0
    freight: float = 0.0
    insurance: float = 0.0
    discount: float = 0.0
    other: float = 0.0


@dataclass(frozen=True)
class InvoiceTransport:
    mode: str = ""
    carrier_name: str = ""
    carrier_cnpj: str = ""
    volumes: float = 0.0
    gross_weight: float = 0.0
    net_weight: float = 0.0


@dataclass(frozen=True)
class InvoicePayment:
    method_code: str
    amount: float


@dataclass(frozen=True)
class IcmsTax:
    group: str = ""  # e.g. ICMS00, ICMSSN102
    origin: str = ""
    cst: str = ""  # CST or CSOSN, whichever the regime uses
    base: float = 0.0
    rate: float = 0.0
    value: float = 0.0
    st_value: float = 0.0


@dataclass(frozen=True)
class IpiTax:
    cst: str = ""
    rate: float = 0.0
    value: float = 0.0


@dataclass(frozen=True)
class ContributionTax:
    """PIS or COFINS."""

    group: str = ""
    cst: str = ""
    base: float = 0.0
    rate: float = 0.0
    value: float = 0.0


@dataclass(frozen=True)
class TaxBreakdown:
    icms: IcmsTax = field(default_factory=IcmsTax)
    ipi: IpiTax = field(default_factory=IpiTax)
    pis: ContributionTax = field(default_factory=ContributionTax)
    cofins: ContributionTax = field(default_factory=ContributionTax)


@dataclass(frozen=True)
class InvoiceItem:
    number: int
    code: str
    barcode: str
    description: str
    ncm: str = ""
    cest: str = ""
    cfop: str = ""
    unit: str = ""
    quantity: float = 0.0
    unit_value: float = 0.0
    total_value: float = 0.0
    taxes: TaxBreakdown = field(default_factory=TaxBreakdown)


@dataclass(frozen=True)
class ParsedInvoice:
    access_key: str
    number: str = ""
    series: str = ""
    issue_date: str = ""
    operation_nature: str = ""
    model: str = ""
    emitter: InvoiceParty = field(default_factory=InvoiceParty)
    recipient: InvoiceParty = field(default_factory=InvoiceParty)
    totals: InvoiceTotals = field(default_factory=InvoiceTotals)
    transport: InvoiceTransport = field(default_factory=InvoiceTransport)
    payments: tuple[InvoicePayment, ...] = ()
    additional_info: str = ""
    items: tuple[InvoiceItem, ...] = ()


@dataclass
class ReconciledItem:
    item: InvoiceItem
    match: str  # "barcode" | "name" | "new"
    product: Optional[dict] = None
    draft: Optional[dict] = None
    requires_review: bool = False


@dataclass
class InvoiceImportResult:
    invoice_id: str
    supplier_id: str
    financial_entry_id: Optional[str] = None
    created_products: int = 0
    updated_products: int = 0
    review_needed: list[str] = field(default_factory=list)
