from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Optional, Union


class Step(IntEnum):
    PRODUCTS = 1
    CUSTOMER = 2
    PAYMENT = 3


# Assembly options for a cart line
ASSEMBLY_INTERNAL = "assembled"
ASSEMBLY_OUTSOURCED = "client_assembly"
ASSEMBLY_PICKUP = "pickup"
ASSEMBLY_DISASSEMBLED = "disassembled"  # delivered boxed, no assembly job
ASSEMBLY_KINDS = (ASSEMBLY_INTERNAL, ASSEMBLY_OUTSOURCED, ASSEMBLY_PICKUP, ASSEMBLY_DISASSEMBLED)

SHOWROOM_ORIGIN = "showroom"

PICKUP_TERM = "Retirado na loja"

SALE_PAID = "Pago"
SALE_PENDING = "Pagamento Pendente"
SALE_CANCELLED = "Cancelado"


@dataclass(frozen=True)
class ExistingProduct:
    id: str
    kind: str = "existing"


@dataclass(frozen=True)
class ProvisionalProduct:
    """A product not yet registered, sold against a registration request."""

    data: dict
    kind: str = "provisional"


ProductSelection = Union[ExistingProduct, ProvisionalProduct]


@dataclass
class CartItem:
    product_id: Optional[str]
    product_name: str
    quantity: int
    unit_price: float
    assembly: str = ASSEMBLY_INTERNAL
    origin: Optional[str] = None
    request_id: Optional[str] = None
    request_details: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    @property
    def is_provisional(self) -> bool:
        return self.request_id is not None

    def to_record(self) -> dict:
        data = asdict(self)
        data["subtotal"] = self.subtotal
        return data

    @classmethod
    def from_record(cls, data: dict) -> "CartItem":
        return cls(
            product_id=data.get("product_id"),
            product_name=data.get("product_name", ""),
            quantity=int(data.get("quantity", 1)),
            unit_price=float(data.get("unit_price", 0.0)),
            assembly=data.get("assembly", ASSEMBLY_INTERNAL),
            origin=data.get("origin"),
            request_id=data.get("request_id"),
            request_details=data.get("request_details"),
        )


@dataclass
class Payment:
    method: str
    amount: float
    installments: int = 1
    link_url: Optional[str] = None
    link_id: Optional[str] = None
    qr_code_url: Optional[str] = None
    provider_id: Optional[str] = None
    status: Optional[str] = None

    def to_record(self) -> dict:
        return asdict(self)

    @classmethod
    def from_record(cls, data: dict) -> "Payment":
        return cls(
            method=data["method"],
            amount=float(data["amount"]),
            installments=int(data.get("installments") or 1),
            link_url=data.get("link_url"),
            link_id=data.get("link_id"),
            qr_code_url=data.get("qr_code_url"),
            provider_id=data.get("provider_id"),
            status=data.get("status"),
        )


@dataclass
class PayOnDelivery:
    active: bool = False
    amount: float = 0.0
    method: str = ""


@dataclass
class DeliveryConfig:
    date: str
    store: str
    term: str = ""


@dataclass
class Variant:
    color: str = ""
    color_hex: Optional[str] = None
    fabrics: str = ""
    size: str = ""
    extra_dimension: str = ""
    width: Optional[float] = None
    height: Optional[float] = None
    depth: Optional[float] = None
    cost_price: float = 0.0
    sale_price: float = 0.0
    stock_by_store: dict[str, int] = field(default_factory=dict)
    line: int = 0

    @property
    def total_stock(self) -> int:
        return sum(int(v) for v in self.stock_by_store.values())


@dataclass
class GroupedProduct:
    name: str
    category: str = ""
    environment: str = ""
    supplier_name: str = ""
    model_reference: str = ""
    material: str = ""
    taxes_percent: float = 0.0
    freight_cost: float = 0.0
    ipi_percent: float = 0.0
    markup: Optional[float] = None
    seller_discount_limit: float = 5.0
    manager_discount_limit: float = 15.0
    requires_assembly: bool = False
    outsourced_assembly: bool = False
    ncm: Optional[str] = None
    variants: list[Variant] = field(default_factory=list)

    @property
    def has_variants(self) -> bool:
        return len(self.variants) > 1 or any(v.color or v.size for v in self.variants)

    def stock_by_store(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for v in self.variants:
            for key, qty in v.stock_by_store.items():
                totals[key] = totals.get(key, 0) + int(qty)
        return totals

    @property
    def total_stock(self) -> int:
        return sum(self.stock_by_store().values())

    @property
    def min_sale_price(self) -> float:
        prices = [v.sale_price for v in self.variants if v.sale_price and v.sale_price > 0]
        return min(prices) if prices else 0.0


@dataclass
class ParseResult:
    rows: list[dict]
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    delimiter: str = ","


@dataclass
class ImportReport:
    total: int
    imported: int = 0
    failed: int = 0
    cancelled: bool = False
    suppliers_created: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OfflineSaleEntry:
    offline_id: str
    timestamp: str
    payload: dict

    def to_record(self) -> dict:
        return {"offline_id": self.offline_id, "timestamp": self.timestamp, "payload": self.payload}


@dataclass
class FinalizeResult:
    status: str  # "completed" | "offline" | "aborted"
    number: Optional[str] = None
    sale_id: Optional[str] = None
    sale: Optional[dict] = None
    receipt_html: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class SyncReport:
    synced: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LoyaltyResult:
    success: bool
    points_earned: int = 0
    new_balance: int = 0
    tier: Optional[str] = None
    multiplier: float = 1.0
