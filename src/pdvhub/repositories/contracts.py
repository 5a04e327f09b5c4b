from __future__ import annotations

from typing import Optional, Protocol


# Entity names shared by every client implementation
PRODUCT = "Product"
CUSTOMER = "Customer"
SALE = "Sale"
DELIVERY = "Delivery"
ASSEMBLY_ITEM = "AssemblyItem"
COUPON = "Coupon"
MANAGER_TOKEN = "ManagerToken"
MANAGER_TOKEN_USAGE_LOG = "ManagerTokenUsageLog"
FINANCIAL_ENTRY = "FinancialEntry"
SUPPLIER = "Supplier"
INVOICE_ENTRY = "InvoiceEntry"
INVOICE_LINE_ITEM = "InvoiceLineItem"
STOCK_ALERT = "StockAlert"
STOCK_TRANSFER = "StockTransfer"
PURCHASE_ORDER = "PurchaseOrder"
PRICE_HISTORY = "PriceHistory"
FEE_RULE = "FeeRule"
LOYALTY_CONFIG = "LoyaltyConfig"
LOYALTY_TIER = "LoyaltyTier"

ENTITIES = (
    PRODUCT,
    CUSTOMER,
    SALE,
    DELIVERY,
    ASSEMBLY_ITEM,
    COUPON,
    MANAGER_TOKEN,
    MANAGER_TOKEN_USAGE_LOG,
    FINANCIAL_ENTRY,
    SUPPLIER,
    INVOICE_ENTRY,
    INVOICE_LINE_ITEM,
    STOCK_ALERT,
    STOCK_TRANSFER,
    PURCHASE_ORDER,
    PRICE_HISTORY,
    FEE_RULE,
    LOYALTY_CONFIG,
    LOYALTY_TIER,
)


class EntityClient(Protocol):
    def list(self, entity: str, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]: ...
    def filter(self, entity: str, criteria: dict) -> list[dict]: ...
    def get(self, entity: str, record_id: str) -> Optional[dict]: ...
    def create(self, entity: str, data: dict) -> dict: ...
    def update(self, entity: str, record_id: str, data: dict) -> dict: ...
    def delete(self, entity: str, record_id: str) -> None: ...
    def decrement_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict: ...
    def increment_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict: ...
    def next_sequence(self, name: str, floor: int = 0) -> int: ...


def sort_records(records: list[dict], order_by: Optional[str]) -> list[dict]:
    if not order_by:
        return records
    reverse = order_by.startswith("-")
    key = order_by.lstrip("-")
    present = [r for r in records if r.get(key) is not None]
    missing = [r for r in records if r.get(key) is None]
    present.sort(key=lambda r: r[key], reverse=reverse)
    return present + missing


def matches(record: dict, criteria: dict) -> bool:
    return all(record.get(k) == v for k, v in criteria.items())


def apply_stock_delta(product: dict, delta: int, store_id: Optional[str]) -> dict:
    """Returns the fields to write for a stock change; caller checks bounds."""
    changes = {"stock": int(product.get("stock") or 0) + int(delta)}
    if store_id is not None:
        per_store = dict(product.get("stock_by_store") or {})
        per_store[store_id] = int(per_store.get(store_id) or 0) + int(delta)
        changes["stock_by_store"] = per_store
    return changes


def stock_available(product: dict, qty: int, store_id: Optional[str]) -> bool:
    if int(product.get("stock") or 0) < qty:
        return False
    if store_id is not None:
        per_store = product.get("stock_by_store") or {}
        return int(per_store.get(store_id) or 0) >= qty
    return True
