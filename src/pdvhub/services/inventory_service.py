from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from pdvhub.domain.errors import NotFoundError, ValidationError
from pdvhub.repositories.contracts import PRODUCT, STOCK_ALERT, STOCK_TRANSFER
from pdvhub.services.catalog import generate_sku

log = logging.getLogger("pdvhub.inventory")

ALERT_OPEN = "Pendente"

# Target margin per category, applied on cost before tax
CATEGORY_MARGINS = {
    "Sofá": 0.30,
    "Cama": 0.25,
    "Mesa": 0.28,
    "Cadeira": 0.27,
    "Armário": 0.32,
    "Estante": 0.30,
    "Rack": 0.30,
    "Poltrona": 0.30,
    "Escrivaninha": 0.28,
    "Criado-mudo": 0.25,
    "Buffet": 0.27,
    "Aparador": 0.26,
    "Banco": 0.24,
    "Colchão": 0.30,
    "Guarda-roupa": 0.33,
    "Cômoda": 0.28,
    "Painel": 0.30,
    "Outros": 0.25,
}
DEFAULT_MARGIN = 0.25
TAX_RATE = 0.18


def stock_adjustment(product: dict) -> float:
    """Up to +10% when below minimum stock, -5% above three times the minimum."""
    minimum = int(product.get("min_stock") or 0)
    if not minimum:
        return 1.0
    stock = int(product.get("stock") or 0)
    if stock < minimum:
        return 1.0 + min((minimum - stock) / minimum * 0.10, 0.10)
    if stock > minimum * 3:
        return 0.95
    return 1.0


class InventoryService:
    def __init__(self, client):
        self.client = client

    def list_products(self, active_only: bool = True) -> list[dict]:
        products = self.client.list(PRODUCT, order_by="name")
        if active_only:
            return [p for p in products if p.get("active", True)]
        return products

    def get_product_by_barcode(self, barcode: str) -> dict:
        code = (barcode or "").strip()
        if not code:
            raise ValidationError("Barcode is required.")
        found = [p for p in self.client.filter(PRODUCT, {"barcode": code}) if p.get("active", True)]
        if not found:
            raise NotFoundError("Product not found.")
        return found[0]

    def add_product(
        self,
        name: str,
        cost_price: float,
        sale_price: float,
        stock: int = 0,
        min_stock: int = 0,
        supplier_name: str = "",
        barcode: Optional[str] = None,
        category: str = "",
    ) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        if stock < 0 or min_stock < 0:
            raise ValidationError("Stock values must be >= 0.")
        if cost_price < 0:
            raise ValidationError("Cost must be >= 0.")
        if sale_price <= 0:
            raise ValidationError("Price must be > 0.")
        if barcode and self.client.filter(PRODUCT, {"barcode": barcode.strip()}):
            raise ValidationError(f"Barcode {barcode} already registered.")

        product = self.client.create(
            PRODUCT,
            {
                "name": name,
                "sku": generate_sku(supplier_name or "GEN", name),
                "uuid": str(uuid.uuid4()),
                "barcode": barcode.strip() if barcode else None,
                "category": category,
                "supplier_name": supplier_name,
                "cost_price": float(cost_price),
                "sale_price": float(sale_price),
                "stock": int(stock),
                "stock_by_store": {},
                "min_stock": int(min_stock),
                "active": True,
            },
        )
        log.info("product_created id=%s sku=%s", product["id"], product["sku"])
        return product

    def deactivate_product(self, product_id: str) -> dict:
        if self.client.get(PRODUCT, product_id) is None:
            raise NotFoundError("Product not found.")
        return self.client.update(PRODUCT, product_id, {"active": False})

    def low_stock(self, limit: int = 10) -> list[dict]:
        """Active products below their minimum, largest shortage first."""
        short = [
            p
            for p in self.list_products()
            if int(p.get("min_stock") or 0) > 0 and int(p.get("stock") or 0) < int(p.get("min_stock") or 0)
        ]
        short.sort(key=lambda p: int(p.get("min_stock") or 0) - int(p.get("stock") or 0), reverse=True)
        return short[:limit]

    def raise_stock_alerts(self) -> list[dict]:
        open_for = {a.get("product_id") for a in self.client.filter(STOCK_ALERT, {"status": ALERT_OPEN})}
        created = []
        for p in self.low_stock(limit=10_000):
            if p["id"] in open_for:
                continue
            created.append(
                self.client.create(
                    STOCK_ALERT,
                    {
                        "product_id": p["id"],
                        "product_name": p.get("name"),
                        "current_stock": int(p.get("stock") or 0),
                        "min_stock": int(p.get("min_stock") or 0),
                        "status": ALERT_OPEN,
                        "created_at": datetime.now().replace(microsecond=0).isoformat(),
                    },
                )
            )
        if created:
            log.info("stock_alerts_created count=%s", len(created))
        return created

    def transfer_stock(self, product_id: str, from_store: str, to_store: str, qty: int, notes: str = "") -> dict:
        if qty <= 0:
            raise ValidationError("Quantity to transfer must be > 0.")
        if from_store == to_store:
            raise ValidationError("Origin and destination stores must differ.")
        product = self.client.get(PRODUCT, product_id)
        if product is None:
            raise NotFoundError("Product not found.")

        by_store = dict(product.get("stock_by_store") or {})
        available = int(by_store.get(from_store) or 0)
        if qty > available:
            raise ValidationError(f"Not enough stock in {from_store}. Available: {available}")
        by_store[from_store] = available - int(qty)
        by_store[to_store] = int(by_store.get(to_store) or 0) + int(qty)

        self.client.update(PRODUCT, product_id, {"stock_by_store": by_store})
        transfer = self.client.create(
            STOCK_TRANSFER,
            {
                "product_id": product_id,
                "product_name": product.get("name"),
                "from_store": from_store,
                "to_store": to_store,
                "quantity": int(qty),
                "notes": notes,
                "transferred_at": datetime.now().replace(microsecond=0).isoformat(),
            },
        )
        log.info("stock_transferred product_id=%s from=%s to=%s qty=%s", product_id, from_store, to_store, qty)
        return transfer

    def suggested_price(self, product: dict) -> float:
        cost = float(product.get("cost_price") or 0.0)
        if cost <= 0:
            return 0.0
        margin = CATEGORY_MARGINS.get(product.get("category") or "", DEFAULT_MARGIN)
        price = cost * (1 + margin) * stock_adjustment(product) * (1 + TAX_RATE)
        return round(price, 2)
