from __future__ import annotations

import logging
import time
from dataclasses import asdict
from datetime import date
from typing import Optional, Sequence

from pdvhub.domain.errors import NotFoundError, ValidationError
from pdvhub.domain.models import (
    ASSEMBLY_INTERNAL,
    ASSEMBLY_KINDS,
    ASSEMBLY_PICKUP,
    SHOWROOM_ORIGIN,
    CartItem,
    DeliveryConfig,
    ExistingProduct,
    Payment,
    PayOnDelivery,
    ProductSelection,
    ProvisionalProduct,
    Step,
)

log = logging.getLogger("pdvhub.sales")

PDV_STATE_KEY = "pdv_state"


class BarcodeScanGuard:
    """Drops a repeated scan of the same code inside a short window (scanner bounce)."""

    def __init__(self, window_seconds: float = 1.5, clock=time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_code: Optional[str] = None
        self._last_at = 0.0

    def should_lookup(self, code: str) -> bool:
        code = (code or "").strip()
        if not code:
            return False
        now = self._clock()
        if code == self._last_code and now - self._last_at < self.window_seconds:
            return False
        self._last_code = code
        self._last_at = now
        return True

    def reset(self) -> None:
        self._last_code = None
        self._last_at = 0.0


class PdvSession:
    """Three-step sale wizard: products, customer/delivery, payment.

    Every mutation is written to local storage under PDV_STATE_KEY, so an
    interrupted sale can be resumed with PdvSession.restore().
    """

    def __init__(self, storage=None, default_store: str = "Centro", today: Optional[date] = None):
        self.storage = storage
        self.default_store = default_store
        self._today = today
        self._clear()

    def _clear(self) -> None:
        self.step = Step.PRODUCTS
        self.items: list[CartItem] = []
        self.customer: Optional[dict] = None
        self.delivery = DeliveryConfig(date=(self._today or date.today()).isoformat(), store=self.default_store)
        self.payments: list[Payment] = []
        self.discount = 0.0
        self.coupon: Optional[dict] = None
        self.manager_token: Optional[dict] = None
        self.notes = ""
        self.pay_on_delivery = PayOnDelivery()

    # ---------- persistence ----------
    def to_state(self) -> dict:
        return {
            "step": int(self.step),
            "items": [i.to_record() for i in self.items],
            "customer": self.customer,
            "delivery": asdict(self.delivery),
            "payments": [p.to_record() for p in self.payments],
            "discount": self.discount,
            "coupon": self.coupon,
            "manager_token": self.manager_token,
            "notes": self.notes,
            "pay_on_delivery": asdict(self.pay_on_delivery),
        }

    def save(self) -> None:
        if self.storage is not None:
            self.storage.set(PDV_STATE_KEY, self.to_state())

    @classmethod
    def restore(cls, storage, default_store: str = "Centro") -> "PdvSession":
        session = cls(storage, default_store=default_store)
        state = storage.get(PDV_STATE_KEY) if storage is not None else None
        if not state:
            return session
        session.step = Step(int(state.get("step") or 1))
        session.items = [CartItem.from_record(r) for r in state.get("items") or []]
        session.customer = state.get("customer")
        session.delivery = DeliveryConfig(**{**asdict(session.delivery), **(state.get("delivery") or {})})
        session.payments = [Payment.from_record(r) for r in state.get("payments") or []]
        session.discount = float(state.get("discount") or 0.0)
        session.coupon = state.get("coupon")
        session.manager_token = state.get("manager_token")
        session.notes = state.get("notes") or ""
        session.pay_on_delivery = PayOnDelivery(**(state.get("pay_on_delivery") or {}))
        log.info("pdv_state_restored step=%s items=%s", int(session.step), len(session.items))
        return session

    def reset(self) -> None:
        self._clear()
        if self.storage is not None:
            self.storage.remove(PDV_STATE_KEY)

    # ---------- totals ----------
    @property
    def subtotal(self) -> float:
        return round(sum(i.subtotal for i in self.items), 2)

    @property
    def total(self) -> float:
        return round(max(0.0, self.subtotal - self.discount), 2)

    @property
    def amount_paid(self) -> float:
        return round(sum(p.amount for p in self.payments), 2)

    @property
    def remaining(self) -> float:
        return round(max(0.0, self.total - self.amount_paid), 2)

    def _clamp_discount(self) -> None:
        self.discount = round(min(max(self.discount, 0.0), self.subtotal), 2)

    # ---------- cart ----------
    def add_product(self, selection: ProductSelection, catalog: Sequence[dict] = ()) -> CartItem:
        if isinstance(selection, ExistingProduct):
            product = next((p for p in catalog if str(p.get("id")) == str(selection.id)), None)
            if product is None:
                raise NotFoundError(f"Product {selection.id} not found.")
            request_id = None
        elif isinstance(selection, ProvisionalProduct):
            product = selection.data
            request_id = product.get("request_id")
            if not request_id:
                raise ValidationError("Provisional product needs a registration request id.")
        else:
            raise ValidationError(f"Unsupported product selection: {selection!r}")

        for item in self.items:
            same = item.request_id == request_id if request_id else (
                item.request_id is None and item.product_id == str(product.get("id"))
            )
            if same:
                item.quantity += 1
                self.save()
                return item

        origin = product.get("origin")
        if origin == SHOWROOM_ORIGIN:
            assembly = ASSEMBLY_PICKUP
        else:
            assembly = product.get("default_delivery") or ASSEMBLY_INTERNAL
            if assembly not in ASSEMBLY_KINDS:
                assembly = ASSEMBLY_INTERNAL

        item = CartItem(
            product_id=str(product["id"]) if product.get("id") is not None else None,
            product_name=str(product.get("name") or ""),
            quantity=1,
            unit_price=float(product.get("sale_price") or 0.0),
            assembly=assembly,
            origin=origin,
            request_id=request_id,
            request_details=product.get("request_details"),
        )
        self.items.append(item)
        self.save()
        return item

    def add_by_barcode(self, code: str, catalog: Sequence[dict], guard: Optional[BarcodeScanGuard] = None) -> Optional[CartItem]:
        if guard is not None and not guard.should_lookup(code):
            return None
        code = (code or "").strip()
        product = next((p for p in catalog if str(p.get("barcode") or "") == code and p.get("active", True)), None)
        if product is None:
            raise NotFoundError(f"No product with barcode {code}.")
        return self.add_product(ExistingProduct(str(product["id"])), catalog)

    def _item(self, index: int) -> CartItem:
        if not 0 <= index < len(self.items):
            raise ValidationError(f"No cart item at position {index}.")
        return self.items[index]

    def set_assembly(self, index: int, kind: str) -> None:
        if kind not in ASSEMBLY_KINDS:
            raise ValidationError(f"Assembly must be one of {ASSEMBLY_KINDS}.")
        self._item(index).assembly = kind
        self.save()

    def remove_item(self, index: int) -> None:
        self._item(index)
        del self.items[index]
        self._clamp_discount()
        self.save()

    def set_quantity(self, index: int, quantity: int) -> None:
        if int(quantity) < 1:
            raise ValidationError("Quantity must be >= 1.")
        self._item(index).quantity = int(quantity)
        self._clamp_discount()
        self.save()

    # ---------- customer / delivery ----------
    def select_customer(self, customer: Optional[dict]) -> None:
        self.customer = customer
        self.save()

    def set_delivery_term(self, term: str, store: Optional[str] = None, delivery_date: Optional[str] = None) -> None:
        self.delivery.term = (term or "").strip()
        if store:
            self.delivery.store = store
        if delivery_date:
            self.delivery.date = delivery_date
        self.save()

    def set_pay_on_delivery(self, active: bool, amount: float = 0.0, method: str = "") -> None:
        if active and amount <= 0:
            raise ValidationError("Amount to collect on delivery must be > 0.")
        self.pay_on_delivery = PayOnDelivery(active=bool(active), amount=float(amount) if active else 0.0,
                                             method=method if active else "")
        self.save()

    def set_notes(self, notes: str) -> None:
        self.notes = notes or ""
        self.save()

    # ---------- payment ----------
    def add_payment(self, payment: Payment) -> None:
        if not payment.method:
            raise ValidationError("Payment method is required.")
        if payment.amount <= 0:
            raise ValidationError("Payment amount must be > 0.")
        if payment.installments < 1:
            raise ValidationError("Installments must be >= 1.")
        self.payments.append(payment)
        self.save()

    def remove_payment(self, index: int) -> None:
        if not 0 <= index < len(self.payments):
            raise ValidationError(f"No payment at position {index}.")
        del self.payments[index]
        self.save()

    def set_discount(self, amount: float) -> None:
        self.discount = float(amount or 0.0)
        self._clamp_discount()
        self.save()

    # ---------- steps ----------
    def advance(self) -> Step:
        if self.step == Step.PRODUCTS and not self.items:
            raise ValidationError("Add at least one product.")
        if self.step == Step.CUSTOMER:
            if not self.customer:
                raise ValidationError("Select a customer.")
            if not self.delivery.term:
                raise ValidationError("Select the delivery term.")
        if self.step < Step.PAYMENT:
            self.step = Step(self.step + 1)
            self.save()
        return self.step

    def back(self) -> Step:
        if self.step > Step.PRODUCTS:
            self.step = Step(self.step - 1)
            self.save()
        return self.step
