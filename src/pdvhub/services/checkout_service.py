from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from pdvhub.domain.errors import AppError, NotFoundError, SagaError, ValidationError
from pdvhub.domain.models import (
    ASSEMBLY_INTERNAL,
    ASSEMBLY_OUTSOURCED,
    PICKUP_TERM,
    SALE_CANCELLED,
    SALE_PAID,
    SALE_PENDING,
    FinalizeResult,
    OfflineSaleEntry,
    SyncReport,
)
from pdvhub.repositories.contracts import (
    ASSEMBLY_ITEM,
    COUPON,
    CUSTOMER,
    DELIVERY,
    MANAGER_TOKEN,
    MANAGER_TOKEN_USAGE_LOG,
    PRODUCT,
    SALE,
)
from pdvhub.repositories.saga import Saga
from pdvhub.services.receipt_service import STORE_NAME, render_order_receipt, render_pdf_base64

log = logging.getLogger("pdvhub.sales")
sync_log = logging.getLogger("pdvhub.sync")

OFFLINE_QUEUE_KEY = "pending_sales_offline"
ORDER_SEQUENCE = "order_number"
SHORT_TERM = "15 dias"
SHORT_TERM_DAYS = 15
LONG_TERM_DAYS = 45

DELIVERY_PENDING = "Pendente"
DELIVERY_PICKED_UP = "Retirado"
ASSEMBLY_STATUS_PENDING = "Pendente"
ASSEMBLY_TYPES = {ASSEMBLY_INTERNAL: "internal", ASSEMBLY_OUTSOURCED: "outsourced"}


def next_order_number(existing: Iterable[Optional[str]]) -> str:
    """Next zero-padded order number, ignoring offline and malformed numbers."""
    highest = 0
    for raw in existing:
        text = str(raw or "").strip()
        if not text or text.upper().startswith("OFF") or text.upper().startswith("O-"):
            continue
        if not text.isdigit():
            continue
        highest = max(highest, int(text))
    return f"{highest + 1:05d}"


def delivery_deadline(term: str, start: date) -> Optional[date]:
    if not term or term == PICKUP_TERM:
        return None
    return start + timedelta(days=SHORT_TERM_DAYS if term == SHORT_TERM else LONG_TERM_DAYS)


class OfflineSaleQueue:
    """Sales finalized without connectivity, kept in local storage until replayed."""

    def __init__(self, storage):
        self.storage = storage

    def entries(self) -> list[OfflineSaleEntry]:
        raw = self.storage.get(OFFLINE_QUEUE_KEY) or []
        return [OfflineSaleEntry(r["offline_id"], r["timestamp"], r["payload"]) for r in raw]

    def append(self, payload: dict) -> OfflineSaleEntry:
        entry = OfflineSaleEntry(
            offline_id=uuid.uuid4().hex,
            timestamp=datetime.now().replace(microsecond=0).isoformat(),
            payload=payload,
        )
        self.storage.set(OFFLINE_QUEUE_KEY, [e.to_record() for e in self.entries()] + [entry.to_record()])
        return entry

    def remove(self, offline_id: str) -> None:
        left = [e.to_record() for e in self.entries() if e.offline_id != offline_id]
        if left:
            self.storage.set(OFFLINE_QUEUE_KEY, left)
        else:
            self.storage.remove(OFFLINE_QUEUE_KEY)

    def __len__(self) -> int:
        return len(self.storage.get(OFFLINE_QUEUE_KEY) or [])


def _seller_fields(seller) -> tuple[Optional[str], str]:
    if isinstance(seller, dict):
        return seller.get("id"), str(seller.get("name") or seller.get("full_name") or "")
    return None, str(seller or "")


class CheckoutService:
    """Finalizes PDV sessions into Sale records, with an offline fallback queue."""

    def __init__(
        self,
        client,
        storage,
        printer,
        finance=None,
        loyalty=None,
        notifier=None,
        logo=None,
        store_name: str = STORE_NAME,
        store_ids: Optional[dict[str, str]] = None,
        is_online: Callable[[], bool] = lambda: True,
        today=date.today,
        clock=time.time,
    ):
        self.client = client
        self.queue = OfflineSaleQueue(storage)
        self.printer = printer
        self.finance = finance
        self.loyalty = loyalty
        self.notifier = notifier
        self.logo = logo
        self.store_name = store_name
        self.store_ids = store_ids or {}
        self.is_online = is_online
        self._today = today
        self._clock = clock
        self._finalizing = threading.Lock()

    # ---------- finalize ----------
    def finalize(self, session, seller, confirm=None, online: Optional[bool] = None) -> Optional[FinalizeResult]:
        """
        Returns None when another finalize is already running.
        Raises ValidationError before any write and SagaError when the Sale
        or a stock decrement fails (compensations already ran).
        """
        if not self._finalizing.acquire(blocking=False):
            log.warning("finalize_rejected reason=already_running")
            return None
        try:
            return self._finalize(session, seller, confirm, self.is_online() if online is None else online)
        finally:
            self._finalizing.release()

    def _validate(self, session, confirm) -> bool:
        if not session.customer:
            raise ValidationError("Select a customer.")
        if not session.items:
            raise ValidationError("Cart is empty.")
        if not session.delivery.term:
            raise ValidationError("Select the delivery term.")
        if session.remaining > 0 and not session.pay_on_delivery.active:
            if confirm is None or not confirm(session.remaining):
                log.info("finalize_aborted remaining=%.2f", session.remaining)
                return False
        return True

    def _sale_payload(self, session, seller, number: str) -> dict:
        seller_id, seller_name = _seller_fields(seller)
        total = session.total
        remaining = session.remaining
        customer = session.customer or {}
        coupon = session.coupon or {}
        return {
            "number": number,
            "sale_date": self._today().isoformat(),
            "store": session.delivery.store,
            "store_id": self.store_ids.get(session.delivery.store),
            "seller_id": seller_id,
            "seller_name": seller_name,
            "customer_id": customer.get("id"),
            "customer_name": customer.get("name"),
            "customer_phone": customer.get("phone"),
            "items": [i.to_record() for i in session.items],
            "subtotal": session.subtotal,
            "discount": session.discount,
            "total": total,
            "payments": [p.to_record() for p in session.payments],
            "amount_paid": round(total - remaining, 2),
            "remaining": remaining,
            "pay_on_delivery": session.pay_on_delivery.active,
            "pay_on_delivery_amount": session.pay_on_delivery.amount,
            "pay_on_delivery_method": session.pay_on_delivery.method,
            "delivery_term": session.delivery.term,
            "delivery_date": session.delivery.date,
            "status": SALE_PAID if remaining <= 0 else SALE_PENDING,
            "notes": session.notes,
            "coupon_code": coupon.get("code"),
            "coupon_discount": session.discount if coupon else 0.0,
            "manager_token_id": (session.manager_token or {}).get("id"),
        }

    def _receipt(self, sale: dict, customer: Optional[dict]) -> str:
        logo_src = self.logo.load() if self.logo is not None else None
        return render_order_receipt(sale, customer, sale.get("seller_name"), logo_src, self.store_name)

    def _finalize(self, session, seller, confirm, online: bool) -> FinalizeResult:
        if not self._validate(session, confirm):
            return FinalizeResult(status="aborted")

        window = self.printer.open()
        if not online:
            return self._finalize_offline(session, seller, window)

        try:
            existing = [s.get("number") for s in self.client.list(SALE)]
            floor = int(next_order_number(existing)) - 1
            number = f"{self.client.next_sequence(ORDER_SEQUENCE, floor):05d}"
        except Exception:
            window.close()
            raise

        sale_data = {**self._sale_payload(session, seller, number), "stock_applied": True}
        store_id = sale_data["store_id"]
        try:
            with Saga(f"finalize:{number}") as saga:
                sale = saga.step(
                    "create_sale",
                    lambda: self.client.create(SALE, sale_data),
                    lambda created: self.client.delete(SALE, created["id"]),
                )
                for item in session.items:
                    if not item.product_id:
                        continue
                    saga.step(
                        f"decrement_stock:{item.product_id}",
                        lambda i=item: self.client.decrement_stock(i.product_id, i.quantity, store_id),
                        lambda _r, i=item: self.client.increment_stock(i.product_id, i.quantity, store_id),
                    )
        except SagaError:
            window.close()
            raise

        log.info("sale_created number=%s total=%.2f items=%s", number, sale["total"], len(sale["items"]))
        warnings: list[str] = []
        customer = session.customer

        self._best_effort("delivery", lambda: self._create_delivery(sale, customer), warnings)
        if session.coupon:
            self._best_effort("coupon_usage", lambda: self._use_coupon(session.coupon), warnings)
        if session.manager_token:
            self._best_effort(
                "manager_token_usage", lambda: self._use_manager_token(session.manager_token, sale), warnings
            )
        if self.finance is not None:
            self._best_effort("financial_entries", lambda: self.finance.create_sale_entries(sale), warnings)
        if self.loyalty is not None and customer and customer.get("id"):
            self._best_effort(
                "loyalty", lambda: self.loyalty.process_purchase(customer, sale["total"], number), warnings
            )

        receipt_html = self._receipt(sale, customer)
        if self.notifier is not None:
            self._best_effort(
                "notification", lambda: self.notifier.notify_sale(sale, render_pdf_base64(receipt_html)), warnings
            )
        if hasattr(self.client, "invalidate"):
            self.client.invalidate(SALE, PRODUCT, DELIVERY, CUSTOMER, COUPON, MANAGER_TOKEN)
        self._best_effort("print", lambda: window.fill(receipt_html, number), warnings)

        session.reset()
        return FinalizeResult(
            status="completed",
            number=number,
            sale_id=sale["id"],
            sale=sale,
            receipt_html=receipt_html,
            warnings=warnings,
        )

    def _finalize_offline(self, session, seller, window) -> FinalizeResult:
        number = "O-" + str(int(self._clock()))[-4:]
        sale = self._sale_payload(session, seller, number)
        entry = self.queue.append(sale)
        sync_log.warning("sale_saved_offline number=%s offline_id=%s", number, entry.offline_id)

        warnings = ["Sale saved offline; it will be sent when the connection is back."]
        receipt_html = self._receipt(sale, session.customer)
        self._best_effort("print", lambda: window.fill(receipt_html, number), warnings)
        session.reset()
        return FinalizeResult(status="offline", number=number, sale=sale, receipt_html=receipt_html, warnings=warnings)

    def _best_effort(self, label: str, action: Callable[[], object], warnings: list[str]) -> None:
        try:
            action()
        except Exception as e:
            log.warning("finalize_side_effect_failed step=%s error=%s", label, e)
            warnings.append(f"{label}: {e}")

    # ---------- side records ----------
    def _create_delivery(self, sale: dict, customer: Optional[dict]) -> None:
        customer = customer or {}
        base = {
            "sale_id": sale["id"],
            "order_number": sale["number"],
            "customer_id": sale.get("customer_id"),
            "customer_name": sale.get("customer_name"),
            "customer_phone": sale.get("customer_phone"),
            "store": sale.get("store"),
        }
        if sale.get("delivery_term") == PICKUP_TERM:
            self.client.create(
                DELIVERY,
                {**base, "status": DELIVERY_PICKED_UP, "delivered_at": self._today().isoformat(), "pickup": True},
            )
            return

        deadline = delivery_deadline(sale.get("delivery_term"), self._today())
        delivery = self.client.create(
            DELIVERY,
            {
                **base,
                "address": customer.get("address"),
                "number": customer.get("number"),
                "district": customer.get("district"),
                "city": customer.get("city"),
                "expected_date": deadline.isoformat() if deadline else None,
                "status": DELIVERY_PENDING,
                "pay_on_delivery": sale.get("pay_on_delivery", False),
                "amount_to_collect": sale.get("pay_on_delivery_amount") or 0.0,
                "collect_method": sale.get("pay_on_delivery_method"),
                "notes": sale.get("notes"),
            },
        )
        for item in sale.get("items") or []:
            kind = ASSEMBLY_TYPES.get(item.get("assembly"))
            if kind is None:
                continue
            self.client.create(
                ASSEMBLY_ITEM,
                {
                    "sale_id": sale["id"],
                    "delivery_id": delivery["id"],
                    "order_number": sale["number"],
                    "product_id": item.get("product_id"),
                    "product_name": item.get("product_name"),
                    "quantity": item.get("quantity"),
                    "assembly_type": kind,
                    "status": ASSEMBLY_STATUS_PENDING,
                },
            )

    def _use_coupon(self, coupon: dict) -> None:
        current = self.client.get(COUPON, coupon["id"]) or coupon
        self.client.update(COUPON, coupon["id"], {"quantity_used": int(current.get("quantity_used") or 0) + 1})

    def _use_manager_token(self, token: dict, sale: dict) -> None:
        current = self.client.get(MANAGER_TOKEN, token["id"]) or token
        self.client.update(MANAGER_TOKEN, token["id"], {"uses": int(current.get("uses") or 0) + 1})
        self.client.create(
            MANAGER_TOKEN_USAGE_LOG,
            {
                "token_id": token["id"],
                "sale_id": sale["id"],
                "order_number": sale["number"],
                "discount": sale.get("discount"),
                "seller_name": sale.get("seller_name"),
                "used_at": datetime.now().replace(microsecond=0).isoformat(),
            },
        )

    # ---------- offline replay ----------
    def pending(self) -> list[OfflineSaleEntry]:
        return self.queue.entries()

    def sync_offline(self, confirm=None) -> SyncReport:
        """Replays queued sales through Sale create only; side records are not recreated."""
        entries = self.queue.entries()
        report = SyncReport()
        if not entries:
            return report
        if confirm is not None and not confirm(len(entries)):
            sync_log.info("offline_sync_declined pending=%s", len(entries))
            return report

        for entry in entries:
            payload = {
                **entry.payload,
                "offline_id": entry.offline_id,
                "offline_at": entry.timestamp,
                "stock_applied": False,
            }
            try:
                sale = self.client.create(SALE, payload)
            except AppError as e:
                report.failed += 1
                report.errors.append(f"{entry.payload.get('number')}: {e}")
                sync_log.error("offline_sync_failed offline_id=%s error=%s", entry.offline_id, e)
                continue
            self.queue.remove(entry.offline_id)
            report.synced += 1
            sync_log.info("offline_sale_synced offline_id=%s number=%s", entry.offline_id, sale.get("number"))
            if self.notifier is not None:
                self.notifier.notify_sale(sale)

        if report.synced and hasattr(self.client, "invalidate"):
            self.client.invalidate(SALE)
        return report

    # ---------- cancellation ----------
    def cancel_sale(self, sale_id: str) -> dict:
        sale = self.client.get(SALE, sale_id)
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found.")
        if sale.get("status") == SALE_CANCELLED:
            raise ValidationError("Sale is already cancelled.")

        updated = self.client.update(SALE, sale_id, {"status": SALE_CANCELLED})
        cancelled_entries = self.finance.cancel_sale_entries(sale_id) if self.finance is not None else 0
        # replayed offline sales never took stock
        restock = (sale.get("items") or []) if sale.get("stock_applied", True) else []
        for item in restock:
            if item.get("product_id"):
                self.client.increment_stock(item["product_id"], int(item.get("quantity") or 0), sale.get("store_id"))

        if hasattr(self.client, "invalidate"):
            self.client.invalidate(SALE, PRODUCT)
        log.info(
            "sale_cancelled number=%s entries=%s restocked_lines=%s", sale.get("number"), cancelled_entries, len(restock)
        )
        return updated
