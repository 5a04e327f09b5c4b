from __future__ import annotations

import logging
from typing import Optional

import requests

from pdvhub.services.receipt_service import clean_product_name

log = logging.getLogger("pdvhub.sync")


def items_summary(items) -> str:
    return "\n".join(f"• {i['quantity']}x {clean_product_name(i.get('product_name'))}" for i in items)


class NotificationService:
    """Fire-and-forget post-sale message through the messaging robot."""

    def __init__(self, webhook_url: str, timeout: float = 10.0):
        self.webhook_url = (webhook_url or "").rstrip("/")
        self.timeout = timeout

    def _post_json(self, url: str, payload: dict) -> None:
        r = requests.post(url, json=payload, timeout=self.timeout)
        r.raise_for_status()

    def notify_sale(self, sale: dict, pdf_base64: Optional[str] = None) -> bool:
        """Returns False when skipped or failed; never raises."""
        phone = sale.get("customer_phone")
        if not self.webhook_url or not phone:
            return False
        payload = {
            "phone": phone,
            "name": sale.get("customer_name"),
            "order_number": sale.get("number"),
            "delivery_term": sale.get("delivery_term"),
            "items": items_summary(sale.get("items") or []),
            "pdf_base64": pdf_base64,
        }
        try:
            self._post_json(f"{self.webhook_url}/mensagem-pos-venda", payload)
        except requests.RequestException as e:
            log.warning("sale_notification_failed number=%s error=%s", sale.get("number"), e)
            return False
        log.info("sale_notification_sent number=%s with_pdf=%s", sale.get("number"), bool(pdf_base64))
        return True
