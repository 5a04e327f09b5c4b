from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from pdvhub.domain.errors import NotFoundError, ValidationError
from pdvhub.repositories.contracts import COUPON, MANAGER_TOKEN

log = logging.getLogger("pdvhub.sales")

COUPON_PERCENT = "percent"
COUPON_FIXED = "fixed"
DEFAULT_TOKEN_MAX_PERCENT = 30.0


def _expired(valid_until: Optional[str], today: date) -> bool:
    if not valid_until:
        return False
    try:
        limit = datetime.fromisoformat(str(valid_until)).date()
    except ValueError:
        return False
    return limit < today


def coupon_discount(coupon: dict, subtotal: float) -> float:
    value = float(coupon.get("value") or 0.0)
    if coupon.get("kind") == COUPON_PERCENT:
        amount = subtotal * value / 100.0
    else:
        amount = value
    return round(min(max(amount, 0.0), subtotal), 2)


class DiscountService:
    def __init__(self, client, today=date.today):
        self.client = client
        self._today = today

    def _fresh(self, entity: str, record: dict) -> dict:
        # usage counters must come from the store, not from a cached listing
        return (self.client.get(entity, record["id"]) if record.get("id") else None) or record

    def apply_coupon(self, session, code: str) -> float:
        """Validates the coupon and sets the session discount. Returns the discount."""
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("Coupon code is required.")
        coupon = next((c for c in self.client.list(COUPON) if str(c.get("code") or "").upper() == code), None)
        if coupon is None:
            raise NotFoundError("Coupon not found.")
        coupon = self._fresh(COUPON, coupon)
        if not coupon.get("active"):
            raise ValidationError("Coupon is inactive.")
        if _expired(coupon.get("valid_until"), self._today()):
            raise ValidationError("Coupon expired.")
        limit = coupon.get("quantity_available")
        if limit and int(coupon.get("quantity_used") or 0) >= int(limit):
            raise ValidationError("Coupon exhausted.")

        session.coupon = coupon
        session.manager_token = None
        session.set_discount(coupon_discount(coupon, session.subtotal))
        log.info("coupon_applied code=%s discount=%.2f", code, session.discount)
        return session.discount

    def remove_coupon(self, session) -> None:
        session.coupon = None
        session.set_discount(0.0)

    def authorize_manager_token(self, session, code: str) -> dict:
        code = (code or "").strip().upper()
        if not code:
            raise ValidationError("Token code is required.")
        token = next(
            (t for t in self.client.list(MANAGER_TOKEN) if str(t.get("code") or "").upper() == code), None
        )
        if token is None:
            raise NotFoundError("Token not found.")
        token = self._fresh(MANAGER_TOKEN, token)
        if not token.get("active"):
            raise ValidationError("Token revoked.")
        if _expired(token.get("valid_until"), self._today()):
            raise ValidationError("Token expired.")
        max_uses = token.get("max_uses")
        if max_uses and int(token.get("uses") or 0) >= int(max_uses):
            raise ValidationError("Token already used the maximum number of times.")

        session.manager_token = token
        session.save()
        log.info("manager_token_authorized token_id=%s", token.get("id"))
        return token

    def apply_manager_discount(self, session, percent: float) -> float:
        token = session.manager_token
        if not token:
            raise ValidationError("Authorize a manager token first.")
        max_percent = float(token.get("max_discount_percent") or DEFAULT_TOKEN_MAX_PERCENT)
        percent = float(percent)
        if percent < 0 or percent > max_percent:
            raise ValidationError(f"Discount must be between 0 and {max_percent:g}%.")
        session.set_discount(session.subtotal * percent / 100.0)
        return session.discount

    def remove_manager_token(self, session) -> None:
        session.manager_token = None
        session.set_discount(0.0)
