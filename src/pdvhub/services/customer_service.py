from __future__ import annotations

from typing import Optional

from pdvhub.domain.errors import ValidationError
from pdvhub.repositories.contracts import CUSTOMER
from pdvhub.services.catalog import digits, fold


class CustomerService:
    def __init__(self, client):
        self.client = client

    def search_customers(self, query: str, limit: int = 20) -> list[dict]:
        """Case and accent insensitive match on name; digit match on document and phone."""
        text = fold(query)
        nums = digits(query)
        if not text:
            return []
        out = []
        for c in self.client.list(CUSTOMER):
            if text in fold(c.get("name")):
                out.append(c)
            elif len(nums) >= 3 and (nums in digits(c.get("document")) or nums in digits(c.get("phone"))):
                out.append(c)
            if len(out) >= limit:
                break
        return out

    def quick_add_customer(self, name: str, phone: str, document: Optional[str] = None) -> dict:
        name = (name or "").strip()
        phone_digits = digits(phone)
        if not name:
            raise ValidationError("Customer name is required.")
        if len(phone_digits) < 10:
            raise ValidationError("Phone must have area code and number.")
        if document:
            doc = digits(document)
            if len(doc) not in (11, 14):
                raise ValidationError("Document must be a CPF (11 digits) or CNPJ (14 digits).")
            if self.client.filter(CUSTOMER, {"document": doc}):
                raise ValidationError("A customer with this document already exists.")
        else:
            doc = None
        return self.client.create(
            CUSTOMER, {"name": name, "phone": phone_digits, "document": doc, "points": 0, "tier_id": None}
        )
