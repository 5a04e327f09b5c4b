from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from typing import Optional

from pdvhub.domain.errors import InsufficientStockError, NotFoundError
from pdvhub.repositories.contracts import (
    PRODUCT,
    apply_stock_delta,
    matches,
    sort_records,
    stock_available,
)


class InMemoryEntityStore:
    """EntityClient kept in process memory. Records are copied in and out."""

    def __init__(self, seed: dict[str, list[dict]] | None = None):
        self._lock = threading.RLock()
        self._data: dict[str, dict[str, dict]] = defaultdict(dict)
        self._sequences: dict[str, int] = {}
        for entity, records in (seed or {}).items():
            for record in records:
                self.create(entity, record)

    def list(self, entity: str, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        with self._lock:
            records = [copy.deepcopy(r) for r in self._data[entity].values()]
        records = sort_records(records, order_by)
        return records[:limit] if limit else records

    def filter(self, entity: str, criteria: dict) -> list[dict]:
        return [r for r in self.list(entity) if matches(r, criteria)]

    def get(self, entity: str, record_id: str) -> Optional[dict]:
        with self._lock:
            record = self._data[entity].get(str(record_id))
            return copy.deepcopy(record) if record else None

    def create(self, entity: str, data: dict) -> dict:
        record = copy.deepcopy(data)
        record["id"] = str(record.get("id") or uuid.uuid4().hex)
        with self._lock:
            self._data[entity][record["id"]] = record
        return copy.deepcopy(record)

    def update(self, entity: str, record_id: str, data: dict) -> dict:
        with self._lock:
            record = self._data[entity].get(str(record_id))
            if record is None:
                raise NotFoundError(f"{entity} {record_id} not found.")
            record.update(copy.deepcopy(data))
            record["id"] = str(record_id)
            return copy.deepcopy(record)

    def delete(self, entity: str, record_id: str) -> None:
        with self._lock:
            if self._data[entity].pop(str(record_id), None) is None:
                raise NotFoundError(f"{entity} {record_id} not found.")

    def decrement_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        with self._lock:
            product = self._data[PRODUCT].get(str(product_id))
            if product is None:
                raise NotFoundError(f"Product {product_id} not found.")
            if not stock_available(product, int(qty), store_id):
                raise InsufficientStockError(
                    f"Not enough stock for {product.get('name', product_id)}. Available: {product.get('stock', 0)}"
                )
            product.update(apply_stock_delta(product, -int(qty), store_id))
            return copy.deepcopy(product)

    def increment_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        with self._lock:
            product = self._data[PRODUCT].get(str(product_id))
            if product is None:
                raise NotFoundError(f"Product {product_id} not found.")
            product.update(apply_stock_delta(product, int(qty), store_id))
            return copy.deepcopy(product)

    def next_sequence(self, name: str, floor: int = 0) -> int:
        with self._lock:
            value = max(self._sequences.get(name, 0), int(floor)) + 1
            self._sequences[name] = value
            return value
