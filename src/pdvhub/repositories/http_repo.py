from __future__ import annotations

import copy
import logging
from typing import Optional

import requests

from pdvhub.domain.errors import BackendError, InsufficientStockError, NotFoundError, extract_error_message
from pdvhub.repositories.contracts import PRODUCT

log = logging.getLogger("pdvhub.http")


def _json_or_text(resp: requests.Response) -> object:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class FunctionsClient:
    """POSTs JSON to serverless functions under one base URL."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post_json(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise BackendError(f"Request to {path} failed: {e}") from e
        body = _json_or_text(r)
        if not r.ok:
            raise BackendError(extract_error_message(body, f"HTTP {r.status_code} from {path}"), r.status_code)
        return body if isinstance(body, dict) else {"data": body}


class RestEntityClient:
    """EntityClient over the backend's REST surface: <base>/rest/<Entity>[/<id>]."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, params: dict | None = None, payload: dict | None = None) -> object:
        url = f"{self.base_url}/{path}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            r = self.session.request(method, url, params=params, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            log.warning("backend_unreachable method=%s path=%s error=%s", method, path, e)
            raise BackendError(f"Backend unreachable: {e}") from e

        body = _json_or_text(r)
        if r.status_code == 404:
            raise NotFoundError(extract_error_message(body, f"{path} not found."))
        if r.status_code == 409 and path.startswith("rpc/"):
            raise InsufficientStockError(extract_error_message(body, "Not enough stock."))
        if not r.ok:
            raise BackendError(extract_error_message(body, f"HTTP {r.status_code} on {method} {path}"), r.status_code)
        return body

    def list(self, entity: str, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        params = {}
        if order_by:
            params["order_by"] = order_by
        if limit:
            params["limit"] = int(limit)
        return list(self._request("GET", f"rest/{entity}", params=params) or [])

    def filter(self, entity: str, criteria: dict) -> list[dict]:
        return list(self._request("POST", f"rest/{entity}/filter", payload=dict(criteria)) or [])

    def get(self, entity: str, record_id: str) -> Optional[dict]:
        try:
            return self._request("GET", f"rest/{entity}/{record_id}")
        except NotFoundError:
            return None

    def create(self, entity: str, data: dict) -> dict:
        return self._request("POST", f"rest/{entity}", payload=data)

    def update(self, entity: str, record_id: str, data: dict) -> dict:
        return self._request("PATCH", f"rest/{entity}/{record_id}", payload=data)

    def delete(self, entity: str, record_id: str) -> None:
        self._request("DELETE", f"rest/{entity}/{record_id}")

    def decrement_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        return self._request(
            "POST", "rpc/decrement_stock", payload={"product_id": product_id, "qty": int(qty), "store_id": store_id}
        )

    def increment_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        return self._request(
            "POST", "rpc/increment_stock", payload={"product_id": product_id, "qty": int(qty), "store_id": store_id}
        )

    def next_sequence(self, name: str, floor: int = 0) -> int:
        body = self._request("POST", "rpc/next_sequence", payload={"name": name, "floor": int(floor)})
        return int(body["value"] if isinstance(body, dict) else body)


class ReadCache:
    """Read-through cache of list() results; writes pass to the client and drop the entity's cached lists."""

    def __init__(self, client):
        self.client = client
        self._lists: dict[tuple, list[dict]] = {}

    def list(self, entity: str, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        key = (entity, order_by, limit)
        if key not in self._lists:
            self._lists[key] = self.client.list(entity, order_by=order_by, limit=limit)
        return copy.deepcopy(self._lists[key])

    def filter(self, entity: str, criteria: dict) -> list[dict]:
        return self.client.filter(entity, criteria)

    def get(self, entity: str, record_id: str) -> Optional[dict]:
        return self.client.get(entity, record_id)

    def create(self, entity: str, data: dict) -> dict:
        try:
            return self.client.create(entity, data)
        finally:
            self.invalidate(entity)

    def update(self, entity: str, record_id: str, data: dict) -> dict:
        try:
            return self.client.update(entity, record_id, data)
        finally:
            self.invalidate(entity)

    def delete(self, entity: str, record_id: str) -> None:
        try:
            self.client.delete(entity, record_id)
        finally:
            self.invalidate(entity)

    def decrement_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        try:
            return self.client.decrement_stock(product_id, qty, store_id)
        finally:
            self.invalidate(PRODUCT)

    def increment_stock(self, product_id: str, qty: int, store_id: Optional[str] = None) -> dict:
        try:
            return self.client.increment_stock(product_id, qty, store_id)
        finally:
            self.invalidate(PRODUCT)

    def invalidate(self, *entities: str) -> None:
        if not entities:
            self._lists.clear()
            return
        for key in [k for k in self._lists if k[0] in entities]:
            del self._lists[key]

    def __getattr__(self, name: str):
        return getattr(self.client, name)
