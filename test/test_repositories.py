from pathlib import Path

import pytest
import requests

from pdvhub.domain.errors import BackendError, InsufficientStockError, NotFoundError, SagaError, ValidationError
from pdvhub.repositories.contracts import PRODUCT, SALE
from pdvhub.repositories.http_repo import FunctionsClient, ReadCache, RestEntityClient
from pdvhub.repositories.local_storage import LocalStorage
from pdvhub.repositories.memory_repo import InMemoryEntityStore
from pdvhub.repositories.saga import Saga
from pdvhub.repositories.sqlite_repo import SqliteEntityStore
from pdvhub.services.payment_service import InvoiceEmissionClient, PaymentLinkClient


def _sqlite(tmp_path: Path, name: str = "pdv.db") -> SqliteEntityStore:
    store = SqliteEntityStore(tmp_path / name)
    store.init_db()
    return store


def _versions(store: SqliteEntityStore) -> list[int]:
    conn = store._conn()
    try:
        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_migrations ORDER BY version")
        return [int(r[0]) for r in cur.fetchall()]
    finally:
        conn.close()


def test_migrations_are_recorded_and_idempotent(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.init_db()

    assert _versions(store) == [1, 2, 3]
    assert store.integrity_check() == "ok"


def test_migration_failure_restores_db(tmp_path: Path):
    class BrokenMigrationStore(SqliteEntityStore):
        def _migration_v3_timestamps(self, cur):
            raise RuntimeError("forced migration failure")

    store = _sqlite(tmp_path, "broken.db")
    store.create(PRODUCT, {"id": "p1", "name": "Sofá"})
    conn = store._conn()
    conn.execute("DELETE FROM schema_migrations WHERE version = 3")
    conn.close()

    with pytest.raises(RuntimeError, match="restored"):
        BrokenMigrationStore(tmp_path / "broken.db").run_migrations()

    assert _versions(store) == [1, 2]
    assert store.get(PRODUCT, "p1")["name"] == "Sofá"


def test_sqlite_crud_roundtrip_and_ordering(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.create(SALE, {"number": "00002", "total": 50.0})
    first = store.create(SALE, {"number": "00001", "total": 80.0})

    assert [s["number"] for s in store.list(SALE)] == ["00002", "00001"]
    assert [s["number"] for s in store.list(SALE, order_by="number")] == ["00001", "00002"]
    assert [s["number"] for s in store.list(SALE, order_by="-total", limit=1)] == ["00001"]
    assert store.filter(SALE, {"total": 50.0})[0]["number"] == "00002"

    updated = store.update(SALE, first["id"], {"status": "Pago"})
    assert updated["status"] == "Pago" and updated["number"] == "00001"

    store.delete(SALE, first["id"])
    assert store.get(SALE, first["id"]) is None
    with pytest.raises(NotFoundError):
        store.delete(SALE, first["id"])
    with pytest.raises(NotFoundError):
        store.update(SALE, "missing", {"status": "x"})


def test_sqlite_stock_changes_are_checked_and_logged(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.create(PRODUCT, {"id": "p1", "name": "Sofá", "stock": 3, "stock_by_store": {"s1": 3}})

    store.decrement_stock("p1", 2, "s1")
    with pytest.raises(InsufficientStockError, match="Available: 1"):
        store.decrement_stock("p1", 2, "s1")
    store.increment_stock("p1", 4)

    product = store.get(PRODUCT, "p1")
    assert product["stock"] == 5
    assert product["stock_by_store"] == {"s1": 1}
    assert [(m[1], m[2], m[3]) for m in store.stock_movements("p1")] == [("s1", -2, 1), (None, 4, 5)]

    with pytest.raises(NotFoundError):
        store.decrement_stock("nope", 1)


def test_sequences_respect_floor(tmp_path: Path):
    for client in (_sqlite(tmp_path), InMemoryEntityStore()):
        assert client.next_sequence("order_number") == 1
        assert client.next_sequence("order_number", floor=41) == 42
        assert client.next_sequence("order_number") == 43
        assert client.next_sequence("order_number", floor=10) == 44


def test_sqlite_failures_surface_as_backend_errors(tmp_path: Path):
    unmigrated = SqliteEntityStore(tmp_path / "unmigrated.db")

    with pytest.raises(BackendError, match="Local database error"):
        unmigrated.list(SALE)
    with pytest.raises(BackendError, match="Local database error"):
        unmigrated.create(SALE, {"number": "00001"})
    with pytest.raises(BackendError, match="Local database error"):
        unmigrated.next_sequence("order_number")


def test_sqlite_failed_stock_change_rolls_back(tmp_path: Path):
    store = _sqlite(tmp_path)
    store.create(PRODUCT, {"id": "p1", "name": "Sofá", "stock": 2})
    conn = store._conn()
    conn.execute("DROP TABLE stock_ledger")
    conn.close()

    with pytest.raises(BackendError, match="stock_ledger"):
        store.decrement_stock("p1", 1)

    assert store.get(PRODUCT, "p1")["stock"] == 2


def test_memory_store_copies_records_in_and_out():
    data = {"name": "Mesa", "tags": ["a"]}
    store = InMemoryEntityStore()
    created = store.create(PRODUCT, data)
    created["tags"].append("b")
    data["tags"].append("c")

    assert store.get(PRODUCT, created["id"])["tags"] == ["a"]
    assert InMemoryEntityStore({PRODUCT: [{"id": "fixed"}]}).get(PRODUCT, "fixed") == {"id": "fixed"}


def test_store_level_stock_needs_the_store_quantity():
    store = InMemoryEntityStore({PRODUCT: [{"id": "p1", "stock": 5, "stock_by_store": {"s1": 1, "s2": 4}}]})

    with pytest.raises(InsufficientStockError):
        store.decrement_stock("p1", 2, "s1")
    assert store.decrement_stock("p1", 2, "s2")["stock_by_store"] == {"s1": 1, "s2": 2}


def test_saga_compensates_newest_first_and_collects_failures():
    calls = []

    def fail():
        raise ValueError("boom")

    def broken_undo(_result):
        calls.append("undo-b")
        raise RuntimeError("undo failed")

    with pytest.raises(SagaError) as exc:
        with Saga("demo") as saga:
            saga.step("a", lambda: calls.append("a") or 1, lambda r: calls.append(f"undo-a:{r}"))
            saga.step("b", lambda: calls.append("b") or 2, broken_undo)
            saga.step("c", fail)

    assert calls == ["a", "b", "undo-b", "undo-a:1"]
    assert exc.value.step == "c"
    assert isinstance(exc.value.cause, ValueError)
    assert exc.value.compensation_errors == ["b: undo failed"]


def test_local_storage_persists_between_instances(tmp_path: Path):
    path = tmp_path / "nested" / "storage.json"
    storage = LocalStorage(path)
    storage.set("pdv_state", {"items": [1, 2]})
    storage.set("flag", "production")
    storage.remove("flag")

    reopened = LocalStorage(path)
    assert reopened.get("pdv_state") == {"items": [1, 2]}
    assert reopened.get("flag", "staging") == "staging"
    assert LocalStorage().get("anything") is None


class CountingClient(InMemoryEntityStore):
    def __init__(self):
        super().__init__()
        self.list_calls = 0

    def list(self, entity, order_by=None, limit=None):
        self.list_calls += 1
        return super().list(entity, order_by=order_by, limit=limit)


def test_read_cache_serves_lists_until_invalidated():
    inner = CountingClient()
    cache = ReadCache(inner)
    inner.create(PRODUCT, {"name": "Mesa"})

    cache.list(PRODUCT)
    cache.list(PRODUCT)
    assert inner.list_calls == 1

    inner.create(PRODUCT, {"name": "Cadeira"})
    assert len(cache.list(PRODUCT)) == 1
    cache.invalidate(SALE)
    assert len(cache.list(PRODUCT)) == 1
    cache.invalidate(PRODUCT)
    assert len(cache.list(PRODUCT)) == 2
    assert inner.list_calls == 2


def test_read_cache_drops_entity_lists_on_writes():
    inner = CountingClient()
    cache = ReadCache(inner)
    product = cache.create(PRODUCT, {"name": "Mesa", "stock": 3})
    sale = cache.create(SALE, {"number": "00001"})
    cache.list(PRODUCT)
    cache.list(SALE)

    cache.update(PRODUCT, product["id"], {"stock": 2})
    assert cache.list(PRODUCT)[0]["stock"] == 2
    assert inner.list_calls == 3

    cache.decrement_stock(product["id"], 1)
    assert cache.list(PRODUCT)[0]["stock"] == 1
    cache.increment_stock(product["id"], 4)
    assert cache.list(PRODUCT)[0]["stock"] == 5

    cache.delete(SALE, sale["id"])
    assert cache.list(SALE) == []
    assert inner.list_calls == 6


def test_read_cache_failed_write_still_invalidates():
    inner = CountingClient()
    cache = ReadCache(inner)
    product = cache.create(PRODUCT, {"name": "Mesa", "stock": 1})
    cache.list(PRODUCT)

    with pytest.raises(InsufficientStockError):
        cache.decrement_stock(product["id"], 5)
    cache.list(PRODUCT)
    assert inner.list_calls == 2


def test_read_cache_hands_out_independent_nested_copies():
    inner = InMemoryEntityStore({SALE: [{"id": "s1", "items": [{"product_id": "p1", "quantity": 1}]}]})
    cache = ReadCache(inner)

    first = cache.list(SALE)
    first[0]["items"][0]["quantity"] = 99
    first[0]["items"].append({"product_id": "p2"})

    assert cache.list(SALE)[0]["items"] == [{"product_id": "p1", "quantity": 1}]


class FakeResponse:
    def __init__(self, status_code: int, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append((method, url, params, json, headers))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def post(self, url, json=None, headers=None, timeout=None):
        return self.request("POST", url, json=json, headers=headers, timeout=timeout)


def test_rest_client_maps_paths_and_headers():
    session = FakeSession(FakeResponse(200, [{"id": "1"}]), FakeResponse(200, {"value": 12}))
    client = RestEntityClient("https://api.example/", api_key="k1", session=session)

    assert client.list(SALE, order_by="-sale_date", limit=5) == [{"id": "1"}]
    assert client.next_sequence("order_number", floor=11) == 12

    method, url, params, _, headers = session.calls[0]
    assert (method, url, params) == ("GET", "https://api.example/rest/Sale", {"order_by": "-sale_date", "limit": 5})
    assert headers["Authorization"] == "Bearer k1"
    assert session.calls[1][3] == {"name": "order_number", "floor": 11}


def test_rest_client_translates_error_statuses():
    session = FakeSession(
        FakeResponse(404, {"message": "missing"}),
        FakeResponse(409, {"error": {"message": "Estoque insuficiente"}}),
        FakeResponse(500, "upstream exploded"),
        requests.ConnectionError("no route"),
    )
    client = RestEntityClient("https://api.example", session=session)

    assert client.get(SALE, "x") is None
    with pytest.raises(InsufficientStockError, match="Estoque insuficiente"):
        client.decrement_stock("p1", 1)
    with pytest.raises(BackendError) as exc:
        client.create(SALE, {})
    assert exc.value.status_code == 500
    with pytest.raises(BackendError, match="unreachable"):
        client.list(SALE)


def test_functions_client_raises_backend_message():
    session = FakeSession(FakeResponse(422, {"error": {"message": "valor inválido"}}), FakeResponse(200, ["ok"]))
    client = FunctionsClient("https://fn.example", session=session)

    with pytest.raises(BackendError, match="valor inválido"):
        client._post_json("payment-link", {})
    assert client._post_json("/payment-link", {}) == {"data": ["ok"]}
    assert session.calls[1][1] == "https://fn.example/payment-link"


def test_payment_link_client_sends_gateway_payload_and_reads_link(monkeypatch):
    client = PaymentLinkClient("https://fn.example")
    sent = []

    def fake_post(path, payload):
        sent.append((path, payload))
        return {"payment_url": "https://pay.example/abc", "qr_code": "data:image/png;base64,AAA", "id": "lnk-1",
                "provider_id": "st-9"}

    monkeypatch.setattr(client, "_post_json", fake_post)
    customer = {"name": "Maria", "email": "maria@example.com", "document": "12345678901"}
    payment = client.create(1234.5, customer, description="Pedido #00008")

    assert (payment.amount, payment.installments, payment.status) == (1234.5, 12, "AGUARDANDO")
    assert (payment.link_url, payment.link_id, payment.provider_id) == ("https://pay.example/abc", "lnk-1", "st-9")
    assert payment.qr_code_url == "data:image/png;base64,AAA"
    path, payload = sent[0]
    assert path == "payment-link"
    assert payload == {
        "amount": 1234.5,
        "description": "Pedido #00008",
        "customer_name": "Maria",
        "customer_email": "maria@example.com",
        "customer_document": "12345678901",
        "payment_methods": ["pix", "credit_card", "boleto"],
        "max_installments": 12,
        "expires_in_days": 7,
    }

    client.create(10, None, installments=3, expires_in_days=2)
    assert (sent[1][1]["customer_name"], sent[1][1]["max_installments"], sent[1][1]["expires_in_days"]) == (
        "Cliente", 3, 2
    )


def test_payment_link_client_errors(monkeypatch):
    client = PaymentLinkClient("https://fn.example")

    with pytest.raises(ValidationError):
        client.create(0, None)
    monkeypatch.setattr(client, "_post_json", lambda path, payload: {"error": "Stone API error", "details": "401"})
    with pytest.raises(BackendError, match="Stone API error: 401"):
        client.create(10, None)
    monkeypatch.setattr(client, "_post_json", lambda path, payload: {"url": "https://pay.example/abc"})
    with pytest.raises(BackendError, match="not returned"):
        client.create(10, None)


def test_invoice_emission_records_reference_on_sale(monkeypatch):
    store = InMemoryEntityStore({SALE: [{"id": "s1", "number": "00001"}]})
    client = InvoiceEmissionClient("https://fn.example", store, environment="production")
    sent = []
    monkeypatch.setattr(
        client, "_post_json", lambda path, payload: sent.append(payload) or {"success": True, "ref": "NF-9"}
    )

    sale = client.emit("s1")

    assert sent == [{"sale_id": "s1", "environment": "production"}]
    assert (sale["invoice_ref"], sale["invoice_status"]) == ("NF-9", "processando_autorizacao")

    monkeypatch.setattr(client, "_post_json", lambda path, payload: {"error": "CNPJ sem certificado"})
    with pytest.raises(BackendError, match="certificado"):
        client.emit("s1")


def test_invoice_emission_refused_leaves_sale_untouched(monkeypatch):
    store = InMemoryEntityStore({SALE: [{"id": "s1", "number": "00001"}]})
    client = InvoiceEmissionClient("https://fn.example", store)
    monkeypatch.setattr(
        client, "_post_json", lambda path, payload: {"success": False, "ref": "NF-9", "error": "Venda sem itens"}
    )

    with pytest.raises(BackendError, match="Venda sem itens"):
        client.emit("s1")
    assert "invoice_ref" not in store.get(SALE, "s1")
