import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def seed_catalog(client, stock: int = 10) -> dict[str, dict]:
    """Two products and one customer, keyed by a short name."""
    from pdvhub.repositories.contracts import CUSTOMER, PRODUCT

    sofa = client.create(
        PRODUCT,
        {"name": "Sofá Retrátil", "barcode": "7891000000011", "sale_price": 1000.0, "cost_price": 500.0,
         "stock": stock, "min_stock": 2, "active": True},
    )
    rack = client.create(
        PRODUCT,
        {"name": "Rack Home", "barcode": "7891000000028", "sale_price": 250.0, "cost_price": 120.0,
         "stock": stock, "min_stock": 2, "active": True, "default_delivery": "client_assembly"},
    )
    customer = client.create(
        CUSTOMER,
        {"name": "Maria Souza", "phone": "21999998888", "document": "12345678901", "points": 0,
         "address": "Rua A", "number": "10", "district": "Centro", "city": "Rio", "state": "RJ"},
    )
    return {"sofa": sofa, "rack": rack, "customer": customer}
