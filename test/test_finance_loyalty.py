import pytest

from pdvhub.repositories.contracts import CUSTOMER, FEE_RULE, FINANCIAL_ENTRY, LOYALTY_CONFIG, LOYALTY_TIER
from pdvhub.repositories.memory_repo import InMemoryEntityStore
from pdvhub.services.finance_service import FinanceService, fee_amount, match_fee_rule
from pdvhub.services.loyalty_service import LoyaltyService

RULES = [
    {"method": "Crédito Parcelado", "kind": "percent", "value": 4},
    {"method": "Crédito", "kind": "percent", "value": 2.5},
    {"method": "Débito", "kind": "fixed", "value": 1.5},
]


@pytest.mark.parametrize(
    "method,installments,expected",
    [
        ("Crédito", 3, "Crédito Parcelado"),
        ("Crédito", 1, "Crédito"),
        ("Crédito 1x", 1, "Crédito"),
        ("Débito", 1, "Débito"),
        ("Pix", 1, None),
    ],
)
def test_match_fee_rule(method, installments, expected):
    rule = match_fee_rule(RULES, method, installments)
    assert (rule or {}).get("method") == expected


def test_fee_amount_percent_fixed_and_zero():
    assert fee_amount(RULES[1], 1000.0) == 25.0
    assert fee_amount(RULES[2], 1000.0) == 1.5
    assert fee_amount({"kind": "percent", "value": 0}, 1000.0) == 0.0


def _sale(**overrides) -> dict:
    sale = {
        "id": "s1",
        "number": "00010",
        "customer_name": "Maria",
        "total": 900.0,
        "discount": 100.0,
        "status": "Pago",
        "coupon_code": "DEZ",
        "payments": [
            {"method": "Crédito", "amount": 600.0, "installments": 3},
            {"method": "Pix", "amount": 300.0, "installments": 1},
        ],
    }
    sale.update(overrides)
    return sale


def test_sale_entries_revenue_discount_and_card_fee():
    client = InMemoryEntityStore({FEE_RULE: RULES})

    created = FinanceService(client).create_sale_entries(_sale())

    revenue, discount, fee = created
    assert (revenue["type"], revenue["amount"], revenue["status"]) == ("revenue", 1000.0, "Pago")
    assert revenue["payment_method"] == "Crédito"
    assert (discount["amount"], discount["category"]) == (-100.0, "Descontos Concedidos")
    assert "Cupom: DEZ" in discount["description"]
    assert (fee["amount"], fee["category"]) == (-24.0, "Taxas de Cartão")
    assert len(client.list(FINANCIAL_ENTRY)) == 3


def test_pending_sale_without_discount_gets_only_pending_revenue():
    client = InMemoryEntityStore()

    created = FinanceService(client).create_sale_entries(_sale(discount=0, status="Pagamento Pendente", payments=[]))

    assert len(created) == 1
    assert (created[0]["paid"], created[0]["status"], created[0]["payment_method"]) == (False, "Pendente", "Diversos")


def test_cancel_sale_entries_marks_every_entry():
    client = InMemoryEntityStore({FEE_RULE: RULES})
    service = FinanceService(client)
    service.create_sale_entries(_sale())
    service.create_sale_entries(_sale(id="s2", number="00011"))

    assert service.cancel_sale_entries("s1") == 3
    statuses = {(e["sale_id"], e["status"]) for e in client.list(FINANCIAL_ENTRY)}
    assert ("s1", "Cancelado") in statuses
    assert all(status != "Cancelado" for sale_id, status in statuses if sale_id == "s2")


def test_loyalty_needs_active_config_and_customer_id():
    client = InMemoryEntityStore({CUSTOMER: [{"id": "c1", "points": 0}]})
    service = LoyaltyService(client)

    assert service.process_purchase({"id": "c1"}, 500.0, "00001").success is False
    assert service.process_purchase({}, 500.0, "00001").success is False


def test_loyalty_applies_tier_multiplier_and_promotes():
    client = InMemoryEntityStore(
        {
            LOYALTY_CONFIG: [{"active": True, "purchase_threshold": 100, "points_per_unit": 1}],
            LOYALTY_TIER: [
                {"id": "gold", "active": True, "name": "Ouro", "min_points": 20, "multiplier": 2},
                {"id": "silver", "active": True, "name": "Prata", "min_points": 5, "multiplier": 1.5},
            ],
            CUSTOMER: [{"id": "c1", "points": 4, "tier_id": "silver"}],
        }
    )
    service = LoyaltyService(client)

    result = service.process_purchase(client.get(CUSTOMER, "c1"), 1050.0, "00001")

    assert (result.points_earned, result.new_balance, result.multiplier) == (15, 19, 1.5)
    assert result.tier == "Prata"

    result = service.process_purchase(client.get(CUSTOMER, "c1"), 250.0, "00002")
    assert (result.points_earned, result.new_balance, result.tier) == (3, 22, "Ouro")
    assert client.get(CUSTOMER, "c1")["tier_id"] == "gold"


def test_loyalty_purchase_below_threshold_earns_nothing():
    client = InMemoryEntityStore(
        {LOYALTY_CONFIG: [{"active": True, "purchase_threshold": 50}], CUSTOMER: [{"id": "c1", "points": 7}]}
    )

    result = LoyaltyService(client).process_purchase({"id": "c1", "points": 7}, 49.9, "00003")

    assert (result.success, result.points_earned, result.new_balance) == (True, 0, 7)
    assert "last_purchase" not in client.get(CUSTOMER, "c1")
