from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Sequence

from pdvhub.domain.models import SALE_CANCELLED, SALE_PAID
from pdvhub.repositories.contracts import FEE_RULE, FINANCIAL_ENTRY

log = logging.getLogger("pdvhub.sales")

FEE_PERCENT = "percent"
FEE_FIXED = "fixed"
CREDIT = "Crédito"
CREDIT_INSTALLMENTS = "Crédito Parcelado"


def match_fee_rule(rules: Sequence[dict], method: str, installments: int = 1) -> Optional[dict]:
    for rule in rules:
        name = rule.get("method")
        if method == CREDIT and installments > 1:
            if name == CREDIT_INSTALLMENTS:
                return rule
        elif name == method or name == method.replace(" 1x", ""):
            return rule
    return None


def fee_amount(rule: dict, amount: float) -> float:
    value = float(rule.get("value") or 0.0)
    if value <= 0:
        return 0.0
    if rule.get("kind") == FEE_PERCENT:
        return round(amount * value / 100.0, 2)
    return round(value, 2)


class FinanceService:
    def __init__(self, client, today=date.today):
        self.client = client
        self._today = today

    def create_sale_entries(self, sale: dict, rules: Optional[Sequence[dict]] = None) -> list[dict]:
        """Revenue, discount expense and one fee expense per matched payment."""
        if rules is None:
            rules = self.client.list(FEE_RULE)
        today = self._today().isoformat()
        number = sale["number"]
        paid = sale.get("status") == SALE_PAID
        base = {"due_date": today, "entry_date": today, "sale_id": sale["id"], "order_number": number}
        payments = sale.get("payments") or []
        created = []

        created.append(
            self.client.create(
                FINANCIAL_ENTRY,
                {
                    **base,
                    "description": f"Venda #{number} - {sale.get('customer_name', '')}",
                    "amount": round(float(sale["total"]) + float(sale.get("discount") or 0.0), 2),
                    "type": "revenue",
                    "paid": paid,
                    "category": "Vendas",
                    "payment_method": payments[0]["method"] if payments else "Diversos",
                    "status": "Pago" if paid else "Pendente",
                    "notes": f"Pedido {number}",
                },
            )
        )

        discount = float(sale.get("discount") or 0.0)
        if discount > 0:
            coupon = sale.get("coupon_code")
            created.append(
                self.client.create(
                    FINANCIAL_ENTRY,
                    {
                        **base,
                        "description": f"Desconto Venda #{number}" + (f" (Cupom: {coupon})" if coupon else ""),
                        "amount": -discount,
                        "type": "expense",
                        "paid": True,
                        "category": "Descontos Concedidos",
                        "status": "Pago",
                        "notes": f"Cupom: {coupon}" if coupon else "Desconto manual",
                    },
                )
            )

        for payment in payments:
            rule = match_fee_rule(rules, payment["method"], int(payment.get("installments") or 1))
            if rule is None:
                continue
            fee = fee_amount(rule, float(payment["amount"]))
            if fee <= 0:
                continue
            unit = "%" if rule.get("kind") == FEE_PERCENT else " R$"
            created.append(
                self.client.create(
                    FINANCIAL_ENTRY,
                    {
                        **base,
                        "description": f"Taxa {payment['method']} - Venda #{number}",
                        "amount": -fee,
                        "type": "expense",
                        "paid": True,
                        "category": "Taxas de Cartão",
                        "payment_method": payment["method"],
                        "status": "Pago",
                        "notes": f"{rule.get('value')}{unit} sobre R$ {float(payment['amount']):.2f}",
                    },
                )
            )

        log.info("financial_entries_created number=%s count=%s", number, len(created))
        return created

    def cancel_sale_entries(self, sale_id: str) -> int:
        entries = self.client.filter(FINANCIAL_ENTRY, {"sale_id": sale_id})
        for e in entries:
            self.client.update(FINANCIAL_ENTRY, e["id"], {"status": SALE_CANCELLED})
        return len(entries)
