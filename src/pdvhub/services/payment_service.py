from __future__ import annotations

import logging
from typing import Optional, Sequence

from pdvhub.domain.errors import BackendError, ValidationError, extract_error_message
from pdvhub.domain.models import Payment
from pdvhub.repositories.contracts import SALE
from pdvhub.repositories.http_repo import FunctionsClient

log = logging.getLogger("pdvhub.sales")

LINK_AWAITING = "AGUARDANDO"
PAYMENT_LINK_METHOD = "Link de Pagamento"
LINK_PAYMENT_METHODS = ("pix", "credit_card", "boleto")
LINK_MAX_INSTALLMENTS = 12
LINK_EXPIRES_IN_DAYS = 7


class PaymentLinkClient(FunctionsClient):
    path = "payment-link"

    def create(
        self,
        amount: float,
        customer: Optional[dict],
        description: str = "",
        installments: int = LINK_MAX_INSTALLMENTS,
        method: str = PAYMENT_LINK_METHOD,
        payment_methods: Sequence[str] = LINK_PAYMENT_METHODS,
        expires_in_days: int = LINK_EXPIRES_IN_DAYS,
    ) -> Payment:
        amount = round(float(amount), 2)
        if amount <= 0:
            raise ValidationError("Payment link amount must be > 0.")
        customer = customer or {}
        body = self._post_json(
            self.path,
            {
                "amount": amount,
                "description": description or "Pedido",
                "customer_name": customer.get("name") or "Cliente",
                "customer_email": customer.get("email"),
                "customer_document": customer.get("document"),
                "payment_methods": list(payment_methods),
                "max_installments": int(installments),
                "expires_in_days": int(expires_in_days),
            },
        )
        if body.get("error"):
            message = extract_error_message(body)
            if body.get("details"):
                message = f"{message}: {body['details']}"
            raise BackendError(message)
        link_url = body.get("payment_url")
        if not link_url:
            raise BackendError(extract_error_message(body, "Payment link was not returned."))
        log.info("payment_link_created amount=%.2f link_id=%s provider_id=%s", amount, body.get("id"), body.get("provider_id"))
        return Payment(
            method=method,
            amount=amount,
            installments=int(installments),
            link_url=link_url,
            link_id=body.get("id"),
            qr_code_url=body.get("qr_code"),
            provider_id=body.get("provider_id"),
            status=LINK_AWAITING,
        )


class InvoiceEmissionClient(FunctionsClient):
    """Asks the fiscal function to emit the NF-e of a sale and records its reference."""

    path = "nfe-emit"

    def __init__(self, base_url: str, client, environment: str = "staging", **kwargs):
        super().__init__(base_url, **kwargs)
        self.client = client
        self.environment = environment

    def emit(self, sale_id: str) -> dict:
        if not sale_id:
            raise ValidationError("Sale id is required.")
        body = self._post_json(self.path, {"sale_id": sale_id, "environment": self.environment})
        if body.get("success") is False:
            log.warning("invoice_emission_refused sale_id=%s error=%s", sale_id, body.get("error"))
            raise BackendError(extract_error_message(body, "Invoice emission was refused."))
        ref =body.get("ref") or body.get("invoice_ref")
        if not ref:
            raise BackendError(extract_error_message(body, "Invoice emission returned no reference."))
        status = body.get("status") or "processando_autorizacao"
        log.info("invoice_emission_requested sale_id=%s ref=%s status=%s", sale_id, ref, status)
        return self.client.update(SALE, sale_id, {"invoice_ref": ref, "invoice_status": status})
