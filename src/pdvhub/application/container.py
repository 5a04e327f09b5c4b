from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import requests

from pdvhub.config import AppPaths, Settings
from pdvhub.repositories.http_repo import ReadCache, RestEntityClient
from pdvhub.repositories.local_storage import LocalStorage
from pdvhub.repositories.sqlite_repo import SqliteEntityStore
from pdvhub.services.checkout_service import CheckoutService
from pdvhub.services.csv_import_service import ProductImportService
from pdvhub.services.customer_service import CustomerService
from pdvhub.services.discount_service import DiscountService
from pdvhub.services.finance_service import FinanceService
from pdvhub.services.inventory_service import InventoryService
from pdvhub.services.loyalty_service import LoyaltyService
from pdvhub.services.nfe_service import InvoiceLookupClient, NfeImportService, current_environment
from pdvhub.services.notification_service import NotificationService
from pdvhub.services.payment_service import InvoiceEmissionClient, PaymentLinkClient
from pdvhub.services.receipt_service import LogoCache, ReceiptPrinter
from pdvhub.services.reporting_service import ReportingService


@dataclass(frozen=True)
class AppContainer:
    settings: Settings
    client: object
    storage: LocalStorage
    imports: ProductImportService
    nfe: NfeImportService
    invoice_lookup: InvoiceLookupClient
    invoice_emission: InvoiceEmissionClient
    payment_links: PaymentLinkClient
    customers: CustomerService
    discounts: DiscountService
    finance: FinanceService
    loyalty: LoyaltyService
    inventory: InventoryService
    reporting: ReportingService
    notifications: NotificationService
    logo: LogoCache
    printer: ReceiptPrinter
    checkout: CheckoutService


def _online_check(url: str, timeout: float) -> Callable[[], bool]:
    def is_online() -> bool:
        try:
            return requests.head(url, timeout=timeout).status_code < 500
        except requests.RequestException:
            return False

    return is_online


def build_container(settings: Settings, paths: AppPaths) -> AppContainer:
    storage = LocalStorage(paths.storage_path)

    if settings.backend_url:
        client = ReadCache(RestEntityClient(settings.backend_url, settings.api_key, timeout=settings.http_timeout))
        is_online = _online_check(settings.backend_url, settings.http_timeout)
    else:
        client = SqliteEntityStore(paths.db_path)
        client.init_db()
        is_online = lambda: True

    functions = dict(api_key=settings.api_key, timeout=settings.http_timeout)
    environment = current_environment(storage, settings.nfe_environment)

    finance = FinanceService(client)
    loyalty = LoyaltyService(client)
    notifications = NotificationService(settings.webhook_url, timeout=settings.http_timeout)
    logo = LogoCache(storage, settings.logo_url, timeout=settings.http_timeout)
    printer = ReceiptPrinter(paths.receipts_dir)
    checkout = CheckoutService(
        client,
        storage,
        printer,
        finance=finance,
        loyalty=loyalty,
        notifier=notifications,
        logo=logo,
        store_name=settings.store_name,
        store_ids={s.name: s.id or s.code for s in settings.stores},
        is_online=is_online,
    )

    return AppContainer(
        settings=settings,
        client=client,
        storage=storage,
        imports=ProductImportService(client, settings.stores),
        nfe=NfeImportService(client),
        invoice_lookup=InvoiceLookupClient(
            settings.functions_url, settings.recipient_tax_id, environment=environment, **functions
        ),
        invoice_emission=InvoiceEmissionClient(settings.functions_url, client, environment=environment, **functions),
        payment_links=PaymentLinkClient(settings.functions_url, **functions),
        customers=CustomerService(client),
        discounts=DiscountService(client),
        finance=finance,
        loyalty=loyalty,
        inventory=InventoryService(client),
        reporting=ReportingService(client),
        notifications=notifications,
        logo=logo,
        printer=printer,
        checkout=checkout,
    )
