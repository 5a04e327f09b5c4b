from .checkout_service import CheckoutService, OfflineSaleQueue
from .csv_import_service import ProductImportService
from .customer_service import CustomerService
from .discount_service import DiscountService
from .finance_service import FinanceService
from .inventory_service import InventoryService
from .loyalty_service import LoyaltyService
from .nfe_service import InvoiceLookupClient, NfeImportService
from .notification_service import NotificationService
from .payment_service import InvoiceEmissionClient, PaymentLinkClient
from .pdv_session import BarcodeScanGuard, PdvSession
from .receipt_service import LogoCache, ReceiptPrinter
from .reporting_service import ReportingService

__all__ = [
    "CheckoutService",
    "OfflineSaleQueue",
    "ProductImportService",
    "CustomerService",
    "DiscountService",
    "FinanceService",
    "InventoryService",
    "LoyaltyService",
    "InvoiceLookupClient",
    "NfeImportService",
    "NotificationService",
    "InvoiceEmissionClient",
    "PaymentLinkClient",
    "BarcodeScanGuard",
    "PdvSession",
    "LogoCache",
    "ReceiptPrinter",
    "ReportingService",
]
