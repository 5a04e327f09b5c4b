from .models import CartItem, ExistingProduct, Payment, ProvisionalProduct, Step, Variant, GroupedProduct
from .errors import (
    BackendError,
    InsufficientStockError,
    InvoicePendingError,
    InvoiceParseError,
    NotFoundError,
    SagaError,
    ValidationError,
)

__all__ = [
    "CartItem",
    "ExistingProduct",
    "Payment",
    "ProvisionalProduct",
    "Step",
    "Variant",
    "GroupedProduct",
    "BackendError",
    "InsufficientStockError",
    "InvoicePendingError",
    "InvoiceParseError",
    "NotFoundError",
    "SagaError",
    "ValidationError",
]
