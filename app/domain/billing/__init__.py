# Billing domain module
from app.domain.billing.models import (
    Service,
    ServiceType,
    Billing,
    BillingItem,
    Payment,
    ItemType,
    PaymentStatus,
    PaymentMethod,
)

__all__ = [
    "Service",
    "ServiceType",
    "Billing",
    "BillingItem",
    "Payment",
    "ItemType",
    "PaymentStatus",
    "PaymentMethod",
]
