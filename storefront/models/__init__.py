# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Enums
    PaymentMethod, PaymentStatus, OrderSource, OrderStatus, Gateway,
    PaymentSessionStatus, CouponType, TableSessionStatus,

    # Tenant
    Company,

    # Customers & dining
    Customer, CustomerAddress, TableSession,

    # Discounts, referrals & credit
    Coupon, ReferralProgram, ReferralCode, ReferralUsage,
    StoreCredit, StoreCreditConsumption,

    # Loyalty
    LoyaltySettings, LoyaltyTicketGrant,

    # Orders & payments
    Order, OrderItem, PaymentSession,

    # Audit
    AuditLog,
)

__all__ = [
    "PaymentMethod", "PaymentStatus", "OrderSource", "OrderStatus", "Gateway",
    "PaymentSessionStatus", "CouponType", "TableSessionStatus",
    "Company",
    "Customer", "CustomerAddress", "TableSession",
    "Coupon", "ReferralProgram", "ReferralCode", "ReferralUsage",
    "StoreCredit", "StoreCreditConsumption",
    "LoyaltySettings", "LoyaltyTicketGrant",
    "Order", "OrderItem", "PaymentSession",
    "AuditLog",
]
