# Façade "M" (Models): schéma relationnel et énumérations partagées par les features.
from .db import (
    Base,
    CartItem,
    DeliveryType,
    OPEN_ORDER_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductPlan,
    StockItem,
    SupportTicket,
    TERMINAL_PAYMENT_STATUSES,
    UserSubscription,
    new_id,
    utcnow,
)

__all__ = [
    "Base",
    # catalogue / stock / panier
    "Product",
    "ProductPlan",
    "StockItem",
    "CartItem",
    # commandes / paiements
    "Order",
    "OrderItem",
    "Payment",
    "UserSubscription",
    "SupportTicket",
    # énumérations
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "DeliveryType",
    "OPEN_ORDER_STATUSES",
    "TERMINAL_PAYMENT_STATUSES",
    "new_id",
    "utcnow",
]
