"""
Database models.

Every table is an SQLModel model, split by area:
- user.py: buyers
- catalog.py: products and versions
- event.py: inbound payment-provider events
- checkout.py: checkout attempts
- order.py: orders, items, entitlements
- license.py: licenses and device activations
- discount.py: discount codes and redemptions
- affiliate.py: affiliates, attributions, commissions, payouts
- job.py: job ledger
- webhook.py: outbound webhook subscriptions and deliveries
"""
from sqlmodel import SQLModel

from .affiliate import Affiliate, AffiliateAttribution, AffiliateCommission, AffiliatePayout
from .base import ensure_utc, utc_now
from .catalog import Product, ProductVersion
from .checkout import CheckoutAttempt
from .discount import Discount, DiscountRedemption
from .event import InboundEvent
from .job import Job
from .license import License, LicenseActivation
from .order import Entitlement, Order, OrderItem
from .user import User
from .webhook import WebhookDelivery, WebhookSubscription

__all__ = [
    "SQLModel",
    "utc_now",
    "ensure_utc",
    "User",
    "Product",
    "ProductVersion",
    "InboundEvent",
    "CheckoutAttempt",
    "Order",
    "OrderItem",
    "Entitlement",
    "License",
    "LicenseActivation",
    "Discount",
    "DiscountRedemption",
    "Affiliate",
    "AffiliateAttribution",
    "AffiliateCommission",
    "AffiliatePayout",
    "Job",
    "WebhookSubscription",
    "WebhookDelivery",
]
