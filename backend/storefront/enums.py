"""
Enum definitions.

Every status column in the engine is backed by one of these. They subclass
str so values compare and serialize as plain strings.
"""
from enum import Enum


class EventStatus(str, Enum):
    """
    Inbound payment-provider event status:
    - received: stored, reconciliation pending or deferred
    - processed: reconciled (or a forward-compatible no-op)
    - failed: rejected (bad signature, unusable payload, anomaly timeout)
    """
    received = "received"
    processed = "processed"
    failed = "failed"


class PricingMode(str, Enum):
    """
    Pricing mode of a product version:
    - fixed: the version's price
    - pwyw: pay what you want, at least the version's minimum
    """
    fixed = "fixed"
    pwyw = "pwyw"


class CheckoutAttemptStatus(str, Enum):
    """
    Checkout attempt lifecycle:
    - created: row inserted, provider session not created yet
    - redirected: provider session created, buyer sent to pay
    - completed: payment reconciled into an order
    - expired: abandoned or provider session expired
    - failed: could not create a session (e.g. coupon exhausted)
    """
    created = "created"
    redirected = "redirected"
    completed = "completed"
    expired = "expired"
    failed = "failed"


class OrderStatus(str, Enum):
    """
    Order status:
    - pending: reserved for provider flows that settle later
    - paid: payment completed
    - refunded: fully refunded (terminal)
    - partially_refunded: some amount refunded
    - disputed: chargeback opened (terminal)
    - canceled: canceled by the creator (terminal)
    """
    pending = "pending"
    paid = "paid"
    refunded = "refunded"
    partially_refunded = "partially_refunded"
    disputed = "disputed"
    canceled = "canceled"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.refunded, OrderStatus.disputed, OrderStatus.canceled}
)


class EntitlementStatus(str, Enum):
    active = "active"
    revoked = "revoked"


class LicenseStatus(str, Enum):
    active = "active"
    revoked = "revoked"


class ActivationStatus(str, Enum):
    """
    License activation status:
    - active: counts against the activation cap
    - inactive: pruned as stale or replaced/deactivated; may be reactivated
    - revoked: the license was revoked (terminal)
    """
    active = "active"
    inactive = "inactive"
    revoked = "revoked"


class ActivationOverflow(str, Enum):
    """
    What to do when a new device activates a license at its cap:
    - reject: fail with ActivationLimitExceeded
    - replace_oldest: deactivate the least recently seen activation
    """
    reject = "reject"
    replace_oldest = "replace_oldest"


class DiscountType(str, Enum):
    percent = "percent"
    fixed = "fixed"


class DiscountStatus(str, Enum):
    active = "active"
    disabled = "disabled"


class RedemptionStatus(str, Enum):
    """
    Discount redemption status:
    - reserved: counted at checkout creation, not paid yet
    - applied: linked to a paid order
    - released: checkout abandoned, slot given back
    """
    reserved = "reserved"
    applied = "applied"
    released = "released"


class AffiliateStatus(str, Enum):
    active = "active"
    disabled = "disabled"


class CommissionStatus(str, Enum):
    """
    Affiliate commission status:
    - pending: inside the holding period
    - available: payable
    - paid: included in a payout
    - reversed: refunded/disputed order
    """
    pending = "pending"
    available = "available"
    paid = "paid"
    reversed = "reversed"


class PayoutStatus(str, Enum):
    pending = "pending"
    sent = "sent"


class JobStatus(str, Enum):
    """
    Job status:
    - queued: waiting for run_at
    - running: claimed by a worker (lease in locked_by/locked_at)
    - succeeded: done
    - failed: parked, no handler registered for its type
    - dead: retries exhausted or terminal rejection; operator action needed
    """
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    dead = "dead"


class JobType(str, Enum):
    issue_license = "issue_license"
    send_receipt_email = "send_receipt_email"
    deliver_outbound_webhooks = "deliver_outbound_webhooks"
    github_invite = "github_invite"
    reverse_on_refund = "reverse_on_refund"
    affiliate_compute_commission = "affiliate_compute_commission"
    affiliate_payout = "affiliate_payout"


class SubscriptionStatus(str, Enum):
    """Outbound webhook subscription status."""
    active = "active"
    disabled = "disabled"


class DeliveryStatus(str, Enum):
    """
    Outbound webhook delivery status:
    - pending: not delivered yet, next_attempt_at says when
    - succeeded: receiver answered 2xx
    - dead: attempt ceiling reached or receiver gone
    """
    pending = "pending"
    succeeded = "succeeded"
    dead = "dead"
