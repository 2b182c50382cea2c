"""
Purchase and payment link enumerations.
"""

import enum


class PurchaseStatus(str, enum.Enum):
    """Purchase lifecycle status."""
    PENDING = "pending"  # Checkout link created, no money moved
    ACTIVE = "active"  # Money moved; subscription billing normally
    PAUSED = "paused"  # Billing collection suspended on purchase
    FAILED = "failed"  # Latest invoice payment failed
    CANCELLED = "cancelled"  # Terminal: subscription terminated
    COMPLETED = "completed"  # Terminal: one-time paid, or fixed term ran out


class PaymentLinkStatus(str, enum.Enum):
    """Payment link status."""
    ACTIVE = "active"
    USED = "used"  # Terminal
    EXPIRED = "expired"
    CANCELLED = "cancelled"


def enum_values(enum_cls):
    """Persist enum values (the wire strings) rather than member names."""
    return [member.value for member in enum_cls]
