"""Payment domain enums: transaction lifecycle and subscription state."""
from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    # Provider-reported only; persisted as FAILED
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class PaymentPurpose(str, Enum):
    SUBSCRIPTION = "subscription"
    VIDEO_PURCHASE = "video_purchase"


class ConfirmationSource(str, Enum):
    WEBHOOK = "webhook"
    CALLBACK = "callback"
    POLL = "poll"
    ADMIN = "admin"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
