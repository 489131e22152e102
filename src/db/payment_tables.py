"""Payment tables: transactions, subscriptions, and pay-per-view purchases."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean, Column, Float, ForeignKey, Index, Integer, String,
)

from src.db.tables import Base, epoch_now


class PaymentTransactionRow(Base):
    """One payment attempt. Leaves `pending` exactly once."""
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # subscription | video_purchase
    purpose = Column(String(20), nullable=False, default="subscription")
    plan_id = Column(String(36), ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True)
    movie_id = Column(String(36), ForeignKey("movies.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # pending | completed | failed | refunded
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_method = Column(String(20), nullable=False)

    # Provider correlation id, the join key for webhook/callback/poll events
    transaction_ref = Column(String(100), nullable=False, unique=True)
    # Provider settlement reference (e.g. Bakong hash)
    provider_txn_id = Column(String(255), nullable=True)
    # webhook | callback | poll | admin
    confirmation_source = Column(String(20), nullable=True)

    created_at = Column(Integer, nullable=False, default=epoch_now)
    completed_at = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_payment_transactions_user_status", "user_id", "status"),
    )


class UserSubscriptionRow(Base):
    """Access grant. The row with the latest start_date is the user's current one."""
    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True)

    # active | cancelled | expired
    status = Column(String(20), nullable=False, default="active")
    start_date = Column(Integer, nullable=False, default=epoch_now)
    end_date = Column(Integer, nullable=True)  # None = lifetime
    auto_renew = Column(Boolean, nullable=False, default=False)

    def is_active(self, now: int) -> bool:
        return self.status == "active" and (self.end_date is None or self.end_date > now)


class VideoPurchaseRow(Base):
    """Pay-per-view grant. One per (user, movie), guarded by the reconciliation service."""
    __tablename__ = "video_purchases"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    movie_id = Column(String(36), ForeignKey("movies.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    transaction_ref = Column(String(100), nullable=False)
    purchased_at = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        Index("ix_video_purchases_user_movie", "user_id", "movie_id"),
    )
