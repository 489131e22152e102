"""SQLAlchemy ORM models for ReelVault: users, catalog, saved list, plans.

All timestamps are Unix epoch seconds, matching the payment provider's callback format.
"""
from __future__ import annotations

import time
import uuid

from sqlalchemy import (
    Boolean, Column, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def epoch_now() -> int:
    return int(time.time())


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=True)
    # Trusted users skip the client-side keyboard deterrents in the player
    trusted_user = Column(Boolean, nullable=False, default=False)
    created_at = Column(Integer, nullable=False, default=epoch_now)


class MovieRow(Base):
    __tablename__ = "movies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(500), nullable=False, index=True)
    description = Column(Text, nullable=True)
    poster_url = Column(String(2000), nullable=True)

    # Never serialized to clients; only rendered inside the proxy player
    video_embed_url = Column(String(2000), nullable=True)

    is_free = Column(Boolean, nullable=False, default=False)
    price = Column(Float, nullable=False, default=1.00)
    created_at = Column(Integer, nullable=False, default=epoch_now)


class SavedMovieRow(Base):
    """A user's 'My List' entry."""
    __tablename__ = "my_list"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    movie_id = Column(String(36), ForeignKey("movies.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        UniqueConstraint("user_id", "movie_id", name="uq_my_list_user_movie"),
    )


class SubscriptionPlanRow(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # "monthly" is the plan sold through /payments/initiate
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=True)
    price = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    duration_days = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, nullable=False, default=True)
