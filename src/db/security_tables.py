"""Anti-piracy tables: violation log, bans, daily watch quotas."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)

from src.db.tables import Base, epoch_now


class SecurityViolationRow(Base):
    """Append-only record of one client-reported anti-piracy event."""
    __tablename__ = "security_violations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    violation_type = Column(String(30), nullable=False)
    severity = Column(String(10), nullable=False)
    description = Column(Text, nullable=True)
    movie_id = Column(String(36), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        Index("ix_security_violations_user_type_time", "user_id", "violation_type", "created_at"),
    )


class UserBanRow(Base):
    __tablename__ = "user_bans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # temporary | permanent
    ban_type = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    violation_id = Column(String(36), ForeignKey("security_violations.id", ondelete="SET NULL"), nullable=True)
    banned_at = Column(Integer, nullable=False, default=epoch_now)
    expires_at = Column(Integer, nullable=True)  # None for permanent
    is_active = Column(Boolean, nullable=False, default=True)


class DailyWatchTimeRow(Base):
    __tablename__ = "daily_watch_time"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date = Column(String(10), nullable=False)  # server-local YYYY-MM-DD
    total_seconds = Column(Integer, nullable=False, default=0)
    play_attempts = Column(Integer, nullable=False, default=0)
    last_updated = Column(Integer, nullable=False, default=epoch_now)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_watch_time_user_date"),
    )
