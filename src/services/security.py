"""Anti-piracy monitor: violation log, ban escalation, daily viewing quotas.

Client-side deterrents (devtools detection, right-click/shortcut blocking) only
*report* here. They feed the ban escalation; they never grant or deny access
on their own. Bans expire lazily: an expired temporary ban is deactivated the
next time it is read, there is no sweeper.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.security_tables import DailyWatchTimeRow, SecurityViolationRow, UserBanRow
from src.models.security import (
    DAILY_PLAY_ATTEMPT_LIMIT,
    DAILY_WATCH_LIMIT_SECONDS,
    VIOLATION_RULES,
    VIOLATION_WINDOW_SECONDS,
    BanType,
    ViolationType,
)

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


def _today() -> str:
    """Quota day key: server-local calendar date."""
    return date.today().isoformat()


@dataclass
class ViolationOutcome:
    violation: SecurityViolationRow
    banned: bool
    ban: Optional[UserBanRow] = None


@dataclass
class BanStatus:
    is_banned: bool
    ban: Optional[UserBanRow] = None


@dataclass
class QuotaStatus:
    allowed: bool
    remaining: int


# ── Violations & bans ────────────────────────────────────────────────────────

async def log_violation(
    session: AsyncSession,
    user_id: str,
    violation_type: ViolationType,
    description: Optional[str] = None,
    movie_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ViolationOutcome:
    """Record a violation and ban the user once the type's 24h threshold is reached."""
    rule = VIOLATION_RULES[violation_type]
    now = _now()

    violation = SecurityViolationRow(
        user_id=user_id,
        violation_type=violation_type.value,
        severity=rule.severity.value,
        description=description,
        movie_id=movie_id,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
        created_at=now,
    )
    session.add(violation)
    await session.flush()
    logger.info(f"Violation logged: {violation_type.value} for user {user_id} (severity={rule.severity.value})")

    result = await session.execute(
        select(func.count(SecurityViolationRow.id)).where(
            SecurityViolationRow.user_id == user_id,
            SecurityViolationRow.violation_type == violation_type.value,
            SecurityViolationRow.created_at >= now - VIOLATION_WINDOW_SECONDS,
        )
    )
    recent = result.scalar_one()

    outcome = ViolationOutcome(violation=violation, banned=False)
    if recent >= rule.threshold:
        current = await check_user_ban(session, user_id)
        if current.is_banned:
            outcome.banned, outcome.ban = True, current.ban
        else:
            outcome.ban = await ban_user(
                session,
                user_id,
                BanType.TEMPORARY,
                reason=f"Auto-ban: {violation_type.value} ({recent} violations)",
                violation_id=violation.id,
                duration_hours=rule.ban_hours,
            )
            outcome.banned = True

    await session.commit()
    return outcome


async def ban_user(
    session: AsyncSession,
    user_id: str,
    ban_type: BanType,
    reason: str,
    violation_id: Optional[str] = None,
    duration_hours: Optional[int] = None,
) -> UserBanRow:
    """Add a ban to the session. The caller commits."""
    now = _now()
    expires_at = None
    if ban_type is BanType.TEMPORARY and duration_hours:
        expires_at = now + duration_hours * 3600

    ban = UserBanRow(
        user_id=user_id,
        ban_type=ban_type.value,
        reason=reason,
        violation_id=violation_id,
        banned_at=now,
        expires_at=expires_at,
        is_active=True,
    )
    session.add(ban)
    await session.flush()
    logger.warning(f"User {user_id} banned ({ban_type.value}, expires_at={expires_at}): {reason}")
    return ban


async def check_user_ban(session: AsyncSession, user_id: str) -> BanStatus:
    """Return the effective ban, deactivating any expired temporary bans on the way."""
    now = _now()
    result = await session.execute(
        select(UserBanRow)
        .where(UserBanRow.user_id == user_id, UserBanRow.is_active.is_(True))
        .order_by(UserBanRow.banned_at.desc())
    )

    expired = 0
    effective = None
    for ban in result.scalars().all():
        if ban.ban_type == BanType.TEMPORARY.value and ban.expires_at is not None and now > ban.expires_at:
            ban.is_active = False
            expired += 1
            continue
        effective = ban
        break

    if expired:
        await session.commit()
        logger.info(f"Lifted {expired} expired ban(s) for user {user_id}")

    return BanStatus(is_banned=effective is not None, ban=effective)


async def unban_user(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        update(UserBanRow)
        .where(UserBanRow.user_id == user_id, UserBanRow.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info(f"User {user_id} unbanned ({result.rowcount} ban(s) lifted)")
    return result.rowcount


async def list_violations(
    session: AsyncSession, user_id: Optional[str] = None, limit: int = 100,
) -> list[SecurityViolationRow]:
    stmt = select(SecurityViolationRow).order_by(SecurityViolationRow.created_at.desc()).limit(limit)
    if user_id:
        stmt = stmt.where(SecurityViolationRow.user_id == user_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_bans(session: AsyncSession, limit: int = 100) -> list[UserBanRow]:
    result = await session.execute(
        select(UserBanRow).order_by(UserBanRow.banned_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


def violation_to_dict(v: SecurityViolationRow) -> dict:
    return {
        "id": v.id,
        "userId": v.user_id,
        "violationType": v.violation_type,
        "severity": v.severity,
        "description": v.description,
        "movieId": v.movie_id,
        "ipAddress": v.ip_address,
        "createdAt": v.created_at,
    }


def ban_to_dict(b: UserBanRow) -> dict:
    return {
        "id": b.id,
        "userId": b.user_id,
        "banType": b.ban_type,
        "reason": b.reason,
        "violationId": b.violation_id,
        "bannedAt": b.banned_at,
        "expiresAt": b.expires_at,
        "isActive": b.is_active,
    }


# ── Daily quotas ─────────────────────────────────────────────────────────────

async def _get_today(session: AsyncSession, user_id: str) -> Optional[DailyWatchTimeRow]:
    result = await session.execute(
        select(DailyWatchTimeRow)
        .where(DailyWatchTimeRow.user_id == user_id, DailyWatchTimeRow.date == _today())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _ensure_today(session: AsyncSession, user_id: str, day: str) -> None:
    """Create today's counter row if missing; concurrent creators are harmless."""
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    await session.execute(
        insert(DailyWatchTimeRow.__table__)
        .values(
            id=str(uuid.uuid4()),
            user_id=user_id,
            date=day,
            total_seconds=0,
            play_attempts=0,
            last_updated=_now(),
        )
        .on_conflict_do_nothing(index_elements=["user_id", "date"])
    )


async def check_watch_time_limit(session: AsyncSession, user_id: str) -> QuotaStatus:
    row = await _get_today(session, user_id)
    used = row.total_seconds if row else 0
    remaining = DAILY_WATCH_LIMIT_SECONDS - used
    return QuotaStatus(allowed=remaining > 0, remaining=max(0, remaining))


async def check_play_attempt_limit(session: AsyncSession, user_id: str) -> QuotaStatus:
    row = await _get_today(session, user_id)
    used = row.play_attempts if row else 0
    remaining = DAILY_PLAY_ATTEMPT_LIMIT - used
    return QuotaStatus(allowed=remaining > 0, remaining=max(0, remaining))


async def consume_play_attempt(session: AsyncSession, user_id: str) -> QuotaStatus:
    """Atomically take one play attempt from today's allowance.

    Single increment-and-compare UPDATE: under any concurrency at most
    DAILY_PLAY_ATTEMPT_LIMIT attempts succeed per user per day.
    """
    day = _today()
    await _ensure_today(session, user_id, day)
    result = await session.execute(
        update(DailyWatchTimeRow.__table__)
        .where(
            DailyWatchTimeRow.user_id == user_id,
            DailyWatchTimeRow.date == day,
            DailyWatchTimeRow.play_attempts < DAILY_PLAY_ATTEMPT_LIMIT,
        )
        .values(play_attempts=DailyWatchTimeRow.play_attempts + 1, last_updated=_now())
        .returning(DailyWatchTimeRow.play_attempts)
    )
    attempts = result.scalar_one_or_none()
    await session.commit()

    if attempts is None:
        logger.warning(f"User {user_id} hit the daily play-attempt limit")
        return QuotaStatus(allowed=False, remaining=0)
    return QuotaStatus(allowed=True, remaining=DAILY_PLAY_ATTEMPT_LIMIT - attempts)


async def record_watch_time(session: AsyncSession, user_id: str, seconds: int) -> QuotaStatus:
    """Add watched seconds to today's counter and report what is left."""
    day = _today()
    await _ensure_today(session, user_id, day)
    result = await session.execute(
        update(DailyWatchTimeRow.__table__)
        .where(DailyWatchTimeRow.user_id == user_id, DailyWatchTimeRow.date == day)
        .values(total_seconds=DailyWatchTimeRow.total_seconds + max(0, seconds), last_updated=_now())
        .returning(DailyWatchTimeRow.total_seconds)
    )
    total = result.scalar_one()
    await session.commit()

    remaining = DAILY_WATCH_LIMIT_SECONDS - total
    return QuotaStatus(allowed=remaining > 0, remaining=max(0, remaining))
