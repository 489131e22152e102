"""Entitlement lookups: subscription state and pay-per-view purchases."""
from __future__ import annotations

import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.payment_tables import UserSubscriptionRow, VideoPurchaseRow
from src.db.tables import MovieRow


def _now() -> int:
    return int(time.time())


async def get_current_subscription(
    session: AsyncSession, user_id: str, for_update: bool = False,
) -> Optional[UserSubscriptionRow]:
    """The user's current subscription: latest by start_date."""
    stmt = (
        select(UserSubscriptionRow)
        .where(UserSubscriptionRow.user_id == user_id)
        .order_by(UserSubscriptionRow.start_date.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def is_user_subscribed(session: AsyncSession, user_id: str) -> bool:
    sub = await get_current_subscription(session, user_id)
    return sub is not None and sub.is_active(_now())


async def has_user_purchased_video(session: AsyncSession, user_id: str, movie_id: str) -> bool:
    result = await session.execute(
        select(VideoPurchaseRow.id)
        .where(VideoPurchaseRow.user_id == user_id, VideoPurchaseRow.movie_id == movie_id)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_purchased_movies(session: AsyncSession, user_id: str) -> list[tuple[VideoPurchaseRow, MovieRow]]:
    result = await session.execute(
        select(VideoPurchaseRow, MovieRow)
        .join(MovieRow, MovieRow.id == VideoPurchaseRow.movie_id)
        .where(VideoPurchaseRow.user_id == user_id)
        .order_by(VideoPurchaseRow.purchased_at.desc())
    )
    return list(result.all())


async def get_entitlement(session: AsyncSession, user_id: str, movie: MovieRow) -> Optional[str]:
    """Why the user may watch `movie` ("free" | "purchased" | "subscribed"), or None."""
    if movie.is_free:
        return "free"
    if await has_user_purchased_video(session, user_id, movie.id):
        return "purchased"
    if await is_user_subscribed(session, user_id):
        return "subscribed"
    return None
