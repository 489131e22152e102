#!/usr/bin/env python3
"""Seed the subscription plan and a small demo catalog.

Idempotent: existing rows (matched by plan name / movie title) are left alone.
"""
import asyncio
import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from src.db.engine import engine, async_session
from src.db.tables import Base, MovieRow, SubscriptionPlanRow
import src.db.payment_tables  # noqa: F401
import src.db.security_tables  # noqa: F401

PLANS = [
    {
        "name": "monthly",
        "display_name": "Monthly Unlimited",
        "price": 4.99,
        "currency": "USD",
        "duration_days": 30,
    },
]

MOVIES = [
    {
        "title": "The River Between Us",
        "description": "Two families on opposite banks of the Mekong, one flood season.",
        "poster_url": "https://images.unsplash.com/photo-1500530855697-b586d89ba3ee?w=600",
        "video_embed_url": "https://vimeo.com/76979871",
        "is_free": False,
        "price": 1.00,
    },
    {
        "title": "Night Market",
        "description": "A street-food vendor gets one night to save her stall.",
        "poster_url": "https://images.unsplash.com/photo-1555396273-367ea4eb4db5?w=600",
        "video_embed_url": "https://www.youtube.com/watch?v=aqz-KE-bpKQ",
        "is_free": False,
        "price": 1.50,
    },
    {
        "title": "Angkor at Dawn",
        "description": "Short documentary. Free to watch.",
        "poster_url": "https://images.unsplash.com/photo-1508159452718-d22f6734a00d?w=600",
        "video_embed_url": "https://player.vimeo.com/video/1084537",
        "is_free": True,
        "price": 0.0,
    },
]


async def seed():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    added_plans = added_movies = 0
    async with async_session() as session:
        for p in PLANS:
            existing = await session.execute(select(SubscriptionPlanRow.id).where(SubscriptionPlanRow.name == p["name"]))
            if existing.scalar_one_or_none() is None:
                session.add(SubscriptionPlanRow(**p))
                added_plans += 1

        for m in MOVIES:
            existing = await session.execute(select(MovieRow.id).where(MovieRow.title == m["title"]))
            if existing.scalar_one_or_none() is None:
                session.add(MovieRow(**m))
                added_movies += 1

        await session.commit()

    print(f"✅ Seeded {added_plans} plan(s), {added_movies} movie(s)")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
