"""Videos API: pay-per-view purchase, stream tokens, the proxy player, and the user's library."""
from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.api.payments import get_payment_service
from src.auth import require_user
from src.db.engine import get_session
from src.db.tables import MovieRow, SavedMovieRow, UserRow
from src.services import security
from src.services.entitlements import has_user_purchased_video, is_user_subscribed, list_purchased_movies
from src.services.errors import MovieNotFoundError, QuotaExceededError, UserBannedError
from src.services.payments import PaymentService
from src.services.video_access import (
    check_video_access,
    issue_video_token,
    normalize_embed_url,
    render_player_html,
    resolve_video_token,
)

logger = logging.getLogger(__name__)
router = APIRouter(tags=["videos"])

PLAYER_PATH = "/api/v1/v/play"


class VerifyPurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_ref: str = Field(alias="paymentRef", min_length=1)


class WatchTimeRequest(BaseModel):
    seconds: int = Field(ge=0, le=6 * 3600)


def _movie_summary(movie: MovieRow) -> dict:
    """Public movie fields. The embed URL is deliberately absent."""
    return {
        "id": movie.id,
        "title": movie.title,
        "description": movie.description,
        "posterUrl": movie.poster_url,
        "isFree": movie.is_free,
        "price": movie.price,
    }


async def _get_movie(session: AsyncSession, movie_id: str) -> MovieRow:
    movie = await session.get(MovieRow, movie_id)
    if movie is None:
        raise MovieNotFoundError()
    return movie


# ── Purchase ─────────────────────────────────────────────────────────────────

@router.post("/api/v1/videos/{movie_id}/purchase", status_code=201)
async def purchase_video(
    movie_id: str,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.initiate_video_purchase(session, user.id, movie_id)


@router.get("/api/v1/videos/{movie_id}/purchased")
async def purchase_status(
    movie_id: str,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    movie = await _get_movie(session, movie_id)
    return {
        "isPurchased": await has_user_purchased_video(session, user.id, movie_id),
        "isFree": movie.is_free,
        "hasSubscription": await is_user_subscribed(session, user.id),
    }


@router.post("/api/v1/videos/{movie_id}/verify-purchase")
async def verify_purchase(
    movie_id: str,
    req: VerifyPurchaseRequest,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.verify_video_purchase(session, user.id, movie_id, req.payment_ref)


# ── Streaming ────────────────────────────────────────────────────────────────

@router.get("/api/v1/videos/{movie_id}/stream")
async def stream_video(
    movie_id: str,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    """Issue a short-lived proxy URL. The real source URL is never returned."""
    movie = await _get_movie(session, movie_id)

    ban = await security.check_user_ban(session, user.id)
    if ban.is_banned:
        raise UserBannedError(expires_at=ban.ban.expires_at if ban.ban else None)

    await check_video_access(session, user.id, movie)

    attempts = await security.consume_play_attempt(session, user.id)
    if not attempts.allowed:
        raise QuotaExceededError("Too many play attempts today. Please try again tomorrow.")

    watch = await security.check_watch_time_limit(session, user.id)
    if not watch.allowed:
        raise QuotaExceededError("Daily watch time limit reached. Please try again tomorrow.")

    issued = issue_video_token(user.id, movie.id, bool(user.trusted_user), settings.VIDEO_TOKEN_SECRET)
    logger.info(f"Issued stream token for movie {movie.id} to user {user.id}")
    return {
        "videoUrl": f"{PLAYER_PATH}/{issued.token}",
        "title": movie.title,
        "expiresAt": issued.expires_at,
    }


@router.get(PLAYER_PATH + "/{token}", response_class=HTMLResponse)
async def play_video(token: str, session: AsyncSession = Depends(get_session)):
    """Proxy player page. The token is the capability; no session auth."""
    grant = resolve_video_token(token, settings.VIDEO_TOKEN_SECRET)

    movie = await session.get(MovieRow, grant.movie_id)
    if movie is None or not movie.video_embed_url:
        raise HTTPException(404, "Video not found")

    html = render_player_html(normalize_embed_url(movie.video_embed_url), trusted=grant.trusted)
    return HTMLResponse(
        content=html,
        headers={
            "X-Frame-Options": "SAMEORIGIN",
            "Content-Security-Policy": "frame-ancestors 'self'",
            "Cache-Control": "no-store",
        },
    )


@router.post("/api/v1/videos/{movie_id}/watch-time")
async def report_watch_time(
    movie_id: str,
    req: WatchTimeRequest,
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    """Player heartbeat: add watched seconds to today's total."""
    quota = await security.record_watch_time(session, user.id, req.seconds)
    return {"allowed": quota.allowed, "remainingSeconds": quota.remaining}


# ── Library ──────────────────────────────────────────────────────────────────

@router.get("/api/v1/my-list")
async def my_list(
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(SavedMovieRow, MovieRow)
        .join(MovieRow, MovieRow.id == SavedMovieRow.movie_id)
        .where(SavedMovieRow.user_id == user.id)
        .order_by(SavedMovieRow.added_at.desc())
    )
    return {
        "movies": [
            {**_movie_summary(movie), "addedAt": saved.added_at}
            for saved, movie in result.all()
        ],
    }


@router.get("/api/v1/me/purchases")
async def my_purchases(
    user: Annotated[UserRow, Depends(require_user)],
    session: AsyncSession = Depends(get_session),
):
    rows = await list_purchased_movies(session, user.id)
    return {
        "purchases": [
            {
                **_movie_summary(movie),
                "amount": purchase.amount,
                "currency": purchase.currency,
                "purchasedAt": purchase.purchased_at,
            }
            for purchase, movie in rows
        ],
    }
