"""Videos API: entitlement-gated streaming, the proxy player, purchases, and the user library."""
from __future__ import annotations

import pytest

from src.api.main import app
from src.db.payment_tables import UserSubscriptionRow, VideoPurchaseRow
from src.db.security_tables import DailyWatchTimeRow, UserBanRow
from src.models.security import DAILY_PLAY_ATTEMPT_LIMIT, DAILY_WATCH_LIMIT_SECONDS
from src.services.security import _today

from conftest import get_test_session


async def _grant_purchase(user_id="user-1", movie_id="movie-paid"):
    async with get_test_session() as s:
        s.add(VideoPurchaseRow(
            user_id=user_id, movie_id=movie_id, amount=1.0, currency="USD", transaction_ref="seed-ref",
        ))
        await s.commit()


def _token_from(resp) -> str:
    url = resp.json()["videoUrl"]
    assert url.startswith("/api/v1/v/play/")
    return url.rsplit("/", 1)[1]


# ── Stream ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stream_requires_auth(client):
    resp = await client.get("/api/v1/videos/movie-paid/stream")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_stream_not_purchased(client, auth):
    resp = await client.get("/api/v1/videos/movie-paid/stream", headers=auth())
    assert resp.status_code == 403
    assert resp.json() == {
        "error": "not_entitled",
        "message": "Video not purchased. Please purchase to watch.",
    }


@pytest.mark.asyncio
async def test_stream_unknown_movie(client, auth):
    resp = await client.get("/api/v1/videos/nope/stream", headers=auth())
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_stream_free_movie(client, auth):
    resp = await client.get("/api/v1/videos/movie-free/stream", headers=auth())
    assert resp.status_code == 200
    body = resp.json()
    assert body["title"] == "Angkor at Dawn"
    assert "youtube" not in str(body)


@pytest.mark.asyncio
async def test_stream_after_purchase_hides_source(client, auth):
    await _grant_purchase()
    resp = await client.get("/api/v1/videos/movie-paid/stream", headers=auth())
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) == {"videoUrl", "title", "expiresAt"}
    assert "vimeo" not in resp.text


@pytest.mark.asyncio
async def test_stream_with_subscription(client, auth):
    async with get_test_session() as s:
        s.add(UserSubscriptionRow(user_id="user-1", plan_id="plan-monthly", status="active", end_date=None))
        await s.commit()
    resp = await client.get("/api/v1/videos/movie-paid/stream", headers=auth())
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_stream_banned_user(client, auth):
    async with get_test_session() as s:
        s.add(UserBanRow(user_id="user-1", ban_type="temporary", reason="test", expires_at=4_000_000_000))
        await s.commit()
    resp = await client.get("/api/v1/videos/movie-free/stream", headers=auth())
    assert resp.status_code == 403
    assert resp.json()["error"] == "user_banned"
    assert resp.json()["expiresAt"] == 4_000_000_000


@pytest.mark.asyncio
async def test_stream_play_attempts_exhausted(client, auth):
    async with get_test_session() as s:
        s.add(DailyWatchTimeRow(user_id="user-1", date=_today(), play_attempts=DAILY_PLAY_ATTEMPT_LIMIT))
        await s.commit()
    resp = await client.get("/api/v1/videos/movie-free/stream", headers=auth())
    assert resp.status_code == 429
    assert resp.json()["error"] == "quota_exceeded"


@pytest.mark.asyncio
async def test_stream_watch_time_exhausted(client, auth):
    async with get_test_session() as s:
        s.add(DailyWatchTimeRow(user_id="user-1", date=_today(), total_seconds=DAILY_WATCH_LIMIT_SECONDS))
        await s.commit()
    resp = await client.get("/api/v1/videos/movie-free/stream", headers=auth())
    assert resp.status_code == 429


# ── Player ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_player_page(client, auth):
    await _grant_purchase()
    token = _token_from(await client.get("/api/v1/videos/movie-paid/stream", headers=auth()))

    resp = await client.get(f"/api/v1/v/play/{token}")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert resp.headers["x-frame-options"] == "SAMEORIGIN"
    assert resp.headers["content-security-policy"] == "frame-ancestors 'self'"
    assert "no-store" in resp.headers["cache-control"]
    assert "vimeo.com/76979871" not in resp.text
    assert "keydown" in resp.text


@pytest.mark.asyncio
async def test_player_for_trusted_user(client, auth):
    token = _token_from(await client.get("/api/v1/videos/movie-free/stream", headers=auth("user-trusted")))
    resp = await client.get(f"/api/v1/v/play/{token}")
    assert resp.status_code == 200
    assert "keydown" not in resp.text


@pytest.mark.asyncio
async def test_player_tampered_token(client, auth):
    token = _token_from(await client.get("/api/v1/videos/movie-free/stream", headers=auth()))
    tampered = token[:5] + ("A" if token[5] != "A" else "B") + token[6:]
    resp = await client.get(f"/api/v1/v/play/{tampered}")
    assert resp.status_code == 403
    assert resp.json()["error"] in {"invalid_token", "invalid_signature", "token_expired"}


@pytest.mark.asyncio
async def test_player_token_expires_after_two_hours(client, auth, monkeypatch):
    from src.services import video_access

    issued_at = 1_760_000_000
    monkeypatch.setattr(video_access, "_now", lambda: issued_at)
    token = _token_from(await client.get("/api/v1/videos/movie-free/stream", headers=auth()))
    assert (await client.get(f"/api/v1/v/play/{token}")).status_code == 200

    monkeypatch.setattr(video_access, "_now", lambda: issued_at + 2 * 3600 + 1)
    resp = await client.get(f"/api/v1/v/play/{token}")
    assert resp.status_code == 403
    assert resp.json() == {"error": "token_expired", "message": "Token expired"}


@pytest.mark.asyncio
async def test_player_movie_without_source(client, auth):
    from config.settings import settings
    from src.services.video_access import issue_video_token

    token = issue_video_token("user-1", "movie-no-source", False, settings.VIDEO_TOKEN_SECRET).token
    resp = await client.get(f"/api/v1/v/play/{token}")
    assert resp.status_code == 404


# ── Purchase flow ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_purchase_end_to_end(client, auth):
    provider = app.state.payment_service.provider

    resp = await client.post("/api/v1/videos/movie-paid/purchase", headers=auth())
    assert resp.status_code == 201
    data = resp.json()
    assert data["movieId"] == "movie-paid"
    assert data["movieTitle"] == "The River Between Us"

    status = (await client.get("/api/v1/videos/movie-paid/purchased", headers=auth())).json()
    assert status == {"isPurchased": False, "isFree": False, "hasSubscription": False}

    provider.simulate_success(data["paymentRef"])
    resp = await client.post(
        "/api/v1/videos/movie-paid/verify-purchase", json={"paymentRef": data["paymentRef"]}, headers=auth(),
    )
    assert resp.json() == {"isPurchased": True, "status": "completed"}

    assert (await client.get("/api/v1/videos/movie-paid/stream", headers=auth())).status_code == 200

    my_list = (await client.get("/api/v1/my-list", headers=auth())).json()["movies"]
    assert [m["id"] for m in my_list] == ["movie-paid"]
    assert "video_embed_url" not in my_list[0] and "videoEmbedUrl" not in my_list[0]

    purchases = (await client.get("/api/v1/me/purchases", headers=auth())).json()["purchases"]
    assert len(purchases) == 1
    assert purchases[0]["amount"] == 1.0


@pytest.mark.asyncio
async def test_purchase_twice_rejected(client, auth):
    await _grant_purchase()
    resp = await client.post("/api/v1/videos/movie-paid/purchase", headers=auth())
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_purchase_free_movie_rejected(client, auth):
    resp = await client.post("/api/v1/videos/movie-free/purchase", headers=auth())
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_verify_purchase_other_users_payment(client, auth):
    data = (await client.post("/api/v1/videos/movie-paid/purchase", headers=auth("user-1"))).json()
    resp = await client.post(
        "/api/v1/videos/movie-paid/verify-purchase", json={"paymentRef": data["paymentRef"]}, headers=auth("user-2"),
    )
    assert resp.status_code == 403


# ── Watch time ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_watch_time_heartbeat(client, auth):
    resp = await client.post("/api/v1/videos/movie-free/watch-time", json={"seconds": 600}, headers=auth())
    assert resp.json() == {"allowed": True, "remainingSeconds": DAILY_WATCH_LIMIT_SECONDS - 600}

    resp = await client.post(
        "/api/v1/videos/movie-free/watch-time", json={"seconds": DAILY_WATCH_LIMIT_SECONDS}, headers=auth(),
    )
    assert resp.json() == {"allowed": False, "remainingSeconds": 0}


@pytest.mark.asyncio
async def test_watch_time_rejects_negative(client, auth):
    resp = await client.post("/api/v1/videos/movie-free/watch-time", json={"seconds": -5}, headers=auth())
    assert resp.status_code == 422
